from typing import Any

import markdown_it

from mini_lightrag.config import ChunkingConfig
from mini_lightrag.core.models import ChunkType, Document, MarkdownMetadata, RawChunk
from mini_lightrag.infrastructure.chunking.lines import trim_blank


class MarkdownChunker:
    """
    Heading-delimited chunker for prose.
    Uses markdown-it-py so that '#' lines inside fenced code never start a section.
    Top-level block starts are recorded as split boundaries for oversize sections.
    """

    def __init__(self, config: ChunkingConfig, settings: dict[str, Any] | None = None) -> None:
        settings = settings or {}
        self.max_heading_level = int(settings.get("max_heading_level", 6))
        self.md_parser = markdown_it.MarkdownIt()

    def process(self, document: Document, language: str) -> list[RawChunk]:
        lines = document.content.split("\n")
        if not any(line.strip() for line in lines):
            return []

        tokens = self.md_parser.parse(document.content)

        headings: list[tuple[int, int, str]] = []  # (0-indexed line, level, title)
        block_starts: list[int] = []
        for idx, token in enumerate(tokens):
            if token.level != 0 or token.map is None:
                continue
            block_starts.append(token.map[0])
            if token.type == "heading_open":
                level = int(token.tag[1:])
                if level > self.max_heading_level:
                    continue
                inline = tokens[idx + 1] if idx + 1 < len(tokens) else None
                title = inline.content.strip() if inline is not None else ""
                headings.append((token.map[0], level, title))

        # Section starts: the preamble (if any) and every heading
        sections: list[tuple[int, int | None, str | None]] = []
        first_heading = headings[0][0] if headings else len(lines)
        if any(line.strip() for line in lines[:first_heading]):
            sections.append((0, None, None))
        sections.extend(headings)

        regions: list[RawChunk] = []
        for pos, (start, level, title) in enumerate(sections):
            end = sections[pos + 1][0] - 1 if pos + 1 < len(sections) else len(lines) - 1
            if end < start or not any(line.strip() for line in lines[start : end + 1]):
                continue
            first, last = trim_blank(lines, start, end)
            regions.append(
                RawChunk(
                    start_line=first + 1,
                    end_line=last + 1,
                    type=ChunkType.MARKDOWN_SECTION,
                    metadata=MarkdownMetadata(heading_level=level, title=title or None),
                    boundaries=[b + 1 for b in block_starts if first < b <= last],
                )
            )
        return regions
