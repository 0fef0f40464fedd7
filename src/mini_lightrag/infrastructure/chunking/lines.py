from typing import Any

from mini_lightrag.config import ChunkingConfig
from mini_lightrag.core.models import ChunkType, Document, RawChunk, TextMetadata

# Languages whose line windows are prose rather than code
PROSE_LANGUAGES = frozenset({"text", "markdown", "plaintext"})


class LineChunker:
    """
    Fallback chunker: a fixed-size sliding window over lines.
    Consecutive windows share ``overlap_lines`` lines of context.
    """

    def __init__(self, config: ChunkingConfig, settings: dict[str, Any] | None = None) -> None:
        settings = settings or {}
        self.max_lines = int(settings.get("max_lines", config.max_lines_per_chunk))
        self.overlap = int(settings.get("overlap_lines", config.overlap_lines))

    def process(self, document: Document, language: str) -> list[RawChunk]:
        lines = document.content.split("\n")
        chunk_type = (
            ChunkType.GENERIC_TEXT_BLOCK
            if language in PROSE_LANGUAGES
            else ChunkType.GENERIC_CODE_BLOCK
        )
        step = max(1, self.max_lines - self.overlap)

        regions: list[RawChunk] = []
        start = 0
        while start < len(lines):
            end = min(start + self.max_lines, len(lines))
            window = lines[start:end]
            if any(line.strip() for line in window):
                first, last = trim_blank(lines, start, end - 1)
                regions.append(
                    RawChunk(
                        start_line=first + 1,
                        end_line=last + 1,
                        type=chunk_type,
                        metadata=TextMetadata(),
                        overlapped=True,
                    )
                )
            if end >= len(lines):
                break
            start += step
        return regions


def trim_blank(lines: list[str], first: int, last: int) -> tuple[int, int]:
    """Shrinks a 0-indexed inclusive range so it neither starts nor ends on a blank line."""
    while first < last and not lines[first].strip():
        first += 1
    while last > first and not lines[last].strip():
        last -= 1
    return first, last
