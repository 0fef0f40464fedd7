from pathlib import PurePath

from loguru import logger

from mini_lightrag.config import ChunkingConfig
from mini_lightrag.core.models import Chunk, Document, RawChunk
from mini_lightrag.core.ports import IChunkingStrategy
from mini_lightrag.core.registry import ComponentRegistry
from mini_lightrag.core.text import estimate_tokens, extract_keywords, normalize_content, sha256_hex

UNKNOWN_LANGUAGE = "text"


class ChunkingService:
    """
    Splits a file into ordered, typed chunks.
    The strategy is chosen per language from configuration; every strategy's output is then
    bounded by ``max_lines_per_chunk`` / ``max_tokens_per_chunk``, overlapped, hashed and keyworded here.
    """

    def __init__(self, config: ChunkingConfig) -> None:
        self.config = config
        self._extensions: dict[str, str] = {}
        self._strategies: dict[str, IChunkingStrategy] = {}

        for language, lang_config in config.languages.items():
            for ext in lang_config.extensions:
                self._extensions[ext.lower()] = language
            ChunkerClass = ComponentRegistry.get_chunker(lang_config.strategy)
            self._strategies[language] = ChunkerClass(config, lang_config.settings)

        LineChunkerClass = ComponentRegistry.get_chunker("line-based")
        self._strategies[UNKNOWN_LANGUAGE] = LineChunkerClass(config)

    @property
    def supported_extensions(self) -> list[str]:
        return sorted(self._extensions)

    def detect_language(self, path: str) -> str:
        return self._extensions.get(PurePath(path).suffix.lower(), UNKNOWN_LANGUAGE)

    def chunk_file(self, path: str, text: str, file_hash: str = "") -> list[Chunk]:
        """Deterministically chunks one file. ``path`` is stored as given, in POSIX form."""
        path = PurePath(path).as_posix()
        content = normalize_content(text)
        lines = content.split("\n")
        if not any(line.strip() for line in lines):
            return []

        language = self.detect_language(path)
        strategy = self._strategies[language]
        document = Document(
            filepath=path, content=content, content_hash=file_hash or sha256_hex(content, 64)
        )

        raw_chunks: list[RawChunk] = []
        for raw in strategy.process(document, language):
            raw_chunks.extend(self._enforce_bounds(raw, lines))

        offsets = _line_offsets(lines)

        chunks: list[Chunk] = []
        for i, raw in enumerate(raw_chunks):
            line_count = raw.end_line - raw.start_line + 1
            metadata = raw.metadata.model_copy(update={"line_count": line_count})

            start_line = raw.start_line
            if not raw.overlapped and i > 0 and self.config.overlap_lines > 0:
                start_line = max(1, raw.start_line - self.config.overlap_lines)

            body = "\n".join(lines[start_line - 1 : raw.end_line])
            chunks.append(
                Chunk(
                    id=sha256_hex(f"{path}:{start_line}:{raw.end_line}:{body}"),
                    text_hash=sha256_hex(body, 64),
                    path=path,
                    language=language,
                    type=raw.type,
                    text=body,
                    start_line=start_line,
                    end_line=raw.end_line,
                    start_offset=offsets[start_line - 1],
                    end_offset=offsets[raw.end_line - 1] + len(lines[raw.end_line - 1]),
                    keywords=extract_keywords(body),
                    metadata=metadata,
                    file_hash=document.content_hash,
                )
            )

        logger.debug("Chunked {} ({}) into {} chunks", path, language, len(chunks))
        return chunks

    def _fits(self, lines: list[str], first: int, last: int) -> bool:
        """``first``/``last`` are 1-indexed inclusive."""
        if last - first + 1 > self.config.max_lines_per_chunk:
            return False
        return estimate_tokens("\n".join(lines[first - 1 : last])) <= self.config.max_tokens_per_chunk

    def _enforce_bounds(self, raw: RawChunk, lines: list[str]) -> list[RawChunk]:
        """Splits an oversize region at the last boundary that fits, else hard-cuts it."""
        if self._fits(lines, raw.start_line, raw.end_line):
            return [raw]

        boundaries = set(raw.boundaries) or _statement_boundaries(lines, raw.start_line, raw.end_line)
        pieces: list[RawChunk] = []
        start = raw.start_line
        while start <= raw.end_line:
            limit = start
            while limit < raw.end_line and self._fits(lines, start, limit + 1):
                limit += 1

            if limit == raw.end_line:
                end = limit
            else:
                cuts = [b for b in boundaries if start < b <= limit + 1]
                end = max(cuts) - 1 if cuts else limit

            if any(line.strip() for line in lines[start - 1 : end]):
                pieces.append(raw.model_copy(update={"start_line": start, "end_line": end, "boundaries": []}))
            start = end + 1
        return pieces


def _statement_boundaries(lines: list[str], first: int, last: int) -> set[int]:
    """Lines following a blank line, a closing brace or a statement end."""
    found: set[int] = set()
    for number in range(first + 1, last + 1):
        prev = lines[number - 2].strip()
        current = lines[number - 1].lstrip()
        if not prev or prev.endswith(("}", ";")) or current.startswith("#"):
            found.add(number)
    return found


def _line_offsets(lines: list[str]) -> list[int]:
    offsets: list[int] = []
    position = 0
    for line in lines:
        offsets.append(position)
        position += len(line) + 1
    return offsets
