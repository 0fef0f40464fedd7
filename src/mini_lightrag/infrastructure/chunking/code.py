import ast
import re
from typing import Any

from loguru import logger

from mini_lightrag.config import ChunkingConfig
from mini_lightrag.core.models import (
    ChunkType,
    Document,
    RawChunk,
    SymbolMetadata,
    TextMetadata,
)
from mini_lightrag.infrastructure.chunking.lines import LineChunker, trim_blank

_DECL_RE = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?(?:const\s+)?"
    r"(?P<kind>function\*?|class|interface|enum|type)\s+(?P<name>[A-Za-z_$][\w$]*)"
)
_ARROW_RE = re.compile(
    r"^\s*(?:export\s+)?(?:const|let|var)\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?::[^=]+)?="
    r"\s*(?:async\s+)?(?:\([^)]*\)|[A-Za-z_$][\w$]*)\s*(?::\s*[^=]+)?=>"
)
_BRANCH_RE = re.compile(r"\b(?:if|for|while|case|catch)\b|&&|\|\||\?\?")

_KIND_TO_TYPE: dict[str, ChunkType] = {
    "function": ChunkType.CODE_FUNCTION,
    "class": ChunkType.CODE_CLASS,
    "interface": ChunkType.CODE_INTERFACE,
    "enum": ChunkType.CODE_ENUM,
    "type": ChunkType.CODE_TYPE,
}

_OPENERS = "{(["
_CLOSERS = "})]"


def match_declaration(line: str) -> tuple[str, str] | None:
    """Returns ``(kind, name)`` when a line opens a function/class/interface/enum/type declaration."""
    m = _DECL_RE.match(line)
    if m:
        return m.group("kind").rstrip("*"), m.group("name")
    m = _ARROW_RE.match(line)
    if m:
        return "function", m.group("name")
    return None


def _signature(line: str) -> str:
    return line.strip().rstrip("{").strip()


class CodeChunker:
    """
    Structural chunker for source code.
    Python is parsed with the stdlib ``ast`` module; TypeScript/JavaScript and other
    brace languages go through a declaration scanner with brace balancing.
    Leading comment lines (up to ``include_docstring_lines``) are folded into each declaration.
    """

    def __init__(self, config: ChunkingConfig, settings: dict[str, Any] | None = None) -> None:
        self.config = config
        self.settings = settings or {}
        self.docstring_lines = int(
            self.settings.get("include_docstring_lines", config.include_docstring_lines)
        )
        self._fallback = LineChunker(config, settings)

    def process(self, document: Document, language: str) -> list[RawChunk]:
        lines = document.content.split("\n")
        if not any(line.strip() for line in lines):
            return []
        if language == "python":
            return self._chunk_python(document, lines)
        return self._chunk_braces(lines)

    # ---- brace languages -------------------------------------------------

    def _chunk_braces(self, lines: list[str]) -> list[RawChunk]:
        declarations: list[tuple[int, int, str, str]] = []
        i = 0
        while i < len(lines):
            found = match_declaration(lines[i])
            if found is None:
                i += 1
                continue
            kind, name = found
            end = self._find_end(lines, i, kind)
            declarations.append((i, end, kind, name))
            i = end + 1

        regions: list[RawChunk] = []
        cursor = 0
        for start, end, kind, name in declarations:
            doc_start = self._leading_comment_start(lines, start, floor=cursor)
            if doc_start > cursor:
                regions.extend(self._gap_regions(lines, cursor, doc_start - 1))
            text = "\n".join(lines[start : end + 1])
            regions.append(
                RawChunk(
                    start_line=doc_start + 1,
                    end_line=end + 1,
                    type=_KIND_TO_TYPE[kind],
                    metadata=SymbolMetadata(
                        symbol_name=name,
                        symbol_kind=kind,
                        signature=_signature(lines[start]),
                        complexity=1 + len(_BRANCH_RE.findall(text)),
                    ),
                )
            )
            cursor = end + 1
        if cursor < len(lines):
            regions.extend(self._gap_regions(lines, cursor, len(lines) - 1))
        return regions

    def _find_end(self, lines: list[str], start: int, kind: str) -> int:
        """Returns the 0-indexed last line of the declaration starting at ``start``."""
        depth = 0
        in_body = False
        quote: str | None = None
        in_block_comment = False

        for j in range(start, len(lines)):
            line = lines[j]
            k = 0
            while k < len(line):
                ch = line[k]
                nxt = line[k + 1] if k + 1 < len(line) else ""
                if in_block_comment:
                    if ch == "*" and nxt == "/":
                        in_block_comment = False
                        k += 1
                elif quote is not None:
                    if ch == "\\":
                        k += 1
                    elif ch == quote:
                        quote = None
                elif ch == "/" and nxt == "/":
                    break
                elif ch == "/" and nxt == "*":
                    in_block_comment = True
                    k += 1
                elif ch in "'\"`":
                    quote = ch
                elif ch in _OPENERS:
                    if ch == "{" and depth == 0 and kind != "type":
                        in_body = True
                    depth += 1
                elif ch in _CLOSERS:
                    depth = max(0, depth - 1)
                    if in_body and depth == 0:
                        return j
                elif ch == ";" and depth == 0:
                    return j
                k += 1
            # Template literals carry over lines, single quotes do not
            if quote in ("'", '"'):
                quote = None

            if kind == "type" and depth == 0 and quote is None and not in_block_comment:
                nxt_line = lines[j + 1] if j + 1 < len(lines) else ""
                continues = nxt_line.strip().startswith(("|", "&", "=")) or (
                    nxt_line[:1].isspace() and nxt_line.strip() != ""
                )
                if not continues:
                    return j
        return len(lines) - 1

    def _leading_comment_start(self, lines: list[str], start: int, floor: int) -> int:
        """Walks up from a declaration over decorators and up to N comment lines."""
        first = start
        j = start - 1
        while j >= floor and lines[j].strip().startswith("@"):
            first = j
            j -= 1

        taken = 0
        in_block = False
        while j >= floor and taken < self.docstring_lines:
            stripped = lines[j].strip()
            if not stripped:
                break
            if in_block:
                if stripped.startswith("/*"):
                    in_block = False
            elif stripped.endswith("*/"):
                in_block = not stripped.startswith("/*")
            elif not stripped.startswith("//"):
                break
            first = j
            taken += 1
            j -= 1
        return first

    def _gap_regions(self, lines: list[str], first: int, last: int) -> list[RawChunk]:
        """Splits the code between declarations into JSDoc ``symbol-doc`` and ``generic-code-block`` runs."""
        regions: list[RawChunk] = []
        run_start: int | None = None
        j = first
        while j <= last:
            stripped = lines[j].strip()
            if stripped.startswith("/**"):
                if run_start is not None:
                    regions.extend(self._generic(lines, run_start, j - 1))
                    run_start = None
                end = j
                while end < last and "*/" not in lines[end]:
                    end += 1
                regions.append(
                    RawChunk(
                        start_line=j + 1,
                        end_line=end + 1,
                        type=ChunkType.SYMBOL_DOC,
                        metadata=TextMetadata(),
                    )
                )
                j = end + 1
                continue
            if run_start is None and stripped:
                run_start = j
            j += 1
        if run_start is not None:
            regions.extend(self._generic(lines, run_start, last))
        return regions

    def _generic(self, lines: list[str], first: int, last: int) -> list[RawChunk]:
        if not any(line.strip() for line in lines[first : last + 1]):
            return []
        first, last = trim_blank(lines, first, last)
        return [
            RawChunk(
                start_line=first + 1,
                end_line=last + 1,
                type=ChunkType.GENERIC_CODE_BLOCK,
                metadata=TextMetadata(),
            )
        ]

    # ---- python ------------------------------------------------------------

    def _chunk_python(self, document: Document, lines: list[str]) -> list[RawChunk]:
        try:
            module = ast.parse(document.content)
        except SyntaxError as e:
            logger.debug("Falling back to line chunks for {}: {}", document.filepath, e)
            return self._fallback.process(document, "python")

        regions: list[RawChunk] = []
        cursor = 0
        for node in module.body:
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                continue
            decl_start = min([d.lineno for d in node.decorator_list] + [node.lineno]) - 1
            end = (node.end_lineno or node.lineno) - 1
            start = self._python_comment_start(lines, decl_start, floor=cursor)
            if start > cursor:
                regions.extend(self._python_gap(module, lines, cursor, start - 1))

            is_class = isinstance(node, ast.ClassDef)
            regions.append(
                RawChunk(
                    start_line=start + 1,
                    end_line=end + 1,
                    type=ChunkType.CODE_CLASS if is_class else ChunkType.CODE_FUNCTION,
                    metadata=SymbolMetadata(
                        symbol_name=node.name,
                        symbol_kind="class" if is_class else "function",
                        signature=lines[node.lineno - 1].strip().rstrip(":"),
                        complexity=_python_complexity(node),
                    ),
                    boundaries=[stmt.lineno for stmt in node.body if stmt.lineno - 1 > start],
                )
            )
            cursor = end + 1
        if cursor < len(lines):
            regions.extend(self._python_gap(module, lines, cursor, len(lines) - 1))
        return regions

    def _python_comment_start(self, lines: list[str], start: int, floor: int) -> int:
        first = start
        j = start - 1
        taken = 0
        while j >= floor and taken < self.docstring_lines and lines[j].strip().startswith("#"):
            first = j
            taken += 1
            j -= 1
        return first

    def _python_gap(
        self, module: ast.Module, lines: list[str], first: int, last: int
    ) -> list[RawChunk]:
        """Module docstring becomes ``symbol-doc``; other top-level code a ``generic-code-block``."""
        doc = module.body[0] if module.body else None
        if (
            isinstance(doc, ast.Expr)
            and isinstance(doc.value, ast.Constant)
            and isinstance(doc.value.value, str)
            and first <= doc.lineno - 1 <= last
        ):
            doc_first, doc_last = doc.lineno - 1, (doc.end_lineno or doc.lineno) - 1
            regions = self._generic(lines, first, doc_first - 1) if doc_first > first else []
            regions.append(
                RawChunk(
                    start_line=doc_first + 1,
                    end_line=doc_last + 1,
                    type=ChunkType.SYMBOL_DOC,
                    metadata=TextMetadata(),
                )
            )
            if doc_last < last:
                regions.extend(self._generic(lines, doc_last + 1, last))
            return regions
        return self._generic(lines, first, last)


def _python_complexity(node: ast.AST) -> int:
    branches = (
        ast.If,
        ast.For,
        ast.AsyncFor,
        ast.While,
        ast.ExceptHandler,
        ast.BoolOp,
        ast.IfExp,
        ast.comprehension,
    )
    return 1 + sum(isinstance(child, branches) for child in ast.walk(node))
