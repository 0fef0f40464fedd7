"""Unit tests for the chunking strategies and ChunkingService."""

import pytest

from mini_lightrag.config import ChunkingConfig
from mini_lightrag.core.models import ChunkType, MarkdownMetadata, SymbolMetadata
from mini_lightrag.core.text import estimate_tokens
from mini_lightrag.infrastructure.chunking.code import match_declaration
from mini_lightrag.services.chunking import ChunkingService

TS_SOURCE = """import { x } from './x';

/**
 * Adds two numbers.
 */
export function add(a: number, b: number): number {
  return a + b;
}

export interface Shape {
  area(): number;
}

export const double = (n: number) => n * 2;
"""

PY_SOURCE = '''"""Module docs."""
import os


# Helper comment
@decorator
def helper(x):
    if x:
        return 1
    return 2


class Greeter:
    def greet(self):
        return "hi"
'''

MD_SOURCE = """Intro text.

# Math Library

Adds numbers.

```python
# not a heading
```

## Usage
Call add.
"""


@pytest.fixture
def service():
    return ChunkingService(ChunkingConfig(overlap_lines=0))


class TestDeclarationMatching:
    """Tests for the first-line declaration patterns."""

    @pytest.mark.parametrize(
        "line, expected",
        [
            ("export function add(a, b) {", ("function", "add")),
            ("export default async function* gen() {", ("function", "gen")),
            ("export abstract class Base {", ("class", "Base")),
            ("interface Shape {", ("interface", "Shape")),
            ("export const enum Color {", ("enum", "Color")),
            ("type Id = string;", ("type", "Id")),
            ("const handler = async (req) => {", ("function", "handler")),
            ("export const total: Fn = (xs: number[]) => 0;", ("function", "total")),
        ],
    )
    def test_matches(self, line, expected):
        assert match_declaration(line) == expected

    @pytest.mark.parametrize("line", ["const x = 5;", "return add(a, b);", "// function fake() {"])
    def test_non_declarations(self, line):
        assert match_declaration(line) is None


class TestTypeScriptChunking:
    """Tests for the brace-language structural chunker."""

    def test_regions_and_types(self, service):
        chunks = service.chunk_file("src/math.ts", TS_SOURCE)

        assert [c.type for c in chunks] == [
            ChunkType.GENERIC_CODE_BLOCK,
            ChunkType.CODE_FUNCTION,
            ChunkType.CODE_INTERFACE,
            ChunkType.CODE_FUNCTION,
        ]
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 1), (3, 8), (10, 12), (14, 14)]
        assert all(c.language == "typescript" for c in chunks)

    def test_doc_comment_folded_into_function(self, service):
        add = service.chunk_file("src/math.ts", TS_SOURCE)[1]

        assert add.text.startswith("/**")
        assert "return a + b;" in add.text
        assert isinstance(add.metadata, SymbolMetadata)
        assert add.metadata.symbol_name == "add"
        assert add.metadata.symbol_kind == "function"
        assert add.metadata.signature == "export function add(a: number, b: number): number"
        assert add.metadata.line_count == 6

    def test_orphan_jsdoc_becomes_symbol_doc(self, service):
        source = "/**\n * Shared notes.\n */\n\nconst x = 1;\n"

        chunks = service.chunk_file("notes.js", source)

        assert [c.type for c in chunks] == [ChunkType.SYMBOL_DOC, ChunkType.GENERIC_CODE_BLOCK]

    def test_braces_in_strings_do_not_end_body(self, service):
        source = 'function weird() {\n  const s = "}";\n  return s;\n}\n'

        chunks = service.chunk_file("weird.js", source)

        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 4)

    def test_offsets_cover_chunk_text(self, service):
        for chunk in service.chunk_file("src/math.ts", TS_SOURCE):
            assert TS_SOURCE[chunk.start_offset : chunk.end_offset] == chunk.text


class TestPythonChunking:
    """Tests for ast-based Python chunking."""

    def test_regions_and_types(self, service):
        chunks = service.chunk_file("pkg/mod.py", PY_SOURCE)

        assert [c.type for c in chunks] == [
            ChunkType.SYMBOL_DOC,
            ChunkType.GENERIC_CODE_BLOCK,
            ChunkType.CODE_FUNCTION,
            ChunkType.CODE_CLASS,
        ]
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 1), (2, 2), (5, 10), (13, 15)]

    def test_comments_and_decorators_folded(self, service):
        helper = service.chunk_file("pkg/mod.py", PY_SOURCE)[2]

        assert helper.text.startswith("# Helper comment\n@decorator\ndef helper(x):")
        assert helper.metadata.symbol_name == "helper"
        assert helper.metadata.signature == "def helper(x)"
        assert helper.metadata.complexity == 2

    def test_syntax_error_falls_back_to_lines(self, service):
        chunks = service.chunk_file("broken.py", "def broken(:\n    pass\n")

        assert len(chunks) == 1
        assert chunks[0].type == ChunkType.GENERIC_CODE_BLOCK

    def test_fallback_windows_overlap_once(self):
        """Line windows already share overlap_lines; no extra overlap is prepended."""
        windowed = ChunkingService(ChunkingConfig(max_lines_per_chunk=4, overlap_lines=1))
        source = "def broken(:\n" + "    x = 1\n" * 9

        chunks = windowed.chunk_file("broken.py", source)

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 4), (4, 7), (7, 10), (10, 10)]


class TestMarkdownChunking:
    """Tests for heading-delimited markdown chunking."""

    def test_sections(self, service):
        chunks = service.chunk_file("docs/guide.md", MD_SOURCE)

        assert all(c.type == ChunkType.MARKDOWN_SECTION for c in chunks)
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 1), (3, 9), (11, 12)]
        titles = [c.metadata.title for c in chunks]
        levels = [c.metadata.heading_level for c in chunks]
        assert titles == [None, "Math Library", "Usage"]
        assert levels == [None, 1, 2]
        assert all(isinstance(c.metadata, MarkdownMetadata) for c in chunks)

    def test_hash_inside_fence_is_not_a_heading(self, service):
        chunks = service.chunk_file("docs/guide.md", MD_SOURCE)

        assert "# not a heading" in chunks[1].text
        assert 8 not in [c.start_line for c in chunks]

    def test_overlap_prepends_previous_lines(self):
        overlapping = ChunkingService(ChunkingConfig(overlap_lines=2))

        chunks = overlapping.chunk_file("docs/guide.md", MD_SOURCE)

        assert chunks[0].start_line == 1
        assert chunks[1].start_line == 1
        assert chunks[2].start_line == 9
        # line_count describes the section itself, not the overlap
        assert chunks[2].metadata.line_count == 2


class TestBounds:
    """Tests for max line / token enforcement."""

    def test_oversize_function_split_at_statements(self):
        service = ChunkingService(ChunkingConfig(max_lines_per_chunk=5, overlap_lines=0))
        body = "\n".join(f"    x{i} = {i}" for i in range(1, 12))
        source = f"def long():\n{body}\n"

        chunks = service.chunk_file("long.py", source)

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 5), (6, 10), (11, 12)]
        assert all(c.type == ChunkType.CODE_FUNCTION for c in chunks)
        assert all(c.end_line - c.start_line + 1 <= 5 for c in chunks)

    def test_token_bound_hard_cuts(self):
        service = ChunkingService(ChunkingConfig(max_tokens_per_chunk=12, overlap_lines=0))
        source = "\n".join(f"line number {i} here" for i in range(30))

        chunks = service.chunk_file("notes.txt", source)

        assert len(chunks) > 1
        assert all(estimate_tokens(c.text) <= 12 for c in chunks)
        assert chunks[0].start_line == 1
        assert chunks[-1].end_line == 30


class TestChunkIdentity:
    """Tests for stable, deterministic chunk ids."""

    def test_same_input_same_ids(self, service):
        first = service.chunk_file("src/math.ts", TS_SOURCE)
        second = service.chunk_file("src/math.ts", TS_SOURCE)

        assert [c.id for c in first] == [c.id for c in second]
        assert [c.text_hash for c in first] == [c.text_hash for c in second]

    def test_path_is_part_of_identity(self, service):
        a = service.chunk_file("a/math.ts", TS_SOURCE)
        b = service.chunk_file("b/math.ts", TS_SOURCE)

        assert {c.id for c in a}.isdisjoint(c.id for c in b)
        assert [c.text_hash for c in a] == [c.text_hash for c in b]

    def test_editing_one_function_keeps_others(self, service):
        before = service.chunk_file("src/math.ts", TS_SOURCE)
        after = service.chunk_file("src/math.ts", TS_SOURCE.replace("a + b", "b + a"))

        assert before[1].id != after[1].id
        assert before[2].id == after[2].id
        assert before[3].id == after[3].id

    def test_crlf_and_lf_produce_same_chunks(self, service):
        lf = service.chunk_file("src/math.ts", TS_SOURCE)
        crlf = service.chunk_file("src/math.ts", TS_SOURCE.replace("\n", "\r\n"))

        assert [c.id for c in lf] == [c.id for c in crlf]

    def test_file_hash_defaults_to_content_hash(self, service):
        chunks = service.chunk_file("src/math.ts", TS_SOURCE)
        given = service.chunk_file("src/math.ts", TS_SOURCE, file_hash="abc")

        assert len(chunks[0].file_hash) == 64
        assert all(c.file_hash == "abc" for c in given)


class TestLanguageRouting:
    """Tests for extension based language detection."""

    def test_detect_language(self, service):
        assert service.detect_language("a/b.tsx") == "typescript"
        assert service.detect_language("a/b.MD") == "markdown"
        assert service.detect_language("a/b.unknown") == "text"

    def test_unknown_extension_is_text_block(self, service):
        chunks = service.chunk_file("notes.xyz", "first line\nsecond line\n")

        assert len(chunks) == 1
        assert chunks[0].type == ChunkType.GENERIC_TEXT_BLOCK
        assert chunks[0].language == "text"

    def test_blank_file_has_no_chunks(self, service):
        assert service.chunk_file("empty.ts", "\n   \n") == []

    def test_keywords_extracted(self, service):
        add = service.chunk_file("src/math.ts", TS_SOURCE)[1]
        assert "add" in add.keywords
        assert "number" in add.keywords

    def test_supported_extensions(self, service):
        assert ".py" in service.supported_extensions
        assert ".md" in service.supported_extensions
