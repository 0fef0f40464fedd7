"""Unit tests for the text helpers."""

import pytest

from mini_lightrag.core.text import (
    estimate_tokens,
    extract_keywords,
    normalize_content,
    path_matches,
    query_terms,
    sha256_hex,
    split_identifier,
    stem,
    tokenize,
)


def test_sha256_hex_is_truncated_and_stable():
    assert len(sha256_hex("abc")) == 32
    assert len(sha256_hex("abc", 64)) == 64
    assert sha256_hex("abc") == sha256_hex("abc")
    assert sha256_hex("abc") != sha256_hex("abd")


def test_normalize_content():
    """CRLF, CR and trailing whitespace are normalized away."""
    assert normalize_content("a  \r\nb\rc\t\n") == "a\nb\nc\n"


def test_normalize_content_nfc():
    decomposed = "cafe\u0301"
    assert normalize_content(decomposed) == "caf\u00e9"


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_split_identifier():
    assert split_identifier("calculateTotal") == ["calculate", "total"]
    assert split_identifier("HTTPServer") == ["http", "server"]
    assert split_identifier("snake_case_name") == ["snake", "case", "name"]


def test_stem():
    assert stem("numbers") == "number"
    assert stem("libraries") == "library"
    assert stem("class") == "class"
    assert stem("is") == "is"


def test_tokenize_drops_stopwords_and_splits_identifiers():
    tokens = tokenize("Calculate the sum of numbers in calculateTotal")
    assert tokens == ["calculate", "sum", "number", "calculate", "total"]


def test_extract_keywords_keeps_identifiers_and_parts():
    keywords = extract_keywords("function calculateTotal(items) { return 'grand total'; }")

    assert "calculatetotal" in keywords
    assert "calculate" in keywords
    assert "total" in keywords
    assert "grand total" in keywords
    assert "return" in keywords
    assert len(keywords) == len(set(keywords))


def test_extract_keywords_respects_limit():
    text = " ".join(f"word{i}x" for i in range(100))
    assert len(extract_keywords(text, limit=5)) == 5


def test_query_terms_are_distinct():
    assert query_terms("sum sums SUM") == ["sum"]


@pytest.mark.parametrize(
    "path, pattern, expected",
    [
        ("src/math.ts", "src", True),
        ("src/math.ts", "src/", True),
        ("src", "src", True),
        ("src2/other.ts", "src", False),
        ("srcs/a.ts", "src/", False),
        ("myXdir/a.ts", "my_dir", False),
        ("my_dir/a.ts", "my_dir", True),
        ("docs/a.md", "docs/**/*.md", True),
        ("docs/deep/a.md", "docs/**/*.md", True),
        ("a.ts", "**/*.ts", True),
        ("a.py", "**/*.ts", False),
    ],
)
def test_path_matches(path, pattern, expected):
    assert path_matches(path, pattern) is expected
