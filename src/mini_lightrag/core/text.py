"""Text helpers shared by chunking, embedding and ranking: hashing, keywords, path filters."""

import hashlib
import math
import re
import unicodedata
from fnmatch import fnmatch

_IDENTIFIER_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")
_QUOTED_RE = re.compile(r"[\"'`]([^\"'`\n]{3,49})[\"'`]")

STOPWORDS: frozenset[str] = frozenset(
    {
        "the", "and", "for", "with", "this", "that", "from", "into", "are", "was",
        "were", "has", "have", "had", "not", "but", "can", "will", "its", "all",
        "any", "our", "your", "you", "they", "them", "then", "than", "there",
        "their", "what", "when", "where", "which", "who", "how", "why", "use",
        "used", "using", "also", "each", "some", "such", "only", "other", "more",
        "most", "very", "just", "about", "over", "under", "between", "of", "to",
        "in", "on", "at", "by", "an", "a", "is", "it", "be", "as", "or", "if",
        "do", "does", "did", "so", "no", "yes",
    }
)

MAX_KEYWORDS = 30


def sha256_hex(text: str, length: int = 32) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def normalize_content(content: str) -> str:
    """Normalizes line endings, trailing whitespace and Unicode form for stable hashing."""
    content = content.replace("\r\n", "\n").replace("\r", "\n")
    content = "\n".join(line.rstrip() for line in content.split("\n"))
    return unicodedata.normalize("NFC", content)


def estimate_tokens(text: str) -> int:
    # Rough estimate: 1 token ~ 4 characters
    return math.ceil(len(text) / 4)


def split_identifier(identifier: str) -> list[str]:
    """Splits camelCase, PascalCase and snake_case identifiers into lowercase parts."""
    parts: list[str] = []
    for piece in re.split(r"[_$]+", identifier):
        parts.extend(match.lower() for match in _CAMEL_RE.findall(piece))
    return parts


def stem(word: str) -> str:
    """Very light plural folding so that 'numbers' and 'number' meet."""
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens, identifiers split into parts, stopwords removed."""
    tokens: list[str] = []
    for identifier in _IDENTIFIER_RE.findall(text):
        for part in split_identifier(identifier):
            if len(part) < 2 or part in STOPWORDS or part.isdigit():
                continue
            tokens.append(stem(part))
    return tokens


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Ordered, de-duplicated keywords: whole identifiers, their parts and quoted terms."""
    seen: dict[str, None] = {}

    def add(word: str) -> None:
        word = word.lower()
        if len(word) > 2 and word not in STOPWORDS and not word.isdigit():
            seen.setdefault(word, None)

    for identifier in _IDENTIFIER_RE.findall(text):
        add(identifier)
        parts = split_identifier(identifier)
        if len(parts) > 1:
            for part in parts:
                add(part)
        if len(seen) >= limit:
            break

    for quoted in _QUOTED_RE.findall(text)[:10]:
        if len(seen) >= limit:
            break
        add(quoted.strip())

    return list(seen)[:limit]


def query_terms(text: str) -> list[str]:
    """Distinct keyword terms of a search query."""
    return list(dict.fromkeys(tokenize(text)))


def path_matches(path: str, pattern: str) -> bool:
    """Glob patterns match with fnmatch; a plain path matches itself and anything below it."""
    if any(ch in pattern for ch in "*?"):
        # `**/` may also match zero directories
        return fnmatch(path, pattern) or fnmatch(path, pattern.replace("**/", ""))
    prefix = pattern.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")
