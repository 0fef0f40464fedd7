from typing import Any

from mini_lightrag.infrastructure.chunking.code import CodeChunker
from mini_lightrag.infrastructure.chunking.lines import LineChunker
from mini_lightrag.infrastructure.chunking.markdown import MarkdownChunker
from mini_lightrag.infrastructure.embeddings.hashing_engine import HashingBackend
from mini_lightrag.infrastructure.embeddings.sentence_transformers_engine import (
    SentenceTransformerBackend,
)


class ComponentRegistry:
    """Registry pattern to dynamically map string names to class implementations."""

    _chunkers: dict[str, Any] = {
        "ast": CodeChunker,
        "regex": MarkdownChunker,
        "line-based": LineChunker,
    }

    _embedding_backends: dict[str, Any] = {
        "sentence-transformers": SentenceTransformerBackend,
        "hashing": HashingBackend,
    }

    @classmethod
    def get_chunker(cls, name: str) -> Any:
        if name not in cls._chunkers:
            raise ValueError(f"Unknown chunking strategy: '{name}'")
        return cls._chunkers[name]

    @classmethod
    def get_embedding_backend(cls, name: str) -> Any:
        if name not in cls._embedding_backends:
            raise ValueError(f"Unknown embedding backend: '{name}'")
        return cls._embedding_backends[name]
