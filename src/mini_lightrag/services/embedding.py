import threading
from collections import OrderedDict

import numpy as np
from loguru import logger
from numpy.typing import NDArray

from mini_lightrag.core.errors import BackendUnavailable, InputError
from mini_lightrag.core.ports import IEmbeddingBackend
from mini_lightrag.core.text import sha256_hex


class EmbeddingService:
    """
    Text → vector with L2 normalization and an in-process LRU cache keyed by text hash.
    Wraps any ``IEmbeddingBackend``; backend failures surface as ``BackendUnavailable``.
    """

    def __init__(
        self,
        backend: IEmbeddingBackend,
        cache_size: int = 10_000,
        passage_prefix: str = "",
        query_prefix: str = "",
    ) -> None:
        self.backend = backend
        self._cache_size = cache_size
        self._passage_prefix = passage_prefix
        self._query_prefix = query_prefix
        self._cache: OrderedDict[str, NDArray[np.float32]] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._ready = False

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    @property
    def is_ready(self) -> bool:
        return self._ready

    def initialize(self) -> None:
        """Loads the backend once. Safe to call repeatedly and from several threads."""
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            try:
                self.backend.load()
            except Exception as e:
                logger.error("Embedding backend failed to load: {}", e)
                raise BackendUnavailable(f"Embedding backend failed to load: {e}") from e
            self._ready = True
            logger.info("Embedding service ready (dimension={})", self.dimension)

    def embed(self, text: str) -> NDArray[np.float32]:
        vector: NDArray[np.float32] = self.embed_batch([text])[0]
        return vector

    def embed_query(self, text: str) -> NDArray[np.float32]:
        """Embeds a single query, prepending the query prefix for asymmetric models."""
        if not text.strip():
            raise InputError("Query text cannot be empty.")
        vector: NDArray[np.float32] = self._embed([f"{self._query_prefix}{text}"])[0]

        # Critical structural guarantee
        if vector.shape != (self.dimension,):
            raise BackendUnavailable(f"Expected ({self.dimension},), got {vector.shape}")
        return vector

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        """Embeds passages in input order, prepending the passage prefix."""
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)
        return self._embed([f"{self._passage_prefix}{text}" for text in texts])

    def _embed(self, texts: list[str]) -> NDArray[np.float32]:
        self.initialize()

        keys = [sha256_hex(text) for text in texts]
        result = np.empty((len(texts), self.dimension), dtype=np.float32)
        missing: dict[str, list[int]] = {}

        with self._cache_lock:
            for i, key in enumerate(keys):
                cached = self._cache.get(key)
                if cached is not None:
                    self._cache.move_to_end(key)
                    result[i] = cached
                else:
                    missing.setdefault(key, []).append(i)

        if missing:
            todo = [texts[positions[0]] for positions in missing.values()]
            try:
                vectors = self.backend.encode(todo)
            except Exception as e:
                logger.error("Error embedding batch: {}", e)
                raise BackendUnavailable(f"Embedding backend failed: {e}") from e

            vectors = np.asarray(vectors, dtype=np.float32)
            if vectors.shape != (len(todo), self.dimension):
                raise BackendUnavailable(
                    f"Expected ({len(todo)}, {self.dimension}), got {vectors.shape}"
                )
            vectors = _l2_normalize(vectors)

            with self._cache_lock:
                for (key, positions), vector in zip(missing.items(), vectors, strict=True):
                    for i in positions:
                        result[i] = vector
                    if self._cache_size > 0:
                        self._cache[key] = vector
                        self._cache.move_to_end(key)
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)

        return result

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)


def _l2_normalize(vectors: NDArray[np.float32]) -> NDArray[np.float32]:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    # Zero vectors (e.g. text with no tokens) stay zero
    norms[norms == 0] = 1.0
    normalized: NDArray[np.float32] = (vectors / norms).astype(np.float32)
    return normalized
