import threading
from typing import Any

import numpy as np
from loguru import logger
from numpy.typing import NDArray

_MODEL_CACHE: dict[str, tuple[Any, threading.Lock]] = {}
_CACHE_LOCK = threading.Lock()


class SentenceTransformerBackend:
    """
    Embedding backend running a sentence-transformers model on CPU/GPU.
    The library is imported lazily and each model is loaded once per process.
    """

    def __init__(
        self,
        model_name: str,
        dimension: int,
        max_token_length: int = 256,
        batch_size: int = 32,
        **kwargs: Any,
    ) -> None:
        self._model_name = model_name
        self._dimension = dimension
        self._max_token_length = max_token_length
        self._batch_size = batch_size
        self.model: Any = None
        self._lock: threading.Lock | None = None

    @property
    def dimension(self) -> int:
        return self._dimension

    def load(self) -> None:
        with _CACHE_LOCK:
            if self._model_name not in _MODEL_CACHE:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading sentence-transformers model: {}", self._model_name)
                model = SentenceTransformer(self._model_name)
                model.max_seq_length = self._max_token_length
                _MODEL_CACHE[self._model_name] = (model, threading.Lock())
            else:
                logger.debug("Using cached sentence-transformers model: {}", self._model_name)
        self.model, self._lock = _MODEL_CACHE[self._model_name]

        model_dim = self.model.get_sentence_embedding_dimension()
        if model_dim is not None and model_dim != self._dimension:
            raise ValueError(
                f"Model '{self._model_name}' produces {model_dim}-d vectors, "
                f"configured vector_dimension is {self._dimension}"
            )

    def encode(self, texts: list[str]) -> NDArray[np.float32]:
        if self.model is None or self._lock is None:
            raise RuntimeError("Model not loaded; call load() first")
        with self._lock:
            vectors = self.model.encode(
                texts,
                batch_size=self._batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        return np.asarray(vectors, dtype=np.float32)
