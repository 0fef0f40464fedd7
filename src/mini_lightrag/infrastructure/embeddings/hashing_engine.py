import hashlib
from typing import Any

import numpy as np
from numpy.typing import NDArray

from mini_lightrag.core.text import tokenize


class HashingBackend:
    """
    Deterministic, model-free embedding backend.
    Signed feature hashing of word tokens, plus character trigrams at a lower weight so that
    near-miss spellings still overlap. Suitable for tests and offline setups.
    """

    def __init__(
        self,
        dimension: int,
        trigram_weight: float = 0.3,
        **kwargs: Any,
    ) -> None:
        self._dimension = dimension
        self._trigram_weight = trigram_weight

    @property
    def dimension(self) -> int:
        return self._dimension

    def load(self) -> None:
        # Nothing to load
        return None

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self._dimension, sign

    def _encode_one(self, text: str) -> NDArray[np.float32]:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in tokenize(text):
            index, sign = self._bucket(f"w:{token}")
            vector[index] += sign
            if self._trigram_weight > 0 and len(token) > 3:
                padded = f"#{token}#"
                for i in range(len(padded) - 2):
                    index, sign = self._bucket(f"c:{padded[i : i + 3]}")
                    vector[index] += sign * self._trigram_weight
        return vector

    def encode(self, texts: list[str]) -> NDArray[np.float32]:
        if not texts:
            return np.empty((0, self._dimension), dtype=np.float32)
        return np.vstack([self._encode_one(text) for text in texts]).astype(np.float32)
