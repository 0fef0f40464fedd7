"""Unit tests for EmbeddingService."""

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from mini_lightrag.core.errors import BackendUnavailable, InputError
from mini_lightrag.infrastructure.embeddings.hashing_engine import HashingBackend
from mini_lightrag.services.embedding import EmbeddingService


class CountingBackend:
    """Backend returning fixed vectors and recording what it was asked to encode."""

    def __init__(self, dimension: int = 4) -> None:
        self.dimension = dimension
        self.loads = 0
        self.calls: list[list[str]] = []

    def load(self) -> None:
        self.loads += 1

    def encode(self, texts):
        self.calls.append(list(texts))
        return np.array([[float(len(t)), 1.0, 0.0, 0.0] for t in texts], dtype=np.float32)


@pytest.fixture
def backend():
    return CountingBackend()


@pytest.fixture
def service(backend):
    return EmbeddingService(backend, cache_size=100)


class TestInitialize:
    """Tests for lazy, one-time backend loading."""

    def test_not_ready_until_initialized(self, service):
        assert service.is_ready is False
        service.initialize()
        assert service.is_ready is True

    def test_initialize_is_idempotent(self, service, backend):
        service.initialize()
        service.initialize()

        assert backend.loads == 1

    def test_concurrent_initialize_loads_once(self, service, backend):
        threads = [threading.Thread(target=service.initialize) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert backend.loads == 1

    def test_embed_initializes_implicitly(self, service, backend):
        service.embed("hello")

        assert backend.loads == 1

    def test_load_failure_is_backend_unavailable(self):
        failing = MagicMock()
        failing.dimension = 4
        failing.load.side_effect = OSError("model not found")
        service = EmbeddingService(failing)

        with pytest.raises(BackendUnavailable, match="model not found"):
            service.initialize()
        assert service.is_ready is False


class TestEmbedBatch:
    """Tests for batch embedding."""

    def test_order_and_shape(self, service):
        vectors = service.embed_batch(["a", "bbb", "cc"])

        assert vectors.shape == (3, 4)
        assert vectors.dtype == np.float32
        # First component grows with text length, so order is observable
        assert vectors[0, 0] < vectors[2, 0] < vectors[1, 0]

    def test_vectors_are_unit_length(self, service):
        vectors = service.embed_batch(["alpha", "beta"])

        np.testing.assert_allclose(np.linalg.norm(vectors, axis=1), [1.0, 1.0], rtol=1e-5)

    def test_zero_vectors_stay_zero(self):
        service = EmbeddingService(HashingBackend(dimension=16))

        vector = service.embed("!!!")

        assert not vector.any()

    def test_empty_batch(self, service, backend):
        assert service.embed_batch([]).shape == (0, 4)
        assert backend.calls == []

    def test_duplicates_encoded_once(self, service, backend):
        vectors = service.embed_batch(["same", "same", "other"])

        assert backend.calls == [["same", "other"]]
        np.testing.assert_array_equal(vectors[0], vectors[1])

    def test_cache_hits_skip_backend(self, service, backend):
        service.embed_batch(["one", "two"])
        service.embed_batch(["two", "three"])

        assert backend.calls == [["one", "two"], ["three"]]
        assert service.cache_size == 3

    def test_cache_is_bounded(self, backend):
        service = EmbeddingService(backend, cache_size=2)

        service.embed_batch(["a", "bb", "ccc"])

        assert service.cache_size == 2

    def test_clear_cache(self, service, backend):
        service.embed("x")
        service.clear_cache()
        service.embed("x")

        assert len(backend.calls) == 2

    def test_backend_error_is_backend_unavailable(self, service, backend):
        backend.encode = MagicMock(side_effect=RuntimeError("device lost"))

        with pytest.raises(BackendUnavailable, match="device lost"):
            service.embed_batch(["text"])

    def test_wrong_shape_is_backend_unavailable(self, service, backend):
        backend.encode = MagicMock(return_value=np.zeros((1, 3), dtype=np.float32))

        with pytest.raises(BackendUnavailable, match="Expected"):
            service.embed_batch(["text"])

    def test_passage_prefix(self, backend):
        service = EmbeddingService(backend, passage_prefix="passage: ")

        service.embed_batch(["doc"])

        assert backend.calls == [["passage: doc"]]


class TestEmbedQuery:
    """Tests for query embedding."""

    def test_query_prefix(self, backend):
        service = EmbeddingService(backend, query_prefix="query: ", passage_prefix="passage: ")

        vector = service.embed_query("find me")

        assert backend.calls == [["query: find me"]]
        assert vector.shape == (4,)

    def test_empty_query_rejected(self, service):
        with pytest.raises(InputError, match="cannot be empty"):
            service.embed_query("   ")
