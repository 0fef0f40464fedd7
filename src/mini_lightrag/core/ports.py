from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

import numpy as np
from numpy.typing import NDArray

from mini_lightrag.core.models import (
    Chunk,
    DatabaseCounts,
    Document,
    EdgeType,
    GraphEdge,
    GraphNode,
    RawChunk,
    SearchFilters,
    VectorSearchResult,
)


class IEmbeddingBackend(Protocol):
    """Protocol defining a raw text → vector model."""

    @property
    def dimension(self) -> int:
        """Returns the embedding vector dimension size."""
        ...

    def load(self) -> None:
        """Loads model weights. Called once by the embedding service."""
        ...

    def encode(self, texts: list[str]) -> NDArray[np.float32]:
        """Converts a batch of text strings into a contiguous (n, dimension) float32 array."""
        ...


class IEmbedder(Protocol):
    """Protocol defining how the embedding service behaves."""

    @property
    def dimension(self) -> int: ...

    @property
    def is_ready(self) -> bool: ...

    def initialize(self) -> None: ...

    def embed(self, text: str) -> NDArray[np.float32]: ...

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        """Order-preserving, L2-normalized batch embedding."""
        ...

    def embed_query(self, text: str) -> NDArray[np.float32]: ...


class IChunkingStrategy(Protocol):
    """Protocol defining how one language family is split into raw chunks."""

    def process(self, document: Document, language: str) -> list[RawChunk]:
        """Returns the typed line regions of a normalized document, in file order."""
        ...


class IVectorStore(Protocol):
    """Protocol defining the chunk + graph store."""

    def initialize(self) -> None: ...

    def close(self) -> None: ...

    def clear(self) -> None: ...

    def upsert_chunks(self, chunks: Sequence[Chunk]) -> None: ...

    def replace_file_chunks(
        self,
        chunks: Sequence[Chunk],
        stale_ids: Sequence[str],
        tombstone: bool = True,
        now: datetime | None = None,
    ) -> None:
        """Writes one file's chunk set and retires its stale chunks atomically."""
        ...

    def delete_chunks(self, ids: Sequence[str]) -> None: ...

    def vector_search(
        self,
        query_vector: NDArray[np.float32],
        limit: int = 20,
        filters: SearchFilters | None = None,
    ) -> list[VectorSearchResult]: ...

    def get_chunks_by_ids(self, ids: Sequence[str], include_tombstoned: bool = False) -> list[Chunk]: ...

    def get_chunks_by_path(self, path: str, include_tombstoned: bool = False) -> list[Chunk]: ...

    def get_active_chunks(self) -> list[Chunk]: ...

    def get_file_hashes(self) -> dict[str, str]: ...

    def tombstone_chunks(self, ids: Sequence[str], now: datetime | None = None) -> int: ...

    def tombstone_paths(self, paths: Sequence[str], now: datetime | None = None) -> int: ...

    def purge_tombstones(self, older_than: datetime) -> int: ...

    def upsert_nodes(self, nodes: Sequence[GraphNode]) -> None: ...

    def upsert_edges(self, edges: Sequence[GraphEdge]) -> None: ...

    def replace_graph(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None: ...

    def get_all_nodes(self) -> list[GraphNode]: ...

    def get_all_edges(self) -> list[GraphEdge]: ...

    def get_nodes_by_ids(self, ids: Sequence[str]) -> list[GraphNode]: ...

    def query_edges(
        self,
        source_ids: Sequence[str] | None = None,
        target_ids: Sequence[str] | None = None,
        min_weight: float | None = None,
        edge_types: Sequence[EdgeType] | None = None,
        limit: int | None = None,
    ) -> list[GraphEdge]: ...

    def counts(self) -> DatabaseCounts: ...

    def create_indices(self) -> None:
        """Builds the ANN index once the chunk table is large enough."""
        ...

    def compact(self) -> None:
        """Compacts fragmented datasets into optimal read files."""
        ...
