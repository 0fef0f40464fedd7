"""Pytest configuration and fixtures."""

from datetime import datetime

import pytest
from loguru import logger

from mini_lightrag.core.models import Chunk, ChunkType, TextMetadata, utcnow
from mini_lightrag.core.text import extract_keywords, sha256_hex


@pytest.fixture
def caplog(caplog):
    """Enable Loguru logging to be captured by pytest's caplog fixture."""
    import logging

    class PropagateHandler(logging.Handler):
        def emit(self, record):
            logging.getLogger(record.name).handle(record)

    handler_id = logger.add(PropagateHandler(), format="{message}")
    yield caplog
    logger.remove(handler_id)


@pytest.fixture
def make_chunk():
    """Factory for Chunk models with sensible defaults."""

    def _make(
        chunk_id: str,
        text: str = "some text",
        path: str = "src/file.ts",
        vector: list[float] | None = None,
        chunk_type: ChunkType = ChunkType.GENERIC_CODE_BLOCK,
        language: str = "typescript",
        start_line: int = 1,
        end_line: int = 1,
        updated_at: datetime | None = None,
        metadata=None,
        **kwargs,
    ) -> Chunk:
        return Chunk(
            id=chunk_id,
            text_hash=sha256_hex(text, 64),
            path=path,
            language=language,
            type=chunk_type,
            text=text,
            start_line=start_line,
            end_line=end_line,
            vector=vector,
            keywords=extract_keywords(text),
            metadata=metadata or TextMetadata(),
            file_hash=kwargs.pop("file_hash", "filehash"),
            updated_at=updated_at or utcnow(),
            **kwargs,
        )

    return _make


class InMemoryStore:
    """Dictionary-backed stand-in for LanceDBStore, used by service-level unit tests."""

    def __init__(self) -> None:
        self.chunks: dict[str, Chunk] = {}
        self.nodes: dict = {}
        self.edges: dict = {}
        self.initialized = False

    def initialize(self) -> None:
        self.initialized = True

    def close(self) -> None:
        self.initialized = False

    def clear(self) -> None:
        self.chunks.clear()
        self.nodes.clear()
        self.edges.clear()

    def upsert_chunks(self, chunks) -> None:
        for chunk in chunks:
            self.chunks[chunk.id] = chunk

    def delete_chunks(self, ids) -> None:
        for chunk_id in ids:
            self.chunks.pop(chunk_id, None)

    def replace_file_chunks(self, chunks, stale_ids, tombstone=True, now=None) -> None:
        self.upsert_chunks(chunks)
        if tombstone:
            self.tombstone_chunks(stale_ids, now)
        else:
            self.delete_chunks(stale_ids)

    def vector_search(self, query_vector, limit=20, filters=None):
        import numpy as np

        from mini_lightrag.core.models import SearchFilters, VectorSearchResult
        from mini_lightrag.services.search import matches_filters

        results = []
        for chunk in self.chunks.values():
            if chunk.vector is None or not matches_filters(chunk, filters or SearchFilters()):
                continue
            similarity = float(np.dot(query_vector, np.asarray(chunk.vector, dtype=np.float32)))
            score = max(0.0, min(1.0, similarity))
            results.append(VectorSearchResult(chunk=chunk, score=score, distance=1.0 - similarity))
        results.sort(key=lambda r: (-r.score, r.chunk.id))
        return results[:limit]

    def get_chunks_by_ids(self, ids, include_tombstoned=False):
        found = [self.chunks[i] for i in dict.fromkeys(ids) if i in self.chunks]
        return [c for c in found if include_tombstoned or c.tombstoned_at is None]

    def get_chunks_by_path(self, path, include_tombstoned=False):
        found = [
            c
            for c in self.chunks.values()
            if c.path == path and (include_tombstoned or c.tombstoned_at is None)
        ]
        return sorted(found, key=lambda c: (c.start_line, c.end_line, c.id))

    def get_active_chunks(self):
        active = [c for c in self.chunks.values() if c.tombstoned_at is None]
        return sorted(active, key=lambda c: (c.path, c.start_line, c.id))

    def get_file_hashes(self):
        return {c.path: c.file_hash for c in self.get_active_chunks()}

    def tombstone_chunks(self, ids, now=None) -> int:
        count = 0
        for chunk_id in ids:
            chunk = self.chunks.get(chunk_id)
            if chunk is not None and chunk.tombstoned_at is None:
                self.chunks[chunk_id] = chunk.model_copy(update={"tombstoned_at": now or utcnow()})
                count += 1
        return count

    def tombstone_paths(self, paths, now=None) -> int:
        ids = [c.id for c in self.chunks.values() if c.path in set(paths)]
        return self.tombstone_chunks(ids, now)

    def purge_tombstones(self, older_than) -> int:
        doomed = [
            c.id
            for c in self.chunks.values()
            if c.tombstoned_at is not None and c.tombstoned_at < older_than
        ]
        self.delete_chunks(doomed)
        return len(doomed)

    def upsert_nodes(self, nodes) -> None:
        for node in nodes:
            self.nodes[node.id] = node

    def upsert_edges(self, edges) -> None:
        for edge in edges:
            self.edges[edge.id] = edge

    def replace_graph(self, nodes, edges) -> None:
        self.nodes = {n.id: n for n in nodes}
        self.edges = {e.id: e for e in edges}

    def get_all_nodes(self):
        return sorted(self.nodes.values(), key=lambda n: n.id)

    def get_all_edges(self):
        return self.query_edges()

    def get_nodes_by_ids(self, ids):
        return [self.nodes[i] for i in dict.fromkeys(ids) if i in self.nodes]

    def query_edges(
        self, source_ids=None, target_ids=None, min_weight=None, edge_types=None, limit=None
    ):
        edges = [
            e
            for e in self.edges.values()
            if (source_ids is None or e.source_id in source_ids)
            and (target_ids is None or e.target_id in target_ids)
            and (min_weight is None or e.weight >= min_weight)
            and (not edge_types or e.type in edge_types)
        ]
        edges.sort(key=lambda e: (-e.weight, e.id))
        return edges[:limit] if limit is not None else edges

    def counts(self):
        from mini_lightrag.core.models import DatabaseCounts

        active = len(self.get_active_chunks())
        return DatabaseCounts(
            chunks=len(self.chunks),
            active_chunks=active,
            tombstoned_chunks=len(self.chunks) - active,
            nodes=len(self.nodes),
            edges=len(self.edges),
        )

    def create_indices(self) -> None:
        return None

    def compact(self) -> None:
        return None


@pytest.fixture
def memory_store():
    return InMemoryStore()
