import math
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import lancedb
import numpy as np
import polars as pl
from loguru import logger
from numpy.typing import NDArray

from mini_lightrag.config import DatabaseConfig
from mini_lightrag.core.errors import InputError, MiniLightRAGError, StoreError
from mini_lightrag.core.models import (
    Chunk,
    ChunkType,
    DatabaseCounts,
    EdgeType,
    GraphEdge,
    GraphNode,
    NodeType,
    SearchFilters,
    VectorSearchResult,
    utcnow,
)
from mini_lightrag.core.text import path_matches
from mini_lightrag.infrastructure.storage.mappers import (
    ChunkMapper,
    EdgeMapper,
    NodeMapper,
    to_epoch,
)

CHUNKS_TABLE = "chunks"
NODES_TABLE = "graph_nodes"
EDGES_TABLE = "graph_edges"

_ACTIVE = "tombstoned_at IS NULL"

# Chunk types backing each graph node type, for node_types filters on chunk queries
_NODE_TYPE_CHUNKS: dict[NodeType, list[ChunkType]] = {
    NodeType.SECTION: [ChunkType.MARKDOWN_SECTION],
    NodeType.SYMBOL: [t for t in ChunkType if t.is_code],
    NodeType.DOCUMENT: [
        ChunkType.SYMBOL_DOC,
        ChunkType.GENERIC_CODE_BLOCK,
        ChunkType.GENERIC_TEXT_BLOCK,
    ],
    NodeType.KEYWORD: [],
}


def _quote(value: str) -> str:
    # Escape single quotes to prevent SQL injection in LanceDB filters
    return "'" + value.replace("'", "''") + "'"


def _in_list(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(_quote(v) for v in values)})"


def _path_clause(pattern: str) -> str:
    """
    Glob patterns use LIKE wildcards; plain paths match themselves and anything below them.
    `_` and `%` in a literal path still act as wildcards here,
    so vector_search re-checks its hits with path_matches.
    """
    if any(ch in pattern for ch in "*?"):
        like = pattern.replace("**/", "*").replace("*", "%").replace("?", "_")
        return f"path LIKE {_quote(like)}"
    prefix = pattern.rstrip("/")
    return f"(path = {_quote(prefix)} OR path LIKE {_quote(prefix + '/%')})"


def build_where(filters: SearchFilters | None, include_tombstoned: bool = False) -> str | None:
    """Filters combine by AND across fields and by OR within a list field."""
    clauses: list[str] = [] if include_tombstoned else [_ACTIVE]
    if filters is not None:
        if filters.paths:
            clauses.append("(" + " OR ".join(_path_clause(p) for p in filters.paths) + ")")
        if filters.languages:
            clauses.append(_in_list("language", filters.languages))
        if filters.chunk_types:
            clauses.append(_in_list("chunk_type", [t.value for t in filters.chunk_types]))
        if filters.node_types:
            chunk_types = [t.value for nt in filters.node_types for t in _NODE_TYPE_CHUNKS[nt]]
            clauses.append(_in_list("chunk_type", chunk_types) if chunk_types else "false")
        if filters.date_from is not None:
            clauses.append(f"updated_at >= {to_epoch(filters.date_from)}")
        if filters.date_to is not None:
            clauses.append(f"updated_at <= {to_epoch(filters.date_to)}")
    if not clauses:
        return None
    return " AND ".join(clauses)


def normalize_score(distance: float | None, metric: str) -> float:
    """
    Maps a LanceDB distance into a [0, 1] similarity for L2-normalized vectors.
    cosine: d = 1 - cos. dot: d = 1 - dot. l2: d is the squared distance, 2 - 2cos.
    """
    if distance is None or math.isnan(distance):
        return 0.0
    if metric == "l2":
        score = 1.0 - distance / 2.0
    else:
        score = 1.0 - distance
    return max(0.0, min(1.0, score))


class LanceDBStore:
    """
    Concrete implementation of IVectorStore using LanceDB.
    Holds chunks (with vectors) plus graph nodes and edges in three tables of one database.
    Initialization is lazy and happens once; a failed initialization is remembered and re-raised.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.db_path = config.path
        self.vector_dimension = config.vector_dimension
        self.metric = config.metric
        self.nprobes = config.nprobes

        self.chunk_mapper = ChunkMapper(vector_dimension=config.vector_dimension)
        self.node_mapper = NodeMapper()
        self.edge_mapper = EdgeMapper()

        self.db: Any = None
        self._tables: dict[str, Any] = {}
        self._init_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._init_error: BaseException | None = None

    # ---- lifecycle ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.db is not None

    def initialize(self) -> None:
        if self.db is not None:
            return
        with self._init_lock:
            if self.db is not None:
                return
            if self._init_error is not None:
                raise StoreError(
                    f"Vector store at '{self.db_path}' is unavailable: {self._init_error}"
                ) from self._init_error
            try:
                db = lancedb.connect(self.db_path)
                existing = _list_table_names(db)
                tables = {
                    name: (
                        db.open_table(name)
                        if name in existing
                        else db.create_table(name, schema=schema, exist_ok=True)
                    )
                    for name, schema in self._schemas().items()
                }
                for name, table in tables.items():
                    self._check_schema(name, table)
            except StoreError as e:
                self._init_error = e
                raise
            except Exception as e:
                self._init_error = e
                logger.error("Failed to open vector store at {}: {}", self.db_path, e)
                raise StoreError(f"Cannot open vector store at '{self.db_path}': {e}") from e
            self.db = db
            self._tables = tables
            logger.info("Vector store ready at {}", self.db_path)

    def close(self) -> None:
        with self._init_lock:
            self.db = None
            self._tables = {}

    def _schemas(self) -> dict[str, Any]:
        return {
            CHUNKS_TABLE: self.chunk_mapper.schema,
            NODES_TABLE: self.node_mapper.schema,
            EDGES_TABLE: self.edge_mapper.schema,
        }

    def _check_schema(self, name: str, table: Any) -> None:
        expected = self._schemas()[name]
        actual = table.schema
        if set(actual.names) != set(expected.names):
            raise StoreError(
                f"Schema mismatch in table '{name}': found {sorted(actual.names)}, "
                f"expected {sorted(expected.names)}. Clear the store to rebuild it."
            )
        if name == CHUNKS_TABLE:
            found_dim = actual.field("vector").type.list_size
            if found_dim != self.vector_dimension:
                raise StoreError(
                    f"Schema mismatch: table '{name}' has vector dimension {found_dim}, "
                    f"configured dimension is {self.vector_dimension}. Clear the store to rebuild it."
                )

    def _table(self, name: str) -> Any:
        self.initialize()
        return self._tables[name]

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        """Surfaces backend failures as StoreError; our own errors pass through untouched."""
        try:
            yield
        except MiniLightRAGError:
            raise
        except Exception as e:
            logger.error("Vector store {} failed: {}", name, e)
            raise StoreError(f"Vector store {name} failed: {e}") from e

    def _select(self, name: str, where: str | None = None, limit: int | None = None) -> pl.DataFrame:
        """Reads rows with an optional filter. Unbounded reads go through a full Arrow scan."""
        table = self._table(name)
        if limit is not None:
            query = table.search()
            if where:
                query = query.where(where)
            df: pl.DataFrame = query.limit(limit).to_polars()
            return df
        df = pl.from_arrow(table.to_arrow())  # type: ignore[assignment]
        if where:
            df = df.sql(f"SELECT * FROM self WHERE {where}")
        return df

    # ---- maintenance -------------------------------------------------------

    def clear(self) -> None:
        """Drops all tables and recreates them empty."""
        self.initialize()
        with self._write_lock, self._operation("clear"):
            for name, schema in self._schemas().items():
                self.db.drop_table(name, ignore_missing=True)
                self._tables[name] = self.db.create_table(name, schema=schema)
        logger.info("Vector store cleared")

    def compact(self) -> None:
        """Compacts fragmented datasets into optimal read files."""
        with self._write_lock, self._operation("compact"):
            for name in self._schemas():
                self._table(name).optimize()

    def create_indices(self) -> None:
        """Builds the ANN index on the chunk vectors once the table is large enough."""
        table = self._table(CHUNKS_TABLE)
        with self._operation("create_indices"):
            num_rows = table.count_rows()
            if num_rows < self.config.index_min_rows:
                logger.info(
                    "Skipping vector index: {} rows < {} minimum",
                    num_rows,
                    self.config.index_min_rows,
                )
                return

            num_partitions = self.config.num_partitions or max(1, min(int(num_rows**0.5), 256))
            kwargs: dict[str, Any] = {
                "metric": self.metric,
                "num_partitions": num_partitions,
                "vector_column_name": "vector",
                "index_type": self.config.index_type,
                "replace": True,
            }
            if self.config.index_type == "IVF_PQ":
                kwargs["num_sub_vectors"] = self.config.num_sub_vectors or _default_sub_vectors(
                    self.vector_dimension
                )
            else:
                kwargs["m"] = self.config.m
                kwargs["ef_construction"] = self.config.ef_construction

            logger.info(
                "Building {} vector index ({} partitions) over {} rows",
                self.config.index_type,
                num_partitions,
                num_rows,
            )
            with self._write_lock:
                table.create_index(**kwargs)

    # ---- chunks ------------------------------------------------------------

    def upsert_chunks(self, chunks: Sequence[Chunk]) -> None:
        """Delete-then-insert by id; a second upsert of the same ids leaves one row each."""
        if not chunks:
            return
        data = self.chunk_mapper.to_arrow(_dedupe(chunks))
        table = self._table(CHUNKS_TABLE)
        with self._write_lock, self._operation("upsert_chunks"):
            table.delete(_in_list("id", [c.id for c in chunks]))
            table.add(data)

    def replace_file_chunks(
        self,
        chunks: Sequence[Chunk],
        stale_ids: Sequence[str],
        tombstone: bool = True,
        now: datetime | None = None,
    ) -> None:
        """Writes one file's new chunk set and retires its stale chunks in a single locked section."""
        table = self._table(CHUNKS_TABLE)
        data = self.chunk_mapper.to_arrow(_dedupe(chunks)) if chunks else None
        with self._write_lock, self._operation("replace_file_chunks"):
            if data is not None:
                table.delete(_in_list("id", [c.id for c in chunks]))
                table.add(data)
            if stale_ids:
                if tombstone:
                    self._tombstone(table, _in_list("id", stale_ids), now)
                else:
                    table.delete(_in_list("id", stale_ids))

    def delete_chunks(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        table = self._table(CHUNKS_TABLE)
        with self._write_lock, self._operation("delete_chunks"):
            table.delete(_in_list("id", ids))

    def vector_search(
        self,
        query_vector: NDArray[np.float32],
        limit: int = 20,
        filters: SearchFilters | None = None,
    ) -> list[VectorSearchResult]:
        """ANN search over active chunks. Results are ordered by score, then id."""
        query_vector = np.asarray(query_vector, dtype=np.float32)
        if query_vector.shape != (self.vector_dimension,):
            raise InputError(
                f"Query vector must have shape ({self.vector_dimension},), got {query_vector.shape}"
            )
        table = self._table(CHUNKS_TABLE)
        with self._operation("vector_search"):
            query = (
                table.search(query_vector, vector_column_name="vector")
                .distance_type(self.metric)
                .where(build_where(filters), prefilter=True)
                .nprobes(self.nprobes)
                .limit(limit)
            )
            df = query.to_polars()

        results: list[VectorSearchResult] = []
        for row in df.iter_rows(named=True):
            distance = row.get("_distance")
            results.append(
                VectorSearchResult(
                    chunk=self.chunk_mapper.from_row(row),
                    score=normalize_score(distance, self.metric),
                    distance=float(distance) if distance is not None else float("nan"),
                )
            )
        if filters is not None and filters.paths:
            results = [
                r for r in results if any(path_matches(r.chunk.path, p) for p in filters.paths)
            ]
        results.sort(key=lambda r: (-r.score, r.chunk.id))
        return results

    def get_chunks_by_ids(
        self, ids: Sequence[str], include_tombstoned: bool = False
    ) -> list[Chunk]:
        if not ids:
            return []
        unique = list(dict.fromkeys(ids))
        where = _in_list("id", unique)
        if not include_tombstoned:
            where = f"{_ACTIVE} AND {where}"
        with self._operation("get_chunks_by_ids"):
            df = self._select(CHUNKS_TABLE, where, limit=len(unique))
        by_id = {row["id"]: self.chunk_mapper.from_row(row) for row in df.iter_rows(named=True)}
        return [by_id[i] for i in unique if i in by_id]

    def get_chunks_by_path(self, path: str, include_tombstoned: bool = False) -> list[Chunk]:
        where = f"path = {_quote(path)}"
        if not include_tombstoned:
            where = f"{_ACTIVE} AND {where}"
        with self._operation("get_chunks_by_path"):
            df = self._select(CHUNKS_TABLE, where)
        chunks = [self.chunk_mapper.from_row(row) for row in df.iter_rows(named=True)]
        return sorted(chunks, key=lambda c: (c.start_line, c.end_line, c.id))

    def get_active_chunks(self) -> list[Chunk]:
        with self._operation("get_active_chunks"):
            df = self._select(CHUNKS_TABLE, _ACTIVE)
        chunks = [self.chunk_mapper.from_row(row) for row in df.iter_rows(named=True)]
        return sorted(chunks, key=lambda c: (c.path, c.start_line, c.id))

    def get_file_hashes(self) -> dict[str, str]:
        """Returns the last indexed content hash per path, ignoring tombstoned chunks."""
        with self._operation("get_file_hashes"):
            table = self._table(CHUNKS_TABLE)
            df: pl.DataFrame = pl.from_arrow(  # type: ignore[assignment]
                table.to_arrow().select(["path", "file_hash", "tombstoned_at"])
            )
        active = df.filter(pl.col("tombstoned_at").is_null()).unique(subset=["path"], keep="first")
        return dict(zip(active["path"].to_list(), active["file_hash"].to_list(), strict=True))

    def _tombstone(self, table: Any, where: str, now: datetime | None) -> None:
        ts = to_epoch(now or utcnow())
        table.update(where=f"{_ACTIVE} AND {where}", values={"tombstoned_at": ts})

    def tombstone_chunks(self, ids: Sequence[str], now: datetime | None = None) -> int:
        if not ids:
            return 0
        table = self._table(CHUNKS_TABLE)
        where = _in_list("id", ids)
        with self._write_lock, self._operation("tombstone_chunks"):
            count: int = table.count_rows(f"{_ACTIVE} AND {where}")
            if count:
                self._tombstone(table, where, now)
        return count

    def tombstone_paths(self, paths: Sequence[str], now: datetime | None = None) -> int:
        """Soft-deletes every active chunk of the given paths. Returns the number tombstoned."""
        if not paths:
            return 0
        table = self._table(CHUNKS_TABLE)
        where = _in_list("path", paths)
        with self._write_lock, self._operation("tombstone_paths"):
            count: int = table.count_rows(f"{_ACTIVE} AND {where}")
            if count:
                self._tombstone(table, where, now)
        return count

    def purge_tombstones(self, older_than: datetime) -> int:
        """Physically removes chunks tombstoned before ``older_than``."""
        table = self._table(CHUNKS_TABLE)
        where = f"tombstoned_at IS NOT NULL AND tombstoned_at < {to_epoch(older_than)}"
        with self._write_lock, self._operation("purge_tombstones"):
            count: int = table.count_rows(where)
            if count:
                table.delete(where)
        if count:
            logger.info("Purged {} tombstoned chunks", count)
        return count

    # ---- graph -------------------------------------------------------------

    def upsert_nodes(self, nodes: Sequence[GraphNode]) -> None:
        if not nodes:
            return
        table = self._table(NODES_TABLE)
        data = self.node_mapper.to_arrow(_dedupe(nodes))
        with self._write_lock, self._operation("upsert_nodes"):
            table.delete(_in_list("id", [n.id for n in nodes]))
            table.add(data)

    def upsert_edges(self, edges: Sequence[GraphEdge]) -> None:
        if not edges:
            return
        table = self._table(EDGES_TABLE)
        data = self.edge_mapper.to_arrow(_dedupe(edges))
        with self._write_lock, self._operation("upsert_edges"):
            table.delete(_in_list("id", [e.id for e in edges]))
            table.add(data)

    def replace_graph(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None:
        """Swaps the whole persisted graph for a freshly built one."""
        self.initialize()
        node_data = self.node_mapper.to_arrow(_dedupe(nodes))
        edge_data = self.edge_mapper.to_arrow(_dedupe(edges))
        with self._write_lock, self._operation("replace_graph"):
            for name, data in ((NODES_TABLE, node_data), (EDGES_TABLE, edge_data)):
                self.db.drop_table(name, ignore_missing=True)
                self._tables[name] = self.db.create_table(name, schema=self._schemas()[name])
                if data.num_rows:
                    self._tables[name].add(data)

    def get_all_nodes(self) -> list[GraphNode]:
        with self._operation("get_all_nodes"):
            df = self._select(NODES_TABLE)
        return sorted(
            (self.node_mapper.from_row(row) for row in df.iter_rows(named=True)),
            key=lambda n: n.id,
        )

    def get_all_edges(self) -> list[GraphEdge]:
        return self.query_edges()

    def get_nodes_by_ids(self, ids: Sequence[str]) -> list[GraphNode]:
        if not ids:
            return []
        unique = list(dict.fromkeys(ids))
        with self._operation("get_nodes_by_ids"):
            df = self._select(NODES_TABLE, _in_list("id", unique), limit=len(unique))
        by_id = {row["id"]: self.node_mapper.from_row(row) for row in df.iter_rows(named=True)}
        return [by_id[i] for i in unique if i in by_id]

    def query_edges(
        self,
        source_ids: Sequence[str] | None = None,
        target_ids: Sequence[str] | None = None,
        min_weight: float | None = None,
        edge_types: Sequence[EdgeType] | None = None,
        limit: int | None = None,
    ) -> list[GraphEdge]:
        """Raw edge query. Strongest edges first, ties broken by edge id."""
        clauses: list[str] = []
        if source_ids is not None:
            if not source_ids:
                return []
            clauses.append(_in_list("source_id", source_ids))
        if target_ids is not None:
            if not target_ids:
                return []
            clauses.append(_in_list("target_id", target_ids))
        if min_weight is not None:
            clauses.append(f"weight >= {float(min_weight)}")
        if edge_types:
            clauses.append(_in_list("edge_type", [t.value for t in edge_types]))

        with self._operation("query_edges"):
            df = self._select(EDGES_TABLE, " AND ".join(clauses) or None)
        df = df.sort(["weight", "id"], descending=[True, False])
        if limit is not None:
            df = df.head(limit)
        return [self.edge_mapper.from_row(row) for row in df.iter_rows(named=True)]

    # ---- stats ---------------------------------------------------------------

    def counts(self) -> DatabaseCounts:
        with self._operation("counts"):
            chunks = self._table(CHUNKS_TABLE)
            total = chunks.count_rows()
            active = chunks.count_rows(_ACTIVE) if total else 0
            return DatabaseCounts(
                chunks=total,
                active_chunks=active,
                tombstoned_chunks=total - active,
                nodes=self._table(NODES_TABLE).count_rows(),
                edges=self._table(EDGES_TABLE).count_rows(),
            )


def _dedupe(items: Sequence[Any]) -> list[Any]:
    """Keeps the last item per id so one upsert never inserts an id twice."""
    return list({item.id: item for item in items}.values())


def _default_sub_vectors(dimension: int) -> int:
    return next(c for c in (96, 64, 48, 32, 16, 8, 4, 2, 1) if dimension % c == 0)


def _list_table_names(db: Any) -> set[str]:
    """Collects every page of ``list_tables``."""
    names: set[str] = set()
    page_token: str | None = None
    while True:
        response = db.list_tables(page_token=page_token)
        names.update(response.tables)
        page_token = response.page_token
        if not page_token:
            return names
