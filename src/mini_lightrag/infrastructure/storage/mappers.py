import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import pyarrow as pa

from mini_lightrag.core.errors import InputError
from mini_lightrag.core.models import (
    CHUNK_METADATA_ADAPTER,
    Chunk,
    ChunkType,
    EdgeProperties,
    EdgeType,
    GraphEdge,
    GraphNode,
    NodeProperties,
    NodeType,
)


def to_epoch(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class ChunkMapper:
    """Maps Chunk models to PyArrow tables and LanceDB rows back to Chunks."""

    def __init__(self, vector_dimension: int) -> None:
        self.vector_dimension = vector_dimension
        self._schema = pa.schema(
            [
                pa.field("id", pa.string(), nullable=False),
                pa.field("vector", pa.list_(pa.float32(), self.vector_dimension)),
                pa.field("text_hash", pa.string()),
                pa.field("path", pa.string()),
                pa.field("language", pa.string()),
                pa.field("chunk_type", pa.string()),
                pa.field("text", pa.string()),
                pa.field("start_line", pa.int32()),
                pa.field("end_line", pa.int32()),
                pa.field("start_offset", pa.int64(), nullable=True),
                pa.field("end_offset", pa.int64(), nullable=True),
                pa.field("keywords", pa.list_(pa.string())),
                pa.field("metadata", pa.string()),  # JSON of the tagged metadata union
                pa.field("file_hash", pa.string()),
                pa.field("updated_at", pa.float64()),
                pa.field("version", pa.int32()),
                pa.field("tombstoned_at", pa.float64(), nullable=True),
            ]
        )

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    def to_arrow(self, chunks: Sequence[Chunk]) -> pa.Table:
        rows: list[dict[str, Any]] = []
        for c in chunks:
            if c.vector is not None and len(c.vector) != self.vector_dimension:
                raise InputError(
                    f"Chunk {c.id} has a {len(c.vector)}-d vector, store expects {self.vector_dimension}"
                )
            rows.append(
                {
                    "id": c.id,
                    "vector": c.vector,
                    "text_hash": c.text_hash,
                    "path": c.path,
                    "language": c.language,
                    "chunk_type": c.type.value,
                    "text": c.text,
                    "start_line": c.start_line,
                    "end_line": c.end_line,
                    "start_offset": c.start_offset,
                    "end_offset": c.end_offset,
                    "keywords": list(c.keywords),
                    "metadata": c.metadata.model_dump_json(),
                    "file_hash": c.file_hash,
                    "updated_at": to_epoch(c.updated_at),
                    "version": c.version,
                    "tombstoned_at": to_epoch(c.tombstoned_at),
                }
            )
        return pa.Table.from_pylist(rows, schema=self._schema)

    def from_row(self, row: dict[str, Any]) -> Chunk:
        vector = row.get("vector")
        return Chunk(
            id=row["id"],
            text_hash=row["text_hash"],
            path=row["path"],
            language=row["language"],
            type=ChunkType(row["chunk_type"]),
            text=row["text"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            start_offset=row.get("start_offset"),
            end_offset=row.get("end_offset"),
            vector=[float(v) for v in vector] if vector is not None else None,
            keywords=list(row.get("keywords") or []),
            metadata=CHUNK_METADATA_ADAPTER.validate_json(row["metadata"]),
            file_hash=row.get("file_hash") or "",
            updated_at=from_epoch(row["updated_at"]),
            version=row["version"],
            tombstoned_at=from_epoch(row.get("tombstoned_at")),
        )


class NodeMapper:
    """Maps GraphNode models to PyArrow tables and back."""

    def __init__(self) -> None:
        self._schema = pa.schema(
            [
                pa.field("id", pa.string(), nullable=False),
                pa.field("node_type", pa.string()),
                pa.field("label", pa.string()),
                pa.field("properties", pa.string()),
                pa.field("chunk_ids", pa.list_(pa.string())),
                pa.field("updated_at", pa.float64()),
            ]
        )

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    def to_arrow(self, nodes: Sequence[GraphNode]) -> pa.Table:
        rows = [
            {
                "id": n.id,
                "node_type": n.type.value,
                "label": n.label,
                "properties": n.properties.model_dump_json(),
                "chunk_ids": list(n.chunk_ids),
                "updated_at": to_epoch(n.updated_at),
            }
            for n in nodes
        ]
        return pa.Table.from_pylist(rows, schema=self._schema)

    def from_row(self, row: dict[str, Any]) -> GraphNode:
        return GraphNode(
            id=row["id"],
            type=NodeType(row["node_type"]),
            label=row["label"],
            properties=NodeProperties.model_validate(json.loads(row["properties"])),
            chunk_ids=list(row.get("chunk_ids") or []),
            updated_at=from_epoch(row["updated_at"]),
        )


class EdgeMapper:
    """Maps GraphEdge models to PyArrow tables and back."""

    def __init__(self) -> None:
        self._schema = pa.schema(
            [
                pa.field("id", pa.string(), nullable=False),
                pa.field("source_id", pa.string()),
                pa.field("target_id", pa.string()),
                pa.field("edge_type", pa.string()),
                pa.field("weight", pa.float64()),
                pa.field("properties", pa.string()),
                pa.field("updated_at", pa.float64()),
            ]
        )

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    def to_arrow(self, edges: Sequence[GraphEdge]) -> pa.Table:
        rows = [
            {
                "id": e.id,
                "source_id": e.source_id,
                "target_id": e.target_id,
                "edge_type": e.type.value,
                "weight": e.weight,
                "properties": e.properties.model_dump_json(),
                "updated_at": to_epoch(e.updated_at),
            }
            for e in edges
        ]
        return pa.Table.from_pylist(rows, schema=self._schema)

    def from_row(self, row: dict[str, Any]) -> GraphEdge:
        return GraphEdge(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            type=EdgeType(row["edge_type"]),
            weight=row["weight"],
            properties=EdgeProperties.model_validate(json.loads(row["properties"])),
            updated_at=from_epoch(row["updated_at"]),
        )
