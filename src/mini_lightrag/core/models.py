from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChunkType(str, Enum):
    MARKDOWN_SECTION = "markdown-section"
    CODE_FUNCTION = "code-function"
    CODE_CLASS = "code-class"
    CODE_INTERFACE = "code-interface"
    CODE_ENUM = "code-enum"
    CODE_TYPE = "code-type"
    SYMBOL_DOC = "symbol-doc"
    GENERIC_CODE_BLOCK = "generic-code-block"
    GENERIC_TEXT_BLOCK = "generic-text-block"

    @property
    def is_code(self) -> bool:
        return self.value.startswith("code-")


class MarkdownMetadata(BaseModel):
    kind: Literal["markdown"] = "markdown"
    heading_level: int | None = None
    title: str | None = None
    line_count: int = 0
    extra: dict[str, Any] = {}


class SymbolMetadata(BaseModel):
    kind: Literal["symbol"] = "symbol"
    symbol_name: str | None = None
    symbol_kind: str | None = None
    parent_symbol: str | None = None
    signature: str | None = None
    complexity: int | None = None
    line_count: int = 0
    extra: dict[str, Any] = {}


class TextMetadata(BaseModel):
    kind: Literal["text"] = "text"
    line_count: int = 0
    extra: dict[str, Any] = {}


ChunkMetadata = Annotated[
    MarkdownMetadata | SymbolMetadata | TextMetadata, Field(discriminator="kind")
]
CHUNK_METADATA_ADAPTER: TypeAdapter[Any] = TypeAdapter(ChunkMetadata)


class Chunk(BaseModel):
    """An addressable slice of one file, the atomic unit of indexing and retrieval."""

    id: str
    text_hash: str
    path: str
    language: str
    type: ChunkType
    text: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    start_offset: int | None = None
    end_offset: int | None = None
    vector: list[float] | None = None
    keywords: list[str] = []
    metadata: ChunkMetadata = Field(default_factory=TextMetadata)
    file_hash: str = ""
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1)
    tombstoned_at: datetime | None = None

    @model_validator(mode="after")
    def _check_line_range(self) -> "Chunk":
        if self.start_line > self.end_line:
            raise ValueError(f"start_line {self.start_line} > end_line {self.end_line}")
        return self


class Document(BaseModel):
    """A raw file read from the workspace, before chunking."""

    filepath: str
    content: str
    content_hash: str


class RawChunk(BaseModel):
    """A typed line region found by a chunking strategy, before bounds, ids and keywords."""

    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    type: ChunkType
    metadata: ChunkMetadata = Field(default_factory=TextMetadata)
    # Lines where an oversize region may be cut (1-indexed, a new piece starts there)
    boundaries: list[int] = []
    # Set by strategies whose regions already share context lines with their predecessor
    overlapped: bool = False


class NodeType(str, Enum):
    DOCUMENT = "document"
    SECTION = "section"
    KEYWORD = "keyword"
    SYMBOL = "symbol"


class SymbolInfo(BaseModel):
    name: str
    kind: str
    signature: str | None = None


class NodeProperties(BaseModel):
    path: str | None = None
    language: str | None = None
    symbol: SymbolInfo | None = None
    extra: dict[str, Any] = {}


class GraphNode(BaseModel):
    """Graph-visible projection of a chunk; always rebuildable from it."""

    id: str
    type: NodeType
    label: str
    properties: NodeProperties = NodeProperties()
    chunk_ids: list[str] = []
    updated_at: datetime = Field(default_factory=utcnow)


class EdgeType(str, Enum):
    CONTAINS = "CONTAINS"
    HAS_KEYWORD = "HAS_KEYWORD"
    REFERS_TO = "REFERS_TO"
    MENTIONS_SYMBOL = "MENTIONS_SYMBOL"
    MEMBER_OF = "MEMBER_OF"
    SIMILAR_TO = "SIMILAR_TO"


class EdgeProperties(BaseModel):
    confidence: float | None = None
    method: str | None = None
    source_line: int | None = None
    context: str | None = None


class GraphEdge(BaseModel):
    id: str
    source_id: str
    target_id: str
    type: EdgeType
    weight: float = Field(ge=0.0, le=1.0)
    properties: EdgeProperties = EdgeProperties()
    updated_at: datetime = Field(default_factory=utcnow)


class GraphAnalysis(BaseModel):
    total_nodes: int
    total_edges: int
    avg_degree: float
    connected_components: int


class SearchFilters(BaseModel):
    """Filters combine by AND across fields and by OR within a list field."""

    paths: list[str] = []
    languages: list[str] = []
    chunk_types: list[ChunkType] = []
    node_types: list[NodeType] = []
    date_from: datetime | None = None
    date_to: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.paths
            or self.languages
            or self.chunk_types
            or self.node_types
            or self.date_from
            or self.date_to
        )


class SearchOptions(BaseModel):
    """Per-query overrides. ``None`` falls back to the pipeline defaults."""

    max_results: int | None = Field(default=None, ge=1)
    vector_top_k: int | None = Field(default=None, ge=1)
    expand_hops: int | None = Field(default=None, ge=0)
    include_graph: bool = True
    min_score: float | None = None
    vector_weight: float | None = None
    graph_weight: float | None = None
    freshness_weight: float | None = None
    keyword_weight: float | None = None


class SearchQuery(BaseModel):
    text: str
    filters: SearchFilters = SearchFilters()
    options: SearchOptions = SearchOptions()


class ScoreBreakdown(BaseModel):
    vector: float = 0.0
    graph: float = 0.0
    freshness: float = 0.0
    keyword_overlap: float = 0.0


class Explanation(BaseModel):
    breakdown: ScoreBreakdown
    matched_keywords: list[str] = []
    graph_path: list[str] = []
    related_nodes: list[str] = []
    why_relevant: str = ""


class ChunkResult(BaseModel):
    chunk: Chunk
    score: float
    breakdown: ScoreBreakdown
    explanation: Explanation
    snippet: str


class SubGraph(BaseModel):
    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []
    connected_components: int = 0


class SearchWeights(BaseModel):
    vector: float
    graph: float
    freshness: float
    keyword: float


class SearchMetadata(BaseModel):
    total_found: int
    vector_matches: int
    graph_expansions: int
    processing_time_ms: float
    weights: SearchWeights


class SearchResponse(BaseModel):
    query: SearchQuery
    results: list[ChunkResult]
    graph: SubGraph | None = None
    metadata: SearchMetadata


class VectorSearchResult(BaseModel):
    """A matched chunk returned from the vector store."""

    chunk: Chunk
    score: float
    distance: float


class FileError(BaseModel):
    path: str
    message: str


class IndexingStats(BaseModel):
    files_scanned: int = 0
    files_added: int = 0
    files_modified: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    chunks_added: int = 0
    chunks_removed: int = 0
    chunks_tombstoned: int = 0
    chunks_purged: int = 0
    nodes: int = 0
    edges: int = 0
    duration_ms: float = 0.0
    errors: list[FileError] = []
    cancelled: bool = False


class IndexingStatus(BaseModel):
    is_indexing: bool = False
    progress: float = 0.0
    current_file: str | None = None
    total_files: int = 0
    processed_files: int = 0
    errors: list[FileError] = []
    started_at: datetime | None = None


class SearchContext(BaseModel):
    """What the host knows about the user's focus when a search is issued."""

    workspace_path: str | None = None
    active_file: str | None = None
    cursor_text: str | None = None


class CitationInfo(BaseModel):
    chunk_id: str
    path: str
    start_line: int
    end_line: int
    relevant_text: str
    score: float
    context: str


class DatabaseCounts(BaseModel):
    chunks: int
    active_chunks: int
    tombstoned_chunks: int
    nodes: int
    edges: int


class CacheStats(BaseModel):
    size: int
    hits: int
    misses: int
    oldest_age_minutes: float


class SystemStats(BaseModel):
    database: DatabaseCounts
    cache: CacheStats
    indexing: IndexingStatus
    ready: bool
