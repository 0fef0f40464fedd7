import os
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """Location, vector dimension and ANN index settings of the LanceDB store."""

    path: str = "./.mini_lightrag/db"
    vector_dimension: int = 384
    metric: Literal["cosine", "l2", "dot"] = "cosine"
    # IVF_PQ is partition-based, IVF_HNSW_SQ is graph-based
    index_type: Literal["IVF_PQ", "IVF_HNSW_SQ"] = "IVF_HNSW_SQ"
    num_partitions: int | None = None
    num_sub_vectors: int | None = None
    m: int = 16
    ef_construction: int = 200
    nprobes: int = 20
    index_min_rows: int = 256


class EmbeddingConfig(BaseModel):
    """Embedding backend selection and tuning."""

    backend: str = "sentence-transformers"
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    max_token_length: int = 256
    batch_size: int = 32
    cache_size: int = 10_000

    # Task Prefixes for asymmetric models like e5
    query_prefix: str = ""
    passage_prefix: str = ""


class LanguageChunkingConfig(BaseModel):
    """How files of one language are split."""

    extensions: list[str]
    strategy: Literal["ast", "regex", "line-based"]
    settings: dict[str, Any] = {}


def _default_languages() -> dict[str, LanguageChunkingConfig]:
    return {
        "typescript": LanguageChunkingConfig(extensions=[".ts", ".tsx"], strategy="ast"),
        "javascript": LanguageChunkingConfig(
            extensions=[".js", ".jsx", ".mjs", ".cjs"], strategy="ast"
        ),
        "python": LanguageChunkingConfig(extensions=[".py"], strategy="ast"),
        "markdown": LanguageChunkingConfig(extensions=[".md", ".mdx"], strategy="regex"),
    }


class ChunkingConfig(BaseModel):
    max_lines_per_chunk: int = 100
    max_tokens_per_chunk: int = 2000
    overlap_lines: int = 3
    include_docstring_lines: int = 5
    languages: dict[str, LanguageChunkingConfig] = Field(default_factory=_default_languages)


class IndexingConfig(BaseModel):
    batch_size: int = 100
    max_concurrency: int = 3
    include_patterns: list[str] = [
        "**/*.ts",
        "**/*.tsx",
        "**/*.js",
        "**/*.jsx",
        "**/*.py",
        "**/*.md",
        "**/*.json",
    ]
    skip_patterns: list[str] = [
        "**/node_modules/**",
        "**/.git/**",
        "**/dist/**",
        "**/out/**",
        "**/__pycache__/**",
        "**/.mini_lightrag/**",
    ]
    enable_tombstones: bool = True
    retention_days: int = 14
    graph_rebuild_every_batches: int = 5
    embed_timeout_seconds: float = 120.0
    embed_retry_attempts: int = 3
    embed_retry_max_wait: float = 10.0


class SearchConfig(BaseModel):
    max_results: int = 20
    expand_hops: int = 1
    vector_weight: float = 0.6
    graph_weight: float = 0.3
    freshness_weight: float = 0.1
    keyword_weight: float = 0.0
    min_score: float = 0.1
    max_graph_nodes: int = 500
    vector_search_top_k: int = 50
    enable_query_expansion: bool = True
    cache_results_minutes: float = 10.0
    cache_max_entries: int = 100
    freshness_decay_days: float = 30.0


class GraphConfig(BaseModel):
    similarity_threshold: float = 0.3
    max_edges_per_node: int = 10
    bidirectional: bool = True
    edge_weight: Literal["cosine", "jaccard", "combined"] = "cosine"
    # all_pairs is O(n^2); ann asks the store for each node's nearest neighbours
    candidate_strategy: Literal["all_pairs", "ann"] = "all_pairs"
    ann_candidates_per_node: int = 20


class Settings(BaseSettings):
    """Global configuration for the mini-lightrag application."""

    # General System
    log_level: str = "INFO"
    log_serialize: bool = False

    database: DatabaseConfig = DatabaseConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    chunking: ChunkingConfig = ChunkingConfig()
    indexing: IndexingConfig = IndexingConfig()
    search: SearchConfig = SearchConfig()
    graph: GraphConfig = GraphConfig()

    model_config = SettingsConfigDict(
        env_prefix="MINI_LIGHTRAG_", env_nested_delimiter="__", env_file=".env"
    )


_SECTIONS: dict[str, type[BaseModel]] = {
    "database": DatabaseConfig,
    "embedding": EmbeddingConfig,
    "chunking": ChunkingConfig,
    "indexing": IndexingConfig,
    "search": SearchConfig,
    "graph": GraphConfig,
}


def load_settings(config_file: str | None = None) -> Settings:
    """Loads base settings and overrides them from config.yaml."""
    base_settings = Settings()

    if config_file is None:
        config_file = os.getenv("MINI_LIGHTRAG_CONFIG_FILE", "config.yaml")

    yaml_path = Path(config_file)
    if not yaml_path.exists():
        logger.warning("Configuration file '{}' not found, using defaults", yaml_path)
        return base_settings

    with open(yaml_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data:
        return base_settings

    # Override System configuration
    if "system" in data and isinstance(data["system"], dict):
        for key, value in data["system"].items():
            if hasattr(base_settings, key):
                setattr(base_settings, key, value)

    # Override component sections, merging onto the env/default values
    for section, model in _SECTIONS.items():
        overrides = data.get(section)
        if isinstance(overrides, dict):
            current = getattr(base_settings, section).model_dump()
            current.update(overrides)
            setattr(base_settings, section, model(**current))

    return base_settings


# Global singleton instance
settings = load_settings()
