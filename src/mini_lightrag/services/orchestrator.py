import asyncio
from pathlib import Path

from loguru import logger

from mini_lightrag.config import Settings
from mini_lightrag.core.errors import IndexingInProgressError
from mini_lightrag.core.models import (
    CitationInfo,
    GraphAnalysis,
    IndexingStats,
    IndexingStatus,
    SearchContext,
    SearchFilters,
    SearchOptions,
    SearchQuery,
    SearchResponse,
    SystemStats,
)
from mini_lightrag.core.registry import ComponentRegistry
from mini_lightrag.core.text import extract_keywords
from mini_lightrag.infrastructure.storage.lancedb_engine import LanceDBStore
from mini_lightrag.services.chunking import UNKNOWN_LANGUAGE, ChunkingService
from mini_lightrag.services.embedding import EmbeddingService
from mini_lightrag.services.graph import GraphBuilder
from mini_lightrag.services.indexer import IncrementalIndexer
from mini_lightrag.services.search import HybridSearchPipeline

CITATION_TEXT_CHARS = 200


class Orchestrator:
    """
    Composition root: owns the lifecycle of every component and exposes the
    indexing, search, citation and statistics operations to a host.
    """

    def __init__(
        self,
        store: LanceDBStore,
        embedding: EmbeddingService,
        chunking: ChunkingService,
        graph: GraphBuilder,
        indexer: IncrementalIndexer,
        search_pipeline: HybridSearchPipeline,
    ) -> None:
        self.store = store
        self.embedding = embedding
        self.chunking = chunking
        self.graph = graph
        self.indexer = indexer
        self.search_pipeline = search_pipeline
        self._index_lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_ready(self) -> bool:
        return self._initialized and self.embedding.is_ready

    def initialize(self) -> None:
        """Opens the store and loads the embedding backend. Failures here are fatal."""
        self.store.initialize()
        self.embedding.initialize()
        self._initialized = True
        logger.info("Orchestrator initialized")

    def close(self) -> None:
        self.indexer.cancel()
        self.search_pipeline.clear_cache()
        self.store.close()
        self._initialized = False

    # ---- indexing --------------------------------------------------------------

    async def index_workspace(self, root: str | Path, force: bool = False) -> IndexingStats:
        if self._index_lock.locked():
            raise IndexingInProgressError("An indexing run is already in progress")
        async with self._index_lock:
            try:
                return await self.indexer.index_workspace(root, force=force)
            finally:
                # Cached responses may reference chunks that changed
                self.search_pipeline.clear_cache()

    def get_indexing_status(self) -> IndexingStatus:
        return self.indexer.status.model_copy(deep=True)

    async def purge_tombstones(self) -> int:
        purged = await self.indexer.purge_tombstones()
        if purged:
            self.search_pipeline.clear_cache()
        return purged

    # ---- search ----------------------------------------------------------------

    def enhance_query(self, text: str, context: SearchContext | None) -> str:
        """Appends the active file's language and a few keywords from around the cursor."""
        if context is None:
            return text
        enhanced = text
        if context.active_file:
            language = self.chunking.detect_language(context.active_file)
            if language != UNKNOWN_LANGUAGE:
                enhanced = f"{enhanced} {language}"
        if context.cursor_text and context.cursor_text.strip():
            keywords = extract_keywords(context.cursor_text, limit=3)
            if keywords:
                enhanced = f"{enhanced} related to {' '.join(keywords)}"
        return enhanced

    def filters_from_context(
        self, context: SearchContext | None, filters: SearchFilters | None
    ) -> SearchFilters:
        merged = filters.model_copy(deep=True) if filters is not None else SearchFilters()
        if context is not None and context.active_file and not merged.languages:
            language = self.chunking.detect_language(context.active_file)
            if language != UNKNOWN_LANGUAGE:
                merged.languages = [language]
        return merged

    async def search(
        self,
        text: str,
        context: SearchContext | None = None,
        options: SearchOptions | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        query = SearchQuery(
            text=self.enhance_query(text, context),
            filters=self.filters_from_context(context, filters),
            options=options or SearchOptions(),
        )
        if query.text != text:
            logger.debug("Enhanced query: {}", query.text)
        return await asyncio.to_thread(self.search_pipeline.search, query)

    def generate_citations(self, response: SearchResponse) -> list[CitationInfo]:
        total = len(response.results)
        citations: list[CitationInfo] = []
        for index, result in enumerate(response.results):
            text = result.chunk.text.strip()
            if len(text) > CITATION_TEXT_CHARS:
                text = text[:CITATION_TEXT_CHARS] + "..."
            citations.append(
                CitationInfo(
                    chunk_id=result.chunk.id,
                    path=result.chunk.path,
                    start_line=result.chunk.start_line,
                    end_line=result.chunk.end_line,
                    relevant_text=text,
                    score=result.score,
                    context=f"Result {index + 1} of {total} (score: {result.score:.3f})",
                )
            )
        return citations

    # ---- diagnostics -------------------------------------------------------------

    def get_system_stats(self) -> SystemStats:
        return SystemStats(
            database=self.store.counts(),
            cache=self.search_pipeline.cache_stats(),
            indexing=self.get_indexing_status(),
            ready=self.is_ready,
        )

    def analyze_graph(self) -> GraphAnalysis:
        return self.graph.analyze_graph()


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Dependency Injection Factory driven by config.yaml configuration."""
    BackendClass = ComponentRegistry.get_embedding_backend(settings.embedding.backend)
    backend = BackendClass(
        model_name=settings.embedding.model_name,
        dimension=settings.database.vector_dimension,
        max_token_length=settings.embedding.max_token_length,
        batch_size=settings.embedding.batch_size,
    )
    embedding = EmbeddingService(
        backend,
        cache_size=settings.embedding.cache_size,
        passage_prefix=settings.embedding.passage_prefix,
        query_prefix=settings.embedding.query_prefix,
    )
    store = LanceDBStore(settings.database)
    chunking = ChunkingService(settings.chunking)
    graph = GraphBuilder(store, settings.graph)
    indexer = IncrementalIndexer(store, chunking, embedding, graph, settings.indexing)
    search_pipeline = HybridSearchPipeline(store, embedding, settings.search)
    return Orchestrator(store, embedding, chunking, graph, indexer, search_pipeline)
