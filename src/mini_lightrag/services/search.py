import json
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime

import networkx as nx
import numpy as np
from loguru import logger
from numpy.typing import NDArray

from mini_lightrag.config import SearchConfig
from mini_lightrag.core.errors import InputError
from mini_lightrag.core.models import (
    CacheStats,
    Chunk,
    ChunkResult,
    Explanation,
    GraphEdge,
    GraphNode,
    ScoreBreakdown,
    SearchFilters,
    SearchMetadata,
    SearchOptions,
    SearchQuery,
    SearchResponse,
    SearchWeights,
    SubGraph,
    utcnow,
)
from mini_lightrag.core.ports import IEmbedder, IVectorStore
from mini_lightrag.core.text import path_matches, query_terms, split_identifier, stem, tokenize
from mini_lightrag.services.graph import chunk_id_for, node_id_for, node_type_for

SNIPPET_MAX_CHARS = 200


@dataclass
class _Candidate:
    chunk: Chunk
    vector_score: float
    graph_score: float = 0.0
    graph_path: list[str] = field(default_factory=list)
    related: set[str] = field(default_factory=set)


def fused_score(
    vector: float, graph: float, freshness: float, keyword: float, weights: SearchWeights
) -> float:
    return (
        weights.vector * vector
        + weights.graph * graph
        + weights.freshness * freshness
        + weights.keyword * keyword
    )


def freshness_score(updated_at: datetime, now: datetime, decay_days: float) -> float:
    """exp(-age / decay): 1.0 for a chunk updated now, ~0.37 after ``decay_days``."""
    age_days = max(0.0, (now - updated_at).total_seconds() / 86400.0)
    return math.exp(-age_days / decay_days) if decay_days > 0 else 0.0


def keyword_overlap(terms: list[str], chunk: Chunk) -> tuple[float, list[str]]:
    """Share of query terms found in the chunk, matching substrings in either direction."""
    if not terms:
        return 0.0, []
    chunk_terms = {k.lower() for k in chunk.keywords} | set(tokenize(chunk.text))
    matched = [
        term
        for term in terms
        if any(term in k or (len(k) >= 3 and k in term) for k in chunk_terms)
    ]
    return len(matched) / len(terms), matched


def expand_query(text: str) -> str:
    """Appends identifier parts and singular forms that the query does not already contain."""
    present = set(text.lower().split())
    extra: list[str] = []
    for word in text.split():
        candidates = split_identifier(word) if any(ch.isupper() for ch in word[1:]) or "_" in word else []
        candidates.append(stem(word.lower()))
        for candidate in candidates:
            if len(candidate) > 2 and candidate not in present:
                present.add(candidate)
                extra.append(candidate)
    return f"{text} {' '.join(extra)}" if extra else text


def matches_filters(chunk: Chunk, filters: SearchFilters) -> bool:
    """In-process counterpart of the store's filter clause, for graph-expanded chunks."""
    if chunk.tombstoned_at is not None:
        return False
    if filters.paths and not any(path_matches(chunk.path, p) for p in filters.paths):
        return False
    if filters.languages and chunk.language not in filters.languages:
        return False
    if filters.chunk_types and chunk.type not in filters.chunk_types:
        return False
    if filters.node_types and node_type_for(chunk.type) not in filters.node_types:
        return False
    if filters.date_from is not None and chunk.updated_at < filters.date_from:
        return False
    if filters.date_to is not None and chunk.updated_at > filters.date_to:
        return False
    return True


def make_snippet(text: str, matched: list[str], max_chars: int = SNIPPET_MAX_CHARS) -> str:
    """A short excerpt centred on the first line mentioning a matched term."""
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return ""
    focus = 0
    for i, line in enumerate(lines):
        lowered = line.lower()
        if any(term in lowered for term in matched):
            focus = i
            break
    excerpt = " ".join(line.strip() for line in lines[max(0, focus - 1) : focus + 2])
    return excerpt if len(excerpt) <= max_chars else excerpt[: max_chars - 3] + "..."


def explain(breakdown: ScoreBreakdown) -> str:
    reasons: list[str] = []
    if breakdown.vector > 0.5:
        reasons.append(f"High vector similarity ({breakdown.vector:.3f})")
    if breakdown.graph > 0:
        reasons.append(f"Connected via graph (score: {breakdown.graph:.3f})")
    if breakdown.keyword_overlap > 0.3:
        reasons.append(f"Strong keyword match ({breakdown.keyword_overlap * 100:.1f}%)")
    if breakdown.freshness > 0.8:
        reasons.append("Recently updated")
    return "; ".join(reasons) if reasons else "Relevant match found"


class HybridSearchPipeline:
    """
    End-to-end query execution: embed → vector search → graph expansion → fused ranking.
    Responses are cached per normalized (text, filters, options) for ``cache_results_minutes``.
    Safe to call from several threads; the cache is lock-protected.
    """

    def __init__(self, store: IVectorStore, embedding: IEmbedder, config: SearchConfig) -> None:
        self.store = store
        self.embedding = embedding
        self.config = config
        self._cache: OrderedDict[str, tuple[float, SearchResponse]] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ---- cache ---------------------------------------------------------------

    @staticmethod
    def cache_key(query: SearchQuery) -> str:
        return json.dumps(
            {
                "text": " ".join(query.text.lower().split()),
                "filters": query.filters.model_dump(mode="json"),
                "options": query.options.model_dump(mode="json"),
            },
            sort_keys=True,
        )

    def _cache_get(self, key: str) -> SearchResponse | None:
        ttl = self.config.cache_results_minutes * 60
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is not None and time.monotonic() - entry[0] <= ttl:
                self._hits += 1
                return entry[1]
            if entry is not None:
                del self._cache[key]
            self._misses += 1
            return None

    def _cache_put(self, key: str, response: SearchResponse) -> None:
        if self.config.cache_results_minutes <= 0 or self.config.cache_max_entries <= 0:
            return
        with self._cache_lock:
            self._cache[key] = (time.monotonic(), response)
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_max_entries:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
        logger.debug("Search cache cleared")

    def cache_stats(self) -> CacheStats:
        with self._cache_lock:
            oldest = min((ts for ts, _ in self._cache.values()), default=None)
            return CacheStats(
                size=len(self._cache),
                hits=self._hits,
                misses=self._misses,
                oldest_age_minutes=(time.monotonic() - oldest) / 60 if oldest is not None else 0.0,
            )

    # ---- search ----------------------------------------------------------------

    def weights_for(self, options: SearchOptions) -> SearchWeights:
        def pick(value: float | None, default: float) -> float:
            return default if value is None else value

        return SearchWeights(
            vector=pick(options.vector_weight, self.config.vector_weight),
            graph=pick(options.graph_weight, self.config.graph_weight),
            freshness=pick(options.freshness_weight, self.config.freshness_weight),
            keyword=pick(options.keyword_weight, self.config.keyword_weight),
        )

    def search(self, query: SearchQuery) -> SearchResponse:
        if not query.text.strip():
            raise InputError("Query text cannot be empty.")

        key = self.cache_key(query)
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("Cache hit for query: {}", query.text)
            return cached

        started = time.perf_counter()
        options = query.options
        weights = self.weights_for(options)
        top_k = options.vector_top_k or self.config.vector_search_top_k
        hops = self.config.expand_hops if options.expand_hops is None else options.expand_hops
        min_score = self.config.min_score if options.min_score is None else options.min_score
        max_results = options.max_results or self.config.max_results

        logger.info("Executing query: {}", query.text)
        text = expand_query(query.text) if self.config.enable_query_expansion else query.text
        query_vector = self.embedding.embed_query(text)

        hits = self.store.vector_search(query_vector, limit=top_k, filters=query.filters)
        candidates: dict[str, _Candidate] = {
            hit.chunk.id: _Candidate(chunk=hit.chunk, vector_score=hit.score) for hit in hits
        }

        expansions = 0
        if hops >= 1 and options.include_graph and candidates:
            expansions = self._expand(candidates, query_vector, query.filters, hops)

        now = utcnow()
        terms = query_terms(query.text)
        scored: list[tuple[float, _Candidate, ScoreBreakdown, list[str]]] = []
        for candidate in candidates.values():
            overlap, matched = keyword_overlap(terms, candidate.chunk)
            breakdown = ScoreBreakdown(
                vector=candidate.vector_score,
                graph=candidate.graph_score,
                freshness=freshness_score(
                    candidate.chunk.updated_at, now, self.config.freshness_decay_days
                ),
                keyword_overlap=overlap,
            )
            score = fused_score(
                breakdown.vector,
                breakdown.graph,
                breakdown.freshness,
                breakdown.keyword_overlap,
                weights,
            )
            if score >= min_score:
                scored.append((score, candidate, breakdown, matched))

        scored.sort(key=lambda s: (-s[0], -s[1].vector_score, s[1].chunk.id))
        scored = scored[:max_results]

        labels = self._labels(scored)
        results = [
            ChunkResult(
                chunk=candidate.chunk.model_copy(update={"vector": None}),
                score=score,
                breakdown=breakdown,
                explanation=Explanation(
                    breakdown=breakdown,
                    matched_keywords=matched,
                    graph_path=[labels.get(n, n) for n in candidate.graph_path],
                    related_nodes=sorted(labels.get(n, n) for n in candidate.related),
                    why_relevant=explain(breakdown),
                ),
                snippet=make_snippet(candidate.chunk.text, matched),
            )
            for score, candidate, breakdown, matched in scored
        ]

        subgraph = self._subgraph(scored) if options.include_graph and scored else None
        response = SearchResponse(
            query=query,
            results=results,
            graph=subgraph,
            metadata=SearchMetadata(
                total_found=len(candidates),
                vector_matches=len(hits),
                graph_expansions=expansions,
                processing_time_ms=(time.perf_counter() - started) * 1000,
                weights=weights,
            ),
        )
        self._cache_put(key, response)
        logger.info(
            "Query returned {} results ({} vector, {} via graph) in {:.1f}ms",
            len(results),
            len(hits),
            expansions,
            response.metadata.processing_time_ms,
        )
        return response

    def search_by_chunk_id(self, chunk_id: str, limit: int = 10) -> list[ChunkResult]:
        """Chunks nearest to an already stored chunk, using its persisted vector."""
        found = self.store.get_chunks_by_ids([chunk_id])
        if not found or found[0].vector is None:
            raise InputError(f"No embedded chunk with id '{chunk_id}'")
        vector = np.asarray(found[0].vector, dtype=np.float32)

        results: list[ChunkResult] = []
        for hit in self.store.vector_search(vector, limit=limit + 1):
            if hit.chunk.id == chunk_id:
                continue
            breakdown = ScoreBreakdown(vector=hit.score)
            results.append(
                ChunkResult(
                    chunk=hit.chunk.model_copy(update={"vector": None}),
                    score=hit.score,
                    breakdown=breakdown,
                    explanation=Explanation(breakdown=breakdown, why_relevant=explain(breakdown)),
                    snippet=make_snippet(hit.chunk.text, []),
                )
            )
        return results[:limit]

    # ---- graph expansion -------------------------------------------------------

    def _expand(
        self,
        candidates: dict[str, _Candidate],
        query_vector: NDArray[np.float32],
        filters: SearchFilters,
        hops: int,
    ) -> int:
        """
        Walks persisted edges outward from the vector hits.
        A reached node scores the product of edge weights along its best path; a seed scores
        its strongest edge to another seed. Returns the number of chunks added.
        """
        seeds = {node_id_for(chunk_id) for chunk_id in candidates}
        best: dict[str, tuple[float, list[str]]] = {seed: (1.0, [seed]) for seed in seeds}
        frontier = sorted(seeds)

        for _ in range(hops):
            if not frontier or len(best) >= self.config.max_graph_nodes:
                break
            next_frontier: set[str] = set()
            for edge in self.store.query_edges(source_ids=frontier):
                source_score, source_path = best[edge.source_id]
                source_chunk = candidates.get(chunk_id_for(edge.source_id))
                if source_chunk is not None:
                    source_chunk.related.add(edge.target_id)

                if edge.target_id in seeds:
                    seed = candidates[chunk_id_for(edge.source_id)] if edge.source_id in seeds else None
                    if seed is not None:
                        seed.graph_score = max(seed.graph_score, edge.weight)
                    continue

                reach = source_score * edge.weight
                current = best.get(edge.target_id)
                if current is None and len(best) >= self.config.max_graph_nodes:
                    continue
                if current is None or reach > current[0]:
                    best[edge.target_id] = (reach, source_path + [edge.target_id])
                    next_frontier.add(edge.target_id)
            frontier = sorted(next_frontier)

        reached = {node: value for node, value in best.items() if node not in seeds}
        if not reached:
            return 0

        added = 0
        for chunk in self.store.get_chunks_by_ids([chunk_id_for(n) for n in sorted(reached)]):
            if chunk.id in candidates or not matches_filters(chunk, filters):
                continue
            score, path = reached[node_id_for(chunk.id)]
            vector_score = 0.0
            if chunk.vector is not None:
                vector_score = float(np.dot(query_vector, np.asarray(chunk.vector, dtype=np.float32)))
            candidates[chunk.id] = _Candidate(
                chunk=chunk,
                vector_score=max(0.0, min(1.0, vector_score)),
                graph_score=score,
                graph_path=path,
                related={path[-2]} if len(path) > 1 else set(),
            )
            added += 1
        return added

    def _labels(self, scored: list[tuple[float, _Candidate, ScoreBreakdown, list[str]]]) -> dict[str, str]:
        ids: set[str] = set()
        for _, candidate, _, _ in scored:
            ids.update(candidate.graph_path)
            ids.update(candidate.related)
        if not ids:
            return {}
        return {node.id: node.label for node in self.store.get_nodes_by_ids(sorted(ids))}

    def _subgraph(self, scored: list[tuple[float, _Candidate, ScoreBreakdown, list[str]]]) -> SubGraph:
        node_ids: set[str] = set()
        for _, candidate, _, _ in scored:
            node_ids.add(node_id_for(candidate.chunk.id))
            node_ids.update(candidate.graph_path)
            node_ids.update(candidate.related)

        nodes: list[GraphNode] = self.store.get_nodes_by_ids(sorted(node_ids))
        present = {node.id for node in nodes}
        edges: list[GraphEdge] = [
            edge
            for edge in self.store.query_edges(source_ids=sorted(present))
            if edge.target_id in present
        ]

        graph = nx.Graph()
        graph.add_nodes_from(present)
        graph.add_edges_from((e.source_id, e.target_id) for e in edges)
        return SubGraph(
            nodes=nodes,
            edges=edges,
            connected_components=nx.number_connected_components(graph) if present else 0,
        )
