import re
from collections.abc import Sequence
from datetime import datetime

import networkx as nx
import numpy as np
from loguru import logger

from mini_lightrag.config import GraphConfig
from mini_lightrag.core.models import (
    Chunk,
    ChunkType,
    EdgeProperties,
    EdgeType,
    GraphAnalysis,
    GraphEdge,
    GraphNode,
    MarkdownMetadata,
    NodeProperties,
    NodeType,
    SymbolInfo,
    SymbolMetadata,
    utcnow,
)
from mini_lightrag.core.ports import IVectorStore

NODE_PREFIX = "chunk:"
LABEL_MAX_CHARS = 50

# Weights of the "combined" similarity method
COMBINED_COSINE_WEIGHT = 0.7
COMBINED_JACCARD_WEIGHT = 0.3


def node_id_for(chunk_id: str) -> str:
    return f"{NODE_PREFIX}{chunk_id}"


def chunk_id_for(node_id: str) -> str:
    return node_id[len(NODE_PREFIX) :] if node_id.startswith(NODE_PREFIX) else node_id


def edge_id_for(source_id: str, target_id: str) -> str:
    return f"{source_id}->{target_id}"


def node_type_for(chunk_type: ChunkType) -> NodeType:
    if chunk_type == ChunkType.MARKDOWN_SECTION:
        return NodeType.SECTION
    if chunk_type.is_code:
        return NodeType.SYMBOL
    return NodeType.DOCUMENT


def extract_label(chunk: Chunk) -> str:
    """Heading title, then symbol name, then the first non-empty line (truncated)."""
    metadata = chunk.metadata
    if isinstance(metadata, MarkdownMetadata) and metadata.title:
        return metadata.title
    if isinstance(metadata, SymbolMetadata) and metadata.symbol_name:
        return metadata.symbol_name

    first_line = next((line.strip() for line in chunk.text.split("\n") if line.strip()), "")
    if len(first_line) > LABEL_MAX_CHARS:
        return first_line[:LABEL_MAX_CHARS] + "..."
    return first_line or chunk.id


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class GraphBuilder:
    """
    Derives a similarity graph over chunks: one node per chunk, weighted typed edges
    between sufficiently similar nodes, pruned to ``max_edges_per_node`` per source.

    Candidate pairs are all pairs (O(n^2)) by default; ``candidate_strategy="ann"`` asks
    the store's ANN index for each node's nearest neighbours instead.
    """

    def __init__(self, store: IVectorStore, config: GraphConfig) -> None:
        self.store = store
        self.config = config

    # ---- derivation ----------------------------------------------------------

    def node_from_chunk(self, chunk: Chunk) -> GraphNode:
        symbol = None
        if isinstance(chunk.metadata, SymbolMetadata) and chunk.metadata.symbol_name:
            symbol = SymbolInfo(
                name=chunk.metadata.symbol_name,
                kind=chunk.metadata.symbol_kind or chunk.type.value,
                signature=chunk.metadata.signature,
            )
        return GraphNode(
            id=node_id_for(chunk.id),
            type=node_type_for(chunk.type),
            label=extract_label(chunk),
            properties=NodeProperties(path=chunk.path, language=chunk.language, symbol=symbol),
            chunk_ids=[chunk.id],
            updated_at=chunk.updated_at,
        )

    def infer_edge_type(self, source: GraphNode, target: GraphNode, source_text: str) -> EdgeType:
        """Order-sensitive: the same pair can carry different types in each direction."""
        if source.type == target.type:
            if source.type == NodeType.SYMBOL and _mentions(source_text, target):
                return EdgeType.REFERS_TO
            return EdgeType.SIMILAR_TO
        if source.type == NodeType.SECTION and target.type == NodeType.SYMBOL:
            return EdgeType.MENTIONS_SYMBOL
        return EdgeType.SIMILAR_TO

    def build_graph(self, chunks: Sequence[Chunk]) -> tuple[list[GraphNode], list[GraphEdge]]:
        nodes = [self.node_from_chunk(chunk) for chunk in chunks]

        # Only nodes with a usable vector take part in edge generation
        usable = [
            i
            for i, chunk in enumerate(chunks)
            if chunk.vector is not None and len(chunk.vector) > 0 and any(chunk.vector)
        ]
        if len(usable) < 2:
            return nodes, []

        matrix = np.asarray([chunks[i].vector for i in usable], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        matrix = matrix / norms
        cosine = np.clip(matrix @ matrix.T, -1.0, 1.0)
        keywords = [set(chunks[i].keywords) for i in usable]

        now = utcnow()
        edges: list[GraphEdge] = []
        for a, b in self._candidate_pairs(chunks, usable):
            if self.config.edge_weight == "cosine":
                score = float(cosine[a, b])
            elif self.config.edge_weight == "jaccard":
                score = jaccard(keywords[a], keywords[b])
            else:
                score = COMBINED_COSINE_WEIGHT * float(cosine[a, b]) + (
                    COMBINED_JACCARD_WEIGHT * jaccard(keywords[a], keywords[b])
                )
            if score < self.config.similarity_threshold:
                continue

            weight = max(0.0, min(1.0, score))
            source, target = nodes[usable[a]], nodes[usable[b]]
            edges.append(self._edge(source, target, chunks[usable[a]].text, weight, now))
            if self.config.bidirectional:
                edges.append(self._edge(target, source, chunks[usable[b]].text, weight, now))

        pruned = self.prune_edges(edges)
        logger.debug(
            "Built graph: {} nodes, {} edges ({} before pruning)", len(nodes), len(pruned), len(edges)
        )
        return nodes, pruned

    def _candidate_pairs(self, chunks: Sequence[Chunk], usable: list[int]) -> list[tuple[int, int]]:
        """Unordered index pairs (into ``usable``) to score, in a deterministic order."""
        if self.config.candidate_strategy == "all_pairs":
            n = len(usable)
            return [(a, b) for a in range(n) for b in range(a + 1, n)]

        position = {chunks[i].id: pos for pos, i in enumerate(usable)}
        pairs: set[tuple[int, int]] = set()
        for a, i in enumerate(usable):
            vector = np.asarray(chunks[i].vector, dtype=np.float32)
            neighbours = self.store.vector_search(vector, limit=self.config.ann_candidates_per_node + 1)
            for hit in neighbours:
                b = position.get(hit.chunk.id)
                if b is not None and b != a:
                    pairs.add((min(a, b), max(a, b)))
        return sorted(pairs)

    def _edge(
        self, source: GraphNode, target: GraphNode, source_text: str, weight: float, now: datetime
    ) -> GraphEdge:
        return GraphEdge(
            id=edge_id_for(source.id, target.id),
            source_id=source.id,
            target_id=target.id,
            type=self.infer_edge_type(source, target, source_text),
            weight=weight,
            properties=EdgeProperties(confidence=weight, method=self.config.edge_weight),
            updated_at=now,
        )

    def prune_edges(self, edges: Sequence[GraphEdge]) -> list[GraphEdge]:
        """
        Keeps the ``max_edges_per_node`` strongest outgoing edges of every source node.
        A cap of zero or less keeps every edge.
        """
        cap = self.config.max_edges_per_node
        if cap <= 0:
            return list(edges)
        by_source: dict[str, list[GraphEdge]] = {}
        for edge in edges:
            by_source.setdefault(edge.source_id, []).append(edge)

        kept: list[GraphEdge] = []
        for source_id in sorted(by_source):
            ranked = sorted(by_source[source_id], key=lambda e: (-e.weight, e.target_id))
            kept.extend(ranked[:cap])
        return kept

    # ---- persistence -----------------------------------------------------------

    def save_graph(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None:
        self.store.replace_graph(nodes, edges)
        logger.info("Saved graph: {} nodes, {} edges", len(nodes), len(edges))

    def load_graph(self) -> tuple[list[GraphNode], list[GraphEdge]]:
        return self.store.get_all_nodes(), self.store.get_all_edges()

    def rebuild(self) -> tuple[int, int]:
        """Regenerates the whole graph from the active chunks and persists it."""
        nodes, edges = self.build_graph(self.store.get_active_chunks())
        self.save_graph(nodes, edges)
        return len(nodes), len(edges)

    # ---- navigation & analysis --------------------------------------------------

    def _to_networkx(self) -> nx.DiGraph:
        nodes, edges = self.load_graph()
        graph = nx.DiGraph()
        graph.add_nodes_from(node.id for node in nodes)
        for edge in edges:
            graph.add_edge(edge.source_id, edge.target_id, weight=edge.weight, type=edge.type.value)
        return graph

    def analyze_graph(self) -> GraphAnalysis:
        graph = self._to_networkx()
        total_nodes = graph.number_of_nodes()
        total_edges = graph.number_of_edges()
        return GraphAnalysis(
            total_nodes=total_nodes,
            total_edges=total_edges,
            avg_degree=(total_edges * 2) / total_nodes if total_nodes else 0.0,
            connected_components=(
                nx.number_connected_components(graph.to_undirected()) if total_nodes else 0
            ),
        )

    def find_related_nodes(self, node_id: str, max_hops: int = 1) -> list[GraphNode]:
        """Nodes reachable within ``max_hops`` over persisted edges (either direction), nearest first."""
        distance: dict[str, int] = {node_id: 0}
        frontier = [node_id]
        for hop in range(1, max_hops + 1):
            if not frontier:
                break
            neighbours: set[str] = set()
            for edge in self.store.query_edges(source_ids=frontier):
                neighbours.add(edge.target_id)
            for edge in self.store.query_edges(target_ids=frontier):
                neighbours.add(edge.source_id)
            frontier = sorted(n for n in neighbours if n not in distance)
            for n in frontier:
                distance[n] = hop

        related = [n for n in distance if n != node_id]
        nodes = self.store.get_nodes_by_ids(related)
        return sorted(nodes, key=lambda n: (distance[n.id], n.id))

    def find_path(self, source_id: str, target_id: str) -> list[str]:
        """Fewest-hop directed path between two nodes; empty when none exists."""
        graph = self._to_networkx()
        try:
            path: list[str] = nx.shortest_path(graph, source_id, target_id)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return []
        return path


def _mentions(text: str, target: GraphNode) -> bool:
    symbol = target.properties.symbol
    if symbol is None or not symbol.name:
        return False
    return re.search(rf"(?<![\w$]){re.escape(symbol.name)}(?![\w$])", text) is not None
