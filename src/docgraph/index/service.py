from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable

import numpy as np

from ..config import EngineConfig
from ..errors import EmbeddingError, SemanticEdgesDisabled, VectorSearchDisabled
from ..graph import SEMANTIC_EDGE, EdgeInput, EdgeMetadata, Graph, GraphEdge, GraphNode
from .cache import EmbeddingCache
from .embedder import EmbeddingProvider, resolve_provider
from .vector_store import (
    PREVIEW_CHARS,
    EmbeddingVector,
    MemoryVectorIndex,
    SimilarityResult,
    VectorMetadata,
    content_hash,
    node_key,
    similarity_matrix,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingReport:
    embedded: int = 0  # freshly computed by the provider
    cached: int = 0  # reused from the cache
    skipped: int = 0  # nodes without text


@dataclass(frozen=True)
class SemanticSearchResult:
    query: str
    results: list[SimilarityResult] = field(default_factory=list)
    total_found: int = 0
    execution_time_ms: float = 0.0


class EmbeddingsService:
    """Embeds graph nodes, links similar ones, and answers similarity queries.

    One instance is built per process (or per document) by whoever wires the
    engine up; see `docgraph.index.build.build_embeddings_service`.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        provider: EmbeddingProvider | None = None,
        local: EmbeddingProvider | None = None,
        hosted: EmbeddingProvider | None = None,
        cache: EmbeddingCache | None = None,
        index: MemoryVectorIndex | None = None,
    ):
        self.config = config or EngineConfig()
        self._provider = provider
        self._local = local
        self._hosted = hosted
        self.cache = cache if self.config.cache.enabled else None
        self.index = index if self.config.vector_search.enabled else None

    @property
    def provider(self) -> EmbeddingProvider:
        if self._provider is None:
            self._provider = resolve_provider(
                self.config.embeddings.provider,
                local=self._local,
                hosted=self._hosted,
            )
            logger.info("Using %s embedding provider (%s)", self._provider.name, self._provider.model_name)
        return self._provider

    # ------------------------------------------------------------------
    # Node embeddings
    # ------------------------------------------------------------------

    def generate_graph_embeddings(self, graph: Graph) -> EmbeddingReport:
        if not self.config.embeddings.enabled:
            logger.debug("Embeddings disabled, skipping graph %s", graph.id)
            return EmbeddingReport()

        started = time.perf_counter()
        nodes = [n for n in graph.nodes if n.content and n.content.strip()]
        skipped = len(graph.nodes) - len(nodes)
        if not nodes:
            logger.warning("No text content found in graph %s for embedding", graph.id)
            return EmbeddingReport(skipped=skipped)

        ready: list[EmbeddingVector] = []
        pending: list[GraphNode] = []
        for node in nodes:
            cached = self.cache.get(node_key(node.id)) if self.cache else None
            if cached is not None and cached.metadata.content_hash == content_hash(node.content):
                ready.append(_node_vector(node, cached.vector))
            else:
                pending.append(node)

        if pending:
            vectors = self.provider.generate_embeddings([n.content for n in pending])
            if len(vectors) != len(pending):
                raise EmbeddingError(
                    f"Provider returned {len(vectors)} embeddings for {len(pending)} nodes in graph {graph.id}"
                )
            for node, vec in zip(pending, vectors):
                ev = _node_vector(node, vec)
                if self.cache:
                    self.cache.set(ev.id, ev)
                ready.append(ev)

        if self.index is not None:
            self.index.add_batch(ready)

        report = EmbeddingReport(embedded=len(pending), cached=len(nodes) - len(pending), skipped=skipped)
        logger.info(
            "Graph %s embeddings: %d generated, %d from cache, %d skipped (%.1f ms)",
            graph.id,
            report.embedded,
            report.cached,
            report.skipped,
            (time.perf_counter() - started) * 1000.0,
        )
        return report

    def node_embedding(self, node_id: str) -> EmbeddingVector | None:
        key = node_key(node_id)
        if self.cache:
            hit = self.cache.get(key)
            if hit is not None:
                return hit
        if self.index is not None:
            return self.index.get(key)
        return None

    # ------------------------------------------------------------------
    # Semantic edges
    # ------------------------------------------------------------------

    def generate_semantic_edges(
        self,
        graph: Graph,
        *,
        threshold: float | None = None,
        max_edges_per_node: int | None = None,
        bidirectional: bool = True,
    ) -> list[GraphEdge]:
        """Link each embedded node to its most similar peers.

        Semantic edges left by an earlier run are removed first, so running
        this twice over the same embeddings yields the same edge set.
        """
        cfg = self.config.semantic_edges
        if not cfg.enabled:
            raise SemanticEdgesDisabled("Semantic edge generation is disabled in configuration")

        threshold = cfg.threshold if threshold is None else float(threshold)
        max_edges = cfg.max_edges_per_node if max_edges_per_node is None else int(max_edges_per_node)
        started = time.perf_counter()

        removed = graph.remove_edges(lambda e: e.type == SEMANTIC_EDGE)
        if removed:
            logger.debug("Removed %d stale semantic edges from graph %s", removed, graph.id)

        ids, matrix = self._embedded_matrix(graph)
        if len(ids) < 2 or max_edges <= 0:
            return []

        sims = similarity_matrix(matrix)
        model = self._provider.model_name if self._provider is not None else None

        emitted: set[tuple[str, str]] = set()
        processed: set[str] = set()
        edges: list[GraphEdge] = []

        def emit(src: str, dst: str, score: float) -> None:
            if (src, dst) in emitted:
                return
            emitted.add((src, dst))
            edges.append(
                graph.add_edge(
                    EdgeInput(
                        source=src,
                        target=dst,
                        type=SEMANTIC_EDGE,
                        weight=min(1.0, max(0.0, score)),
                        metadata=EdgeMetadata(similarity_score=score, embedding_model=model),
                    )
                )
            )

        for i, src in enumerate(ids):
            if src in processed:
                continue
            row = sims[i]
            candidates = [(j, float(row[j])) for j in range(len(ids)) if j != i and row[j] >= threshold]
            candidates.sort(key=lambda c: c[1], reverse=True)
            for j, score in candidates[:max_edges]:
                emit(src, ids[j], score)
                if bidirectional:
                    emit(ids[j], src, score)
            processed.add(src)

        logger.info(
            "Graph %s: %d semantic edges (threshold=%.2f, max/node=%d, %.1f ms)",
            graph.id,
            len(edges),
            threshold,
            max_edges,
            (time.perf_counter() - started) * 1000.0,
        )
        return edges

    def _embedded_matrix(self, graph: Graph) -> tuple[list[str], np.ndarray]:
        ids: list[str] = []
        rows: list[list[float]] = []
        dim: int | None = None
        for node in graph.nodes:
            if not node.content or not node.content.strip():
                continue
            ev = self.node_embedding(node.id)
            if ev is None:
                continue
            if dim is None:
                dim = len(ev.vector)
            elif len(ev.vector) != dim:
                logger.warning(
                    "Skipping node %s: embedding dimension %d differs from %d",
                    node.id,
                    len(ev.vector),
                    dim,
                )
                continue
            ids.append(node.id)
            rows.append(ev.vector)
        if not rows:
            return [], np.zeros((0, 0), dtype=np.float64)
        return ids, np.asarray(rows, dtype=np.float64)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def semantic_search(
        self,
        graph: Graph,
        query: str,
        *,
        top_k: int = 10,
        threshold: float = 0.0,
        node_types: Iterable[str] | None = None,
    ) -> SemanticSearchResult:
        if not self.config.vector_search.enabled or self.index is None:
            raise VectorSearchDisabled("Vector search is not enabled")

        started = time.perf_counter()
        qvec = self.embed_query(query)
        hits = self.index.search(
            qvec,
            top_k=top_k,
            threshold=threshold,
            node_types=node_types,
            node_ids=[n.id for n in graph.nodes],
        )
        elapsed = (time.perf_counter() - started) * 1000.0

        logger.debug(
            "Semantic search on graph %s: %d results (best=%.4f) in %.1f ms",
            graph.id,
            len(hits),
            hits[0].score if hits else 0.0,
            elapsed,
        )
        return SemanticSearchResult(query=query, results=hits, total_found=len(hits), execution_time_ms=elapsed)

    def embed_query(self, text: str) -> list[float]:
        key = content_hash(text)
        if self.cache:
            hit = self.cache.get(key)
            if hit is not None:
                return hit.vector

        vec = self.provider.generate_embedding(text)
        if self.cache:
            self.cache.set(
                key,
                EmbeddingVector(
                    id=key,
                    vector=vec,
                    metadata=VectorMetadata(content=text[:PREVIEW_CHARS], content_hash=key),
                ),
            )
        return vec

    def clear_cache(self) -> None:
        if self.cache:
            self.cache.clear()
        if self.index is not None:
            self.index.clear()

    def close(self) -> None:
        if self.cache:
            self.cache.close()


def _node_vector(node: GraphNode, vector: list[float]) -> EmbeddingVector:
    return EmbeddingVector(
        id=node_key(node.id),
        vector=list(vector),
        metadata=VectorMetadata(
            node_id=node.id,
            content=node.content[:PREVIEW_CHARS],
            type=node.type,
            page=node.position.page,
            content_hash=content_hash(node.content),
        ),
    )
