from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from ..errors import DuplicateId, InvalidReference
from .extract import extract_keywords
from .model import (
    EDGE_TYPES,
    NODE_TYPES,
    EdgeInput,
    EdgeMetadata,
    GraphEdge,
    GraphNode,
    NodeInput,
    NodeMetadata,
    check_edge_type,
    check_node_type,
    check_weight,
    utcnow,
)


logger = logging.getLogger(__name__)

GRAPH_VERSION = "1.0"


@dataclass(frozen=True)
class GraphStatistics:
    node_count: int
    edge_count: int
    nodes_by_type: dict[str, int]
    edges_by_type: dict[str, int]
    average_degree: float
    max_degree: int
    density: float
    components: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "nodes_by_type": dict(self.nodes_by_type),
            "edges_by_type": dict(self.edges_by_type),
            "average_degree": self.average_degree,
            "max_degree": self.max_degree,
            "density": self.density,
            "components": self.components,
        }


@dataclass(frozen=True)
class ValidationStats:
    orphaned_nodes: int = 0
    duplicate_node_ids: int = 0
    duplicate_edge_ids: int = 0
    invalid_edges: int = 0
    self_referencing_edges: int = 0


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    stats: ValidationStats


@dataclass
class GraphMetadata:
    version: str = GRAPH_VERSION
    status: str = "building"  # building | complete | error
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    processing_time_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"version": self.version, "status": self.status}
        if self.processing_time_ms is not None:
            d["processing_time_ms"] = self.processing_time_ms
        if self.error is not None:
            d["error"] = self.error
        return d


class Graph:
    """Document graph with an incrementally maintained index.

    Nodes and edges are kept in insertion order. Everything else (type/page/
    keyword indexes, adjacency, statistics) is derived from them and rebuilt
    or updated on each mutation. Mutations are serialized by a per-graph lock;
    reads against a stable graph need no locking.
    """

    def __init__(self, document_id: str, *, graph_id: str | None = None):
        self.id = graph_id or str(uuid.uuid4())
        self.document_id = document_id
        self.nodes: list[GraphNode] = []
        self.edges: list[GraphEdge] = []
        self.metadata = GraphMetadata()

        self._lock = threading.RLock()
        self._node_map: dict[str, GraphNode] = {}
        self._edge_map: dict[str, GraphEdge] = {}
        self._by_type: dict[str, list[str]] = {t: [] for t in NODE_TYPES}
        self._by_page: dict[int, list[str]] = defaultdict(list)
        self._by_keyword: dict[str, list[str]] = defaultdict(list)
        # node id -> target ids of outgoing edges
        self._adjacency: dict[str, list[str]] = {}
        # node id -> ids of edges touching the node (either end)
        self._incident: dict[str, list[str]] = {}
        self._stats: GraphStatistics | None = None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_node(self, node_in: NodeInput) -> GraphNode:
        now = utcnow()
        node = GraphNode(
            id=str(uuid.uuid4()),
            type=check_node_type(node_in.type),
            label=node_in.label,
            content=node_in.content,
            position=node_in.position,
            metadata=node_in.metadata or NodeMetadata(),
            created_at=now,
            updated_at=now,
        )
        self.insert_node(node)
        return node

    def insert_node(self, node: GraphNode) -> GraphNode:
        check_node_type(node.type)
        with self._lock:
            if node.id in self._node_map:
                raise DuplicateId(f"Node with ID {node.id} already exists")

            self.nodes.append(node)
            self._node_map[node.id] = node
            self._by_type[node.type].append(node.id)
            self._by_page[node.position.page].append(node.id)
            for kw in extract_keywords(node.content):
                self._by_keyword[kw].append(node.id)
            self._adjacency[node.id] = []
            self._incident[node.id] = []
            self._touch()
        return node

    def add_edge(self, edge_in: EdgeInput) -> GraphEdge:
        edge = GraphEdge(
            id=str(uuid.uuid4()),
            source=edge_in.source,
            target=edge_in.target,
            type=check_edge_type(edge_in.type),
            weight=check_weight(edge_in.weight),
            metadata=edge_in.metadata or EdgeMetadata(),
        )
        return self.insert_edge(edge)

    def insert_edge(self, edge: GraphEdge) -> GraphEdge:
        check_edge_type(edge.type)
        check_weight(edge.weight)
        with self._lock:
            if edge.source not in self._node_map:
                raise InvalidReference(f"Source node {edge.source} does not exist")
            if edge.target not in self._node_map:
                raise InvalidReference(f"Target node {edge.target} does not exist")
            if edge.id in self._edge_map:
                raise DuplicateId(f"Edge with ID {edge.id} already exists")

            self.edges.append(edge)
            self._edge_map[edge.id] = edge
            self._adjacency[edge.source].append(edge.target)
            self._incident[edge.source].append(edge.id)
            if edge.target != edge.source:
                self._incident[edge.target].append(edge.id)
            self._touch()
        return edge

    def remove_node(self, node_id: str) -> bool:
        with self._lock:
            node = self._node_map.get(node_id)
            if node is None:
                return False

            self._remove_edges_locked(list(self._incident.get(node_id, [])))

            self.nodes = [n for n in self.nodes if n.id != node_id]
            del self._node_map[node_id]
            _discard(self._by_type[node.type], node_id)
            _discard(self._by_page[node.position.page], node_id)
            for kw in extract_keywords(node.content):
                _discard(self._by_keyword[kw], node_id)
            self._adjacency.pop(node_id, None)
            self._incident.pop(node_id, None)
            self._touch()
        return True

    def remove_edge(self, edge_id: str) -> bool:
        with self._lock:
            return self._remove_edges_locked([edge_id]) > 0

    def remove_edges(self, predicate: Callable[[GraphEdge], bool]) -> int:
        with self._lock:
            return self._remove_edges_locked([e.id for e in self.edges if predicate(e)])

    def _remove_edges_locked(self, edge_ids: list[str]) -> int:
        removed = [self._edge_map.pop(i) for i in dict.fromkeys(edge_ids) if i in self._edge_map]
        if not removed:
            return 0
        gone = {e.id for e in removed}
        self.edges = [e for e in self.edges if e.id not in gone]

        touched = {e.source for e in removed} | {e.target for e in removed}
        for node_id in touched:
            if node_id not in self._incident:
                continue
            incident = [i for i in self._incident[node_id] if i not in gone]
            self._incident[node_id] = incident
            # adjacency keeps one target per outgoing edge, in edge order
            self._adjacency[node_id] = [
                self._edge_map[i].target for i in incident if self._edge_map[i].source == node_id
            ]
        self._touch()
        return len(removed)

    def _touch(self) -> None:
        self.metadata.updated_at = utcnow()
        self._stats = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> GraphNode | None:
        return self._node_map.get(node_id)

    def get_edge(self, edge_id: str) -> GraphEdge | None:
        return self._edge_map.get(edge_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def neighbors(self, node_id: str) -> list[str]:
        """Targets of outgoing edges from node_id."""
        return list(self._adjacency.get(node_id, []))

    def incident_edges(self, node_id: str) -> list[GraphEdge]:
        return [self._edge_map[eid] for eid in self._incident.get(node_id, [])]

    def degree(self, node_id: str) -> int:
        return len(self._incident.get(node_id, []))

    def nodes_by_type(self, node_type: str) -> list[GraphNode]:
        return [self._node_map[i] for i in self._by_type.get(node_type, [])]

    def nodes_by_page(self, page: int) -> list[GraphNode]:
        return [self._node_map[i] for i in self._by_page.get(int(page), [])]

    def nodes_by_keyword(self, keyword: str) -> list[GraphNode]:
        return [self._node_map[i] for i in self._by_keyword.get(keyword.lower(), [])]

    def query_nodes(
        self,
        *,
        types: Iterable[str] | None = None,
        pages: Iterable[int] | None = None,
        keywords: Iterable[str] | None = None,
        min_confidence: float | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[GraphNode]:
        ids: set[str] | None = None

        def narrow(found: Iterable[str]) -> None:
            nonlocal ids
            found = set(found)
            ids = found if ids is None else ids & found

        if types is not None:
            narrow(i for t in types for i in self._by_type.get(t, []))
        if pages is not None:
            narrow(i for p in pages for i in self._by_page.get(int(p), []))
        if keywords is not None:
            narrow(i for k in keywords for i in self._by_keyword.get(k.lower(), []))

        out = [n for n in self.nodes if ids is None or n.id in ids]
        if min_confidence is not None:
            out = [
                n
                for n in out
                if n.metadata.confidence is not None and n.metadata.confidence >= min_confidence
            ]
        out = out[offset:]
        return out if limit is None else out[:limit]

    def query_edges(
        self,
        *,
        types: Iterable[str] | None = None,
        source: str | None = None,
        target: str | None = None,
        min_weight: float | None = None,
        limit: int | None = None,
    ) -> list[GraphEdge]:
        wanted = set(types) if types is not None else None
        out: list[GraphEdge] = []
        for e in self.edges:
            if wanted is not None and e.type not in wanted:
                continue
            if source is not None and e.source != source:
                continue
            if target is not None and e.target != target:
                continue
            if min_weight is not None and e.weight < min_weight:
                continue
            out.append(e)
            if limit is not None and len(out) >= limit:
                break
        return out

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def statistics(self) -> GraphStatistics:
        stats = self._stats
        if stats is None:
            stats = self._compute_statistics()
            self._stats = stats
        return stats

    def _compute_statistics(self) -> GraphStatistics:
        n = len(self.nodes)
        m = len(self.edges)

        nodes_by_type = {t: len(self._by_type.get(t, [])) for t in NODE_TYPES}
        edges_by_type = {t: 0 for t in EDGE_TYPES}
        for e in self.edges:
            edges_by_type[e.type] += 1

        degrees = [self.degree(node.id) for node in self.nodes]
        possible = n * (n - 1)  # directed

        return GraphStatistics(
            node_count=n,
            edge_count=m,
            nodes_by_type=nodes_by_type,
            edges_by_type=edges_by_type,
            average_degree=(sum(degrees) / n) if n else 0.0,
            max_degree=max(degrees) if degrees else 0,
            density=(m / possible) if possible > 0 else 0.0,
            components=self._count_components(),
        )

    def _count_components(self) -> int:
        # Weakly connected components: edge direction is ignored.
        parent = {node.id: node.id for node in self.nodes}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for e in self.edges:
            if e.source not in parent or e.target not in parent:
                continue
            ra, rb = find(e.source), find(e.target)
            if ra != rb:
                parent[ra] = rb

        return len({find(x) for x in parent})

    def validate(self) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        node_ids: set[str] = set()
        dup_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in node_ids:
                dup_nodes.add(node.id)
            node_ids.add(node.id)

        edge_ids: set[str] = set()
        dup_edges: set[str] = set()
        touched: set[str] = set()
        invalid = 0
        self_refs = 0
        for e in self.edges:
            if e.id in edge_ids:
                dup_edges.add(e.id)
            edge_ids.add(e.id)
            if e.source not in node_ids or e.target not in node_ids:
                invalid += 1
            if e.source == e.target:
                self_refs += 1
            touched.add(e.source)
            touched.add(e.target)

        orphaned = sum(1 for node_id in node_ids if node_id not in touched)

        if dup_nodes:
            errors.append(f"Found {len(dup_nodes)} duplicate node IDs")
        if dup_edges:
            errors.append(f"Found {len(dup_edges)} duplicate edge IDs")
        if invalid:
            errors.append(f"Found {invalid} edges referencing non-existent nodes")
        if self_refs:
            warnings.append(f"Found {self_refs} self-referencing edges")
        if orphaned:
            warnings.append(f"{orphaned} nodes have no connections")

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            stats=ValidationStats(
                orphaned_nodes=orphaned,
                duplicate_node_ids=len(dup_nodes),
                duplicate_edge_ids=len(dup_edges),
                invalid_edges=invalid,
                self_referencing_edges=self_refs,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def complete(self, *, processing_time_ms: float | None = None) -> ValidationResult:
        self.metadata.status = "complete"
        self.metadata.updated_at = utcnow()
        if processing_time_ms is not None:
            self.metadata.processing_time_ms = float(processing_time_ms)

        result = self.validate()
        if not result.is_valid:
            logger.warning("Graph %s marked complete with validation errors: %s", self.id, "; ".join(result.errors))
        logger.info(
            "Graph %s complete (nodes=%d, edges=%d)",
            self.id,
            len(self.nodes),
            len(self.edges),
        )
        return result

    def mark_error(self, error: str) -> None:
        self.metadata.status = "error"
        self.metadata.error = error
        self.metadata.updated_at = utcnow()
        logger.error("Graph %s marked as error: %s", self.id, error)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "status": self.metadata.status,
            "node_count": len(self.nodes),
            "edge_count": len(self.edges),
            "created_at": self.metadata.created_at.isoformat(),
            "updated_at": self.metadata.updated_at.isoformat(),
            "processing_time_ms": self.metadata.processing_time_ms,
        }

    # ------------------------------------------------------------------
    # Wire form
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        meta = self.metadata.to_dict()
        meta["graph_id"] = self.id
        meta["document_id"] = self.document_id
        return {
            "metadata": meta,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def deserialize(cls, data: dict[str, Any]) -> "Graph":
        meta = dict(data.get("metadata") or {})
        graph = cls(
            str(meta.get("document_id", "")),
            graph_id=meta.get("graph_id"),
        )
        graph.metadata.version = str(meta.get("version", GRAPH_VERSION))
        graph.metadata.status = str(meta.get("status", "building"))
        graph.metadata.error = meta.get("error")
        if meta.get("processing_time_ms") is not None:
            graph.metadata.processing_time_ms = float(meta["processing_time_ms"])

        for raw in data.get("nodes") or []:
            graph.insert_node(GraphNode.from_dict(raw))
        for raw in data.get("edges") or []:
            graph.insert_edge(GraphEdge.from_dict(raw))

        logger.debug(
            "Deserialized graph %s (nodes=%d, edges=%d)",
            graph.id,
            len(graph.nodes),
            len(graph.edges),
        )
        return graph


def _discard(items: list[str], value: str) -> None:
    try:
        items.remove(value)
    except ValueError:
        pass
