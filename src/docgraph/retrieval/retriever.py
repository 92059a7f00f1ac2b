from __future__ import annotations

import json
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from ..errors import BudgetExceeded, NodeNotFound
from ..graph import Graph, GraphNode


logger = logging.getLogger(__name__)

# Token heuristic: roughly four characters per token, plus fixed per-node
# overhead for the headers a formatter wraps around each node.
CHARS_PER_TOKEN = 4
NODE_OVERHEAD_CHARS = 50

DEPTH_RANGE = (1, 3)
NODES_RANGE = (1, 20)

DIRECTIONS = ("both", "outgoing", "incoming")
FORMATS = ("structured", "narrative", "compact")
PRIORITIES = ("relevance", "recency", "importance")

COMPACT_PREVIEW_CHARS = 200

_TYPE_IMPORTANCE = {
    "table": 10,
    "image": 9,
    "section": 8,
    "list": 6,
    "code": 6,
    "paragraph": 5,
}


@dataclass
class TokenBudget:
    max_tokens: int
    current_tokens: int = 0
    reserve_tokens: int = 0

    @property
    def available(self) -> int:
        return self.max_tokens - self.current_tokens - self.reserve_tokens

    def would_exceed(self, tokens: int) -> bool:
        return self.current_tokens + tokens > self.max_tokens


@dataclass(frozen=True)
class TraversalOptions:
    max_depth: int = 2
    max_nodes: int = 10
    node_types: tuple[str, ...] | None = None
    edge_types: tuple[str, ...] | None = None
    direction: str = "both"

    def clamped(self) -> "TraversalOptions":
        if self.direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}, got {self.direction!r}")
        return replace(
            self,
            max_depth=_clamp(self.max_depth, *DEPTH_RANGE),
            max_nodes=_clamp(self.max_nodes, *NODES_RANGE),
            node_types=tuple(self.node_types) if self.node_types else None,
            edge_types=tuple(self.edge_types) if self.edge_types else None,
        )


@dataclass(frozen=True)
class RetrievalContext:
    node: GraphNode
    neighbors: list[GraphNode] = field(default_factory=list)
    traversal_depth: int = 0
    traversal_path: list[str] = field(default_factory=list)
    total_estimated_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": node_summary(self.node),
            "neighbors": [node_summary(n) for n in self.neighbors],
            "traversal": {"depth": self.traversal_depth, "path": list(self.traversal_path)},
            "total_estimated_tokens": self.total_estimated_tokens,
        }


@dataclass(frozen=True)
class FormattedContext:
    text: str
    used_tokens: int
    node_ids: list[str]


def node_summary(node: GraphNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "type": node.type,
        "label": node.label,
        "content": node.content,
        "page": node.position.page,
        "metadata": node.metadata.to_dict(),
    }


def estimate_tokens(nodes: Iterable[GraphNode]) -> int:
    chars = 0
    for node in nodes:
        chars += len(node.content or "")
        chars += len(json.dumps(node.metadata.to_dict(), separators=(",", ":")))
        chars += NODE_OVERHEAD_CHARS
    return math.ceil(chars / CHARS_PER_TOKEN)


class ContextRetriever:
    """Bounded breadth-first context retrieval over a document graph."""

    def get_related_node(
        self,
        graph: Graph,
        node_id: str,
        options: TraversalOptions | None = None,
        budget: TokenBudget | None = None,
    ) -> RetrievalContext:
        opts = (options or TraversalOptions()).clamped()
        started = time.perf_counter()

        start = graph.get_node(node_id)
        if start is None:
            raise NodeNotFound(node_id)

        neighbors, path, depth = self._traverse(graph, start, opts)
        total = estimate_tokens([start, *neighbors])

        if budget is not None and budget.would_exceed(total):
            logger.debug(
                "Retrieval from %s needs %d tokens, only %d of %d left",
                node_id,
                total,
                budget.max_tokens - budget.current_tokens,
                budget.max_tokens,
            )
            raise BudgetExceeded(total, budget.current_tokens, budget.max_tokens)

        logger.debug(
            "Retrieved %d neighbors of %s (depth=%d, tokens=%d, %.1f ms)",
            len(neighbors),
            node_id,
            depth,
            total,
            (time.perf_counter() - started) * 1000.0,
        )
        return RetrievalContext(
            node=start,
            neighbors=neighbors,
            traversal_depth=depth,
            traversal_path=path,
            total_estimated_tokens=total,
        )

    def _traverse(
        self, graph: Graph, start: GraphNode, opts: TraversalOptions
    ) -> tuple[list[GraphNode], list[str], int]:
        visited = {start.id}
        queue: deque[tuple[GraphNode, int, list[str]]] = deque([(start, 0, [start.id])])
        neighbors: list[GraphNode] = []
        last_path = [start.id]
        last_depth = 0

        while queue and len(neighbors) < opts.max_nodes:
            node, depth, path = queue.popleft()
            if depth >= opts.max_depth:
                continue
            for adj in self._adjacent(graph, node.id, opts):
                if len(neighbors) >= opts.max_nodes:
                    break
                if adj.id in visited:
                    continue
                visited.add(adj.id)
                adj_path = path + [adj.id]
                neighbors.append(adj)
                last_path, last_depth = adj_path, depth + 1
                queue.append((adj, depth + 1, adj_path))

        return neighbors, last_path, last_depth

    def _adjacent(self, graph: Graph, node_id: str, opts: TraversalOptions) -> list[GraphNode]:
        out: list[GraphNode] = []
        for edge in graph.incident_edges(node_id):
            if opts.edge_types is not None and edge.type not in opts.edge_types:
                continue
            if opts.direction == "outgoing" and edge.source != node_id:
                continue
            if opts.direction == "incoming" and edge.target != node_id:
                continue
            other = graph.get_node(edge.target if edge.source == node_id else edge.source)
            if other is None:
                continue
            if opts.node_types is not None and other.type not in opts.node_types:
                continue
            out.append(other)
        return out

    def estimate_tokens(self, nodes: Iterable[GraphNode]) -> int:
        return estimate_tokens(nodes)

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_context(
        self,
        context: RetrievalContext,
        budget: TokenBudget,
        *,
        format: str = "structured",
        include_metadata: bool = False,
        prioritize_by: str = "relevance",
    ) -> FormattedContext:
        """Render as many context nodes as fit into `budget.available`.

        Nodes are taken in priority order and the first one that does not fit
        ends the selection. The budget itself is left untouched; callers add
        `used_tokens` to it once they actually spend the text.
        """
        if format not in FORMATS:
            raise ValueError(f"format must be one of {', '.join(FORMATS)}, got {format!r}")
        if prioritize_by not in PRIORITIES:
            raise ValueError(f"prioritize_by must be one of {', '.join(PRIORITIES)}, got {prioritize_by!r}")

        available = budget.available
        if available <= 0:
            logger.warning("No tokens available for context formatting (max=%d, current=%d, reserve=%d)",
                           budget.max_tokens, budget.current_tokens, budget.reserve_tokens)
            return FormattedContext(text="", used_tokens=0, node_ids=[])

        selected: list[GraphNode] = []
        used = 0
        for node in _prioritize([context.node, *context.neighbors], prioritize_by):
            cost = estimate_tokens([node])
            if used + cost > available:
                break
            selected.append(node)
            used += cost

        if format == "narrative":
            text = _format_narrative(selected, include_metadata)
        elif format == "compact":
            text = _format_compact(selected, include_metadata)
        else:
            text = _format_structured(selected, include_metadata)

        logger.debug("Formatted %d/%d nodes as %s using %d of %d tokens",
                     len(selected), len(context.neighbors) + 1, format, used, available)
        return FormattedContext(text=text, used_tokens=used, node_ids=[n.id for n in selected])


def _clamp(value: int, lo: int, hi: int) -> int:
    return min(max(int(value), lo), hi)


def _prioritize(nodes: list[GraphNode], strategy: str) -> list[GraphNode]:
    if strategy == "recency":
        # Later pages first.
        return sorted(nodes, key=lambda n: n.position.page, reverse=True)
    if strategy == "importance":
        return sorted(nodes, key=lambda n: _TYPE_IMPORTANCE.get(n.type, 0), reverse=True)
    return list(nodes)


def _format_structured(nodes: list[GraphNode], include_metadata: bool) -> str:
    blocks: list[str] = []
    for n in nodes:
        block = f"## {n.type.upper()}: {n.id}\n\n{n.content}"
        if include_metadata:
            block += f"\n\nMetadata: {json.dumps(n.metadata.to_dict(), indent=2)}"
        blocks.append(block)
    return "\n\n---\n\n".join(blocks)


def _format_narrative(nodes: list[GraphNode], include_metadata: bool) -> str:
    parts: list[str] = []
    for n in nodes:
        part = n.content
        if include_metadata:
            part += f" (Page {n.position.page})"
        parts.append(part)
    return " ".join(parts)


def _format_compact(nodes: list[GraphNode], include_metadata: bool) -> str:
    parts: list[str] = []
    for n in nodes:
        text = n.content
        if len(text) > COMPACT_PREVIEW_CHARS:
            text = text[:COMPACT_PREVIEW_CHARS] + "..."
        part = f"[{n.type}:{n.id}] {text}"
        if include_metadata:
            part += f" (p.{n.position.page})"
        parts.append(part)
    return " | ".join(parts)
