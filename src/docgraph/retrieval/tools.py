from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import BudgetExceeded, DocGraphError, InvalidParameter, VectorSearchDisabled
from ..graph import Graph, GraphNode
from ..graph.extract import mentions, norm_label
from ..index.service import EmbeddingsService
from .retriever import (
    CHARS_PER_TOKEN,
    ContextRetriever,
    TokenBudget,
    TraversalOptions,
    estimate_tokens,
    node_summary,
)


logger = logging.getLogger(__name__)

PARAM_TYPES = ("string", "number", "boolean", "array", "object")

# Edges that tie a table or figure to the prose discussing it.
CONTEXT_EDGE_TYPES = ("references", "follows", "semantic")
CONTEXT_NODE_TYPES = ("paragraph", "section")
CONTEXT_MAX_NODES = 5


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str
    description: str
    required: bool = False
    default: Any = None

    def __post_init__(self) -> None:
        if self.type not in PARAM_TYPES:
            raise ValueError(f"Unknown parameter type {self.type!r} for {self.name}")

    def to_schema(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }
        if self.default is not None:
            d["default"] = self.default
        return d


@dataclass
class ToolResultMetadata:
    tokens_used: int | None = None
    nodes_retrieved: int | None = None
    execution_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    metadata: ToolResultMetadata = field(default_factory=ToolResultMetadata)

    @classmethod
    def ok(cls, data: Any, *, tokens_used: int, nodes_retrieved: int) -> "ToolResult":
        return cls(
            success=True,
            data=data,
            metadata=ToolResultMetadata(tokens_used=tokens_used, nodes_retrieved=nodes_retrieved),
        )

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            d["data"] = self.data
        if self.error is not None:
            d["error"] = self.error
        meta = self.metadata.to_dict()
        if meta:
            d["metadata"] = meta
        return d


@dataclass
class ExecutionContext:
    document_id: str
    graph: Graph
    token_budget: TokenBudget
    embeddings: EmbeddingsService | None = None


class RetrievalTool:
    """Base class for retrieval tools.

    Subclasses declare `name`, `description` and `parameters` and implement
    `run`. `execute` turns every failure into a `ToolResult`.
    """

    name: str = ""
    description: str = ""
    parameters: tuple[ToolParameter, ...] = ()

    def __init__(self, retriever: ContextRetriever):
        self.retriever = retriever

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [p.to_schema() for p in self.parameters],
        }

    def execute(self, params: dict[str, Any], context: ExecutionContext | None) -> ToolResult:
        if context is None or context.graph is None:
            return ToolResult.fail("No document graph available in execution context")
        logger.debug("Executing %s on document %s with %s", self.name, context.document_id, params)
        try:
            return self.run(params, context)
        except (DocGraphError, ValueError) as e:
            return ToolResult.fail(str(e))
        except Exception as e:
            logger.exception("%s tool execution failed", self.name)
            return ToolResult.fail(f"{self.name} failed: {e}")

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        raise NotImplementedError

    def charge(self, context: ExecutionContext, tokens: int) -> None:
        budget = context.token_budget
        if budget.would_exceed(tokens):
            raise BudgetExceeded(tokens, budget.current_tokens, budget.max_tokens)

    def context_nodes(self, graph: Graph, node_id: str) -> list[GraphNode]:
        ctx = self.retriever.get_related_node(
            graph,
            node_id,
            TraversalOptions(
                max_depth=1,
                max_nodes=CONTEXT_MAX_NODES,
                node_types=CONTEXT_NODE_TYPES,
                edge_types=CONTEXT_EDGE_TYPES,
            ),
        )
        return ctx.neighbors


class GetRelatedNodeTool(RetrievalTool):
    name = "get_related_node"
    description = (
        "Retrieve a node and its related nodes from the document graph using breadth-first traversal. "
        "Use this to pull in context about referenced tables, images or sections."
    )
    parameters = (
        ToolParameter("nodeId", "string", 'ID of the node to start from (e.g. "table_1", "section_2")', required=True),
        ToolParameter("depth", "number", "Levels of relationships to traverse (1-3)", default=2),
        ToolParameter("maxNodes", "number", "Maximum number of related nodes (1-20)", default=10),
        ToolParameter("nodeTypes", "array", 'Only return nodes of these types (e.g. ["paragraph", "table"])'),
        ToolParameter("edgeTypes", "array", 'Only follow edges of these types (e.g. ["references", "semantic"])'),
    )

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        ctx = self.retriever.get_related_node(
            context.graph,
            _str_param(params, "nodeId"),
            TraversalOptions(
                max_depth=_int_param(params, "depth", 2),
                max_nodes=_int_param(params, "maxNodes", 10),
                node_types=_list_param(params, "nodeTypes"),
                edge_types=_list_param(params, "edgeTypes"),
            ),
            budget=context.token_budget,
        )
        return ToolResult.ok(
            ctx.to_dict(),
            tokens_used=ctx.total_estimated_tokens,
            nodes_retrieved=len(ctx.neighbors) + 1,
        )


class GetTableTool(RetrievalTool):
    name = "get_table"
    description = (
        "Retrieve a table by node ID or table number. "
        "Use this when the summary needs to reference or analyze tabular data."
    )
    parameters = (
        ToolParameter("tableId", "string", 'Table node ID or number (e.g. "table_1", "1")', required=True),
        ToolParameter("includeContext", "boolean", "Include paragraphs and sections discussing the table", default=True),
    )

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        table_id = _str_param(params, "tableId")
        graph = context.graph
        table = _resolve(
            graph,
            table_id,
            "table",
            lambda n, num: _number_matches(n.metadata.table_number, num) or mentions(n.metadata.caption, f"table {num}"),
        )
        if table is None:
            return ToolResult.fail(f'Table "{table_id}" not found in document')

        ctx = self.context_nodes(graph, table.id) if _bool_param(params, "includeContext", True) else []
        tokens = estimate_tokens([table, *ctx])
        self.charge(context, tokens)

        return ToolResult.ok(
            {"table": node_summary(table), "context": [node_summary(n) for n in ctx]},
            tokens_used=tokens,
            nodes_retrieved=len(ctx) + 1,
        )


class GetImageTool(RetrievalTool):
    name = "get_image"
    description = (
        "Retrieve an image or figure by node ID or figure number, with its caption and the text that discusses it."
    )
    parameters = (
        ToolParameter("imageId", "string", 'Image node ID or figure number (e.g. "image_1", "3")', required=True),
        ToolParameter("includeCaption", "boolean", "Include caption or alt text", default=True),
        ToolParameter("includeContext", "boolean", "Include paragraphs and sections discussing the image", default=True),
    )

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        image_id = _str_param(params, "imageId")
        graph = context.graph
        image = _resolve(
            graph,
            image_id,
            "image",
            lambda n, num: _number_matches(n.metadata.image_number, num)
            or mentions(n.metadata.caption, f"figure {num}", f"fig {num}", f"fig. {num}"),
        )
        if image is None:
            return ToolResult.fail(f'Image "{image_id}" not found in document')

        meta = image.metadata
        caption = None
        if _bool_param(params, "includeCaption", True):
            caption = meta.caption or meta.alt or image.content or "No caption available"
        ctx = self.context_nodes(graph, image.id) if _bool_param(params, "includeContext", True) else []

        # Images cost their caption and description, not their raw content.
        described = (caption or "") + (meta.description or "")
        tokens = math.ceil(len(described) / CHARS_PER_TOKEN) + (estimate_tokens(ctx) if ctx else 0)
        self.charge(context, tokens)

        data = {
            "image": {
                "id": image.id,
                "url": meta.url or image.content,
                "caption": caption,
                "metadata": {
                    "width": meta.width,
                    "height": meta.height,
                    "format": meta.format,
                    "page": image.position.page,
                    "description": meta.description,
                },
            },
            "context": [node_summary(n) for n in ctx],
        }
        return ToolResult.ok(data, tokens_used=tokens, nodes_retrieved=len(ctx) + 1)


class GetSectionTool(RetrievalTool):
    name = "get_section"
    description = "Retrieve a section by node ID or heading text, together with the content it directly contains."
    parameters = (
        ToolParameter("sectionId", "string", "Section node ID or heading text", required=True),
        ToolParameter("includeChildren", "boolean", "Include the nodes the section contains", default=True),
        ToolParameter("maxNodes", "number", "Maximum number of child nodes (1-20)", default=20),
    )

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        section_id = _str_param(params, "sectionId")
        graph = context.graph
        section = _resolve_section(graph, section_id)
        if section is None:
            return ToolResult.fail(f'Section "{section_id}" not found in document')

        children: list[GraphNode] = []
        if _bool_param(params, "includeChildren", True):
            ctx = self.retriever.get_related_node(
                graph,
                section.id,
                TraversalOptions(
                    max_depth=1,
                    max_nodes=_int_param(params, "maxNodes", 20),
                    edge_types=("contains", "child"),
                    direction="outgoing",
                ),
            )
            children = ctx.neighbors

        tokens = estimate_tokens([section, *children])
        self.charge(context, tokens)
        return ToolResult.ok(
            {"section": node_summary(section), "children": [node_summary(n) for n in children]},
            tokens_used=tokens,
            nodes_retrieved=len(children) + 1,
        )


class SearchNodesTool(RetrievalTool):
    name = "search_nodes"
    description = "Find the nodes whose content is semantically closest to a free-text query."
    parameters = (
        ToolParameter("query", "string", "What to look for", required=True),
        ToolParameter("topK", "number", "Maximum number of results", default=5),
        ToolParameter("nodeTypes", "array", "Only return nodes of these types"),
        ToolParameter("threshold", "number", "Minimum similarity score", default=0.0),
    )

    def run(self, params: dict[str, Any], context: ExecutionContext) -> ToolResult:
        if context.embeddings is None:
            return ToolResult.fail("Semantic search is not configured for this document")

        query = _str_param(params, "query")
        try:
            found = context.embeddings.semantic_search(
                context.graph,
                query,
                top_k=max(1, _int_param(params, "topK", 5)),
                threshold=_float_param(params, "threshold", 0.0),
                node_types=_list_param(params, "nodeTypes"),
            )
        except VectorSearchDisabled as e:
            return ToolResult.fail(str(e))

        hits: list[dict[str, Any]] = []
        nodes: list[GraphNode] = []
        for r in found.results:
            node = context.graph.get_node(r.metadata.node_id or "")
            if node is None:
                # Removed from the graph since it was embedded.
                continue
            nodes.append(node)
            hits.append({"score": r.score, **node_summary(node)})

        tokens = estimate_tokens(nodes) if nodes else 0
        self.charge(context, tokens)
        return ToolResult.ok(
            {"query": query, "results": hits, "total_found": len(hits)},
            tokens_used=tokens,
            nodes_retrieved=len(hits),
        )


def _resolve(
    graph: Graph,
    ref: str,
    node_type: str,
    matches_number: Callable[[GraphNode, str], bool],
) -> GraphNode | None:
    node = graph.get_node(ref)
    if node is not None and node.type == node_type:
        return node
    # "table_3", "Table 3" and "3" all resolve by number.
    num = re.sub(rf"^(?:{node_type}|figure|fig\.?)[\s_-]*", "", ref.strip(), flags=re.IGNORECASE)
    if not num:
        return None
    for n in graph.nodes_by_type(node_type):
        if matches_number(n, num):
            return n
    return None


def _resolve_section(graph: Graph, ref: str) -> GraphNode | None:
    node = graph.get_node(ref)
    if node is not None and node.type == "section":
        return node
    sections = graph.nodes_by_type("section")
    wanted = norm_label(ref)
    for n in sections:
        if norm_label(n.label) == wanted:
            return n
    for n in sections:
        if mentions(n.label, ref) or mentions(n.content.split("\n", 1)[0], ref):
            return n
    return None


def _number_matches(value: Any, num: str) -> bool:
    return value is not None and str(value).strip().lower() == num.lower()


def _str_param(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None or not str(value).strip():
        raise InvalidParameter(f"Parameter {name} must be a non-empty string")
    return str(value).strip()


def _int_param(params: dict[str, Any], name: str, default: int) -> int:
    value = params.get(name, default)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"Parameter {name} must be a number, got {value!r}") from None


def _float_param(params: dict[str, Any], name: str, default: float) -> float:
    value = params.get(name, default)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"Parameter {name} must be a number, got {value!r}") from None


def _bool_param(params: dict[str, Any], name: str, default: bool) -> bool:
    value = params.get(name, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes", "on", "false", "0", "no", "off"}:
        return value.strip().lower() in {"true", "1", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    raise InvalidParameter(f"Parameter {name} must be a boolean, got {value!r}")


def _list_param(params: dict[str, Any], name: str) -> tuple[str, ...] | None:
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        value = [v for v in (s.strip() for s in value.split(",")) if v]
    if not isinstance(value, (list, tuple)):
        raise InvalidParameter(f"Parameter {name} must be an array, got {value!r}")
    return tuple(str(v) for v in value) or None
