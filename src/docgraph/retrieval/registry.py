from __future__ import annotations

import logging
import time
from typing import Any

from ..graph import Graph
from ..index.service import EmbeddingsService
from .retriever import ContextRetriever, TokenBudget
from .tools import (
    ExecutionContext,
    GetImageTool,
    GetRelatedNodeTool,
    GetSectionTool,
    GetTableTool,
    RetrievalTool,
    SearchNodesTool,
    ToolResult,
)


logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, RetrievalTool] = {}

    def register(self, tool: RetrievalTool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def schemas(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> RetrievalTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def create_execution_context(
        self,
        document_id: str,
        graph: Graph,
        *,
        max_tokens: int = 8000,
        reserve_tokens: int = 1000,
        embeddings: EmbeddingsService | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            document_id=document_id,
            graph=graph,
            token_budget=TokenBudget(max_tokens=max_tokens, current_tokens=0, reserve_tokens=reserve_tokens),
            embeddings=embeddings,
        )

    def execute(self, name: str, params: dict[str, Any] | None, context: ExecutionContext | None) -> ToolResult:
        """Run a tool by name. Always returns a result, never raises."""
        started = time.perf_counter()
        params = dict(params or {})

        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.fail(f'Tool "{name}" not found. Available tools: {", ".join(self._tools)}')

        missing = [p.name for p in tool.parameters if p.required and p.name not in params]
        if missing:
            return ToolResult.fail(f"Missing required parameters: {', '.join(missing)}")

        try:
            result = tool.execute(params, context)
        except Exception as e:
            logger.exception("Tool %s raised", name)
            result = ToolResult.fail(f"Tool execution failed: {e}")

        result.metadata.execution_time_ms = (time.perf_counter() - started) * 1000.0
        if result.success:
            logger.debug(
                "Tool %s ok: %s tokens, %s nodes, %.1f ms",
                name,
                result.metadata.tokens_used,
                result.metadata.nodes_retrieved,
                result.metadata.execution_time_ms,
            )
        else:
            logger.warning("Tool %s failed: %s", name, result.error)
        return result


def default_registry(retriever: ContextRetriever | None = None) -> ToolRegistry:
    retriever = retriever or ContextRetriever()
    registry = ToolRegistry()
    for cls in (GetRelatedNodeTool, GetTableTool, GetImageTool, GetSectionTool, SearchNodesTool):
        registry.register(cls(retriever))
    return registry
