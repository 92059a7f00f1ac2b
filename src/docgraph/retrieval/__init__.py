from .registry import ToolRegistry, default_registry
from .retriever import ContextRetriever, FormattedContext, RetrievalContext, TokenBudget, TraversalOptions
from .tools import ExecutionContext, RetrievalTool, ToolParameter, ToolResult

__all__ = [
    "ContextRetriever",
    "ExecutionContext",
    "FormattedContext",
    "RetrievalContext",
    "RetrievalTool",
    "TokenBudget",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "TraversalOptions",
    "default_registry",
]
