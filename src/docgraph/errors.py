from __future__ import annotations


class DocGraphError(RuntimeError):
    pass


class InvalidReference(DocGraphError):
    """An edge endpoint does not exist in the graph."""


class DuplicateId(DocGraphError):
    pass


class ProviderUnavailable(DocGraphError):
    """No embedding provider can serve the request."""


class EmbeddingError(DocGraphError):
    """A provider call failed or returned a different number of vectors than requested."""


class CacheFailure(DocGraphError):
    # Raised inside cache backends only; callers always see a miss instead.
    pass


class VectorSearchDisabled(DocGraphError):
    pass


class SemanticEdgesDisabled(DocGraphError):
    pass


class NodeNotFound(DocGraphError):
    def __init__(self, node_id: str, message: str | None = None):
        self.node_id = node_id
        super().__init__(message or f"Node {node_id!r} not found in graph")


class BudgetExceeded(DocGraphError):
    def __init__(self, requested: int, current: int, max_tokens: int):
        self.requested = int(requested)
        self.current = int(current)
        self.max_tokens = int(max_tokens)
        super().__init__(
            f"Retrieval would exceed token budget ({self.current + self.requested} > {self.max_tokens})"
        )

    @property
    def available(self) -> int:
        return max(0, self.max_tokens - self.current)


class InvalidParameter(DocGraphError):
    """A tool parameter is missing, empty or of the wrong type."""
