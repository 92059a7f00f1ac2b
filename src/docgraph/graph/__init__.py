"""Document graph model.

A parsed document arrives from the producer as nodes (sections, paragraphs,
tables, images, ...) and structural edges between them. This package holds
that graph in memory, keeps its lookup indexes in sync, and round-trips it
through the plain-dict wire form the document store persists.
"""

from .document_graph import Graph, GraphStatistics, ValidationResult
from .model import (
    EDGE_TYPES,
    NODE_TYPES,
    SEMANTIC_EDGE,
    EdgeInput,
    EdgeMetadata,
    GraphEdge,
    GraphNode,
    NodeInput,
    NodeMetadata,
    Position,
)

__all__ = [
    "EDGE_TYPES",
    "NODE_TYPES",
    "SEMANTIC_EDGE",
    "EdgeInput",
    "EdgeMetadata",
    "Graph",
    "GraphEdge",
    "GraphNode",
    "GraphStatistics",
    "NodeInput",
    "NodeMetadata",
    "Position",
    "ValidationResult",
]
