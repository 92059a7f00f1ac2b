from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


NODE_TYPES = (
    "document",
    "section",
    "paragraph",
    "table",
    "image",
    "list",
    "code",
    "metadata",
)

EDGE_TYPES = (
    "contains",
    "references",
    "follows",
    "similar",
    "semantic",
    "parent",
    "child",
    "next",
    "previous",
)

SEMANTIC_EDGE = "semantic"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class BBox:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class Position:
    page: int = 1  # 1-indexed
    start: int = 0
    end: int = 0
    bbox: BBox | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"page": self.page, "start": self.start, "end": self.end}
        if self.bbox is not None:
            d["bbox"] = {
                "x": self.bbox.x,
                "y": self.bbox.y,
                "width": self.bbox.width,
                "height": self.bbox.height,
            }
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Position":
        data = data or {}
        bbox = data.get("bbox")
        return cls(
            page=int(data.get("page", 1)),
            start=int(data.get("start", 0)),
            end=int(data.get("end", 0)),
            bbox=BBox(**{k: float(bbox[k]) for k in ("x", "y", "width", "height")}) if bbox else None,
        )


@dataclass(frozen=True)
class FontInfo:
    family: str
    size: float
    weight: str | None = None  # "normal" | "bold"
    style: str | None = None  # "normal" | "italic"

    @classmethod
    def from_dict(cls, data: Any) -> "FontInfo":
        if not isinstance(data, dict):
            raise ValueError(f"Font metadata must be an object, got {data!r}")
        unknown = set(data) - {"family", "size", "weight", "style"}
        if unknown:
            raise ValueError(f"Unknown font fields: {', '.join(sorted(unknown))}")
        if "family" not in data or "size" not in data:
            raise ValueError("Font metadata needs both family and size")
        try:
            size = float(data["size"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Font size must be a number, got {data['size']!r}") from e
        return cls(family=str(data["family"]), size=size, weight=data.get("weight"), style=data.get("style"))


_NODE_META_FIELDS = (
    "confidence",
    "language",
    "color",
    "caption",
    "table_number",
    "image_number",
    "url",
    "alt",
    "width",
    "height",
    "format",
    "description",
)


@dataclass
class NodeMetadata:
    confidence: float | None = None
    language: str | None = None
    font: FontInfo | None = None
    color: str | None = None
    # Tables
    caption: str | None = None
    table_number: int | str | None = None
    # Images
    image_number: int | str | None = None
    url: str | None = None
    alt: str | None = None
    width: int | None = None
    height: int | None = None
    format: str | None = None
    description: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = _drop_none({k: getattr(self, k) for k in _NODE_META_FIELDS})
        if self.font is not None:
            d["font"] = _drop_none(
                {
                    "family": self.font.family,
                    "size": self.font.size,
                    "weight": self.font.weight,
                    "style": self.font.style,
                }
            )
        if self.properties:
            d["properties"] = dict(self.properties)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NodeMetadata":
        data = dict(data or {})
        font = data.pop("font", None)
        props = dict(data.pop("properties", None) or {})
        known = {k: data.pop(k) for k in list(data) if k in _NODE_META_FIELDS}
        # Anything the producer sent that we don't model lands in the extension map.
        props.update(data)
        return cls(
            font=FontInfo.from_dict(font) if font else None,
            properties=props,
            **known,
        )


_EDGE_META_FIELDS = ("distance", "context", "similarity_score", "embedding_model")


@dataclass
class EdgeMetadata:
    distance: float | None = None
    context: str | None = None
    similarity_score: float | None = None
    embedding_model: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = _drop_none({k: getattr(self, k) for k in _EDGE_META_FIELDS})
        if self.properties:
            d["properties"] = dict(self.properties)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EdgeMetadata":
        data = dict(data or {})
        props = dict(data.pop("properties", None) or {})
        known = {k: data.pop(k) for k in list(data) if k in _EDGE_META_FIELDS}
        props.update(data)
        return cls(properties=props, **known)


@dataclass
class GraphNode:
    id: str
    type: str
    label: str
    content: str
    position: Position = field(default_factory=Position)
    metadata: NodeMetadata = field(default_factory=NodeMetadata)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        # Timestamps stay off the wire; they are rebuilt on load.
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "content": self.content,
            "position": self.position.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphNode":
        return cls(
            id=str(data["id"]),
            type=_check_type(str(data["type"]), NODE_TYPES, "node"),
            label=str(data.get("label", "")),
            content=str(data.get("content") or ""),
            position=Position.from_dict(data.get("position")),
            metadata=NodeMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    type: str
    weight: float = 1.0
    metadata: EdgeMetadata = field(default_factory=EdgeMetadata)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "weight": self.weight,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphEdge":
        return cls(
            id=str(data["id"]),
            source=str(data["source"]),
            target=str(data["target"]),
            type=_check_type(str(data["type"]), EDGE_TYPES, "edge"),
            weight=_check_weight(data.get("weight", 1.0)),
            metadata=EdgeMetadata.from_dict(data.get("metadata")),
        )


@dataclass(frozen=True)
class NodeInput:
    type: str
    label: str
    content: str
    position: Position = field(default_factory=Position)
    metadata: NodeMetadata | None = None


@dataclass(frozen=True)
class EdgeInput:
    source: str
    target: str
    type: str
    weight: float = 1.0
    metadata: EdgeMetadata | None = None


def _check_type(value: str, allowed: tuple[str, ...], kind: str) -> str:
    if value not in allowed:
        raise ValueError(f"Unknown {kind} type {value!r}; expected one of {', '.join(allowed)}")
    return value


def _check_weight(value: Any) -> float:
    w = float(value)
    if not 0.0 <= w <= 1.0:
        raise ValueError(f"Edge weight must be within [0, 1], got {w}")
    return w


def check_node_type(value: str) -> str:
    return _check_type(value, NODE_TYPES, "node")


def check_edge_type(value: str) -> str:
    return _check_type(value, EDGE_TYPES, "edge")


def check_weight(value: Any) -> float:
    return _check_weight(value)
