from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

import numpy as np


logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


@dataclass
class VectorMetadata:
    node_id: str | None = None
    content: str | None = None  # truncated preview
    type: str | None = None
    page: int | None = None
    content_hash: str | None = None
    cached_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for k in ("node_id", "content", "type", "page", "content_hash"):
            v = getattr(self, k)
            if v is not None:
                d[k] = v
        if self.cached_at is not None:
            d["cached_at"] = self.cached_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "VectorMetadata":
        data = data or {}
        cached_at = data.get("cached_at")
        return cls(
            node_id=data.get("node_id"),
            content=data.get("content"),
            type=data.get("type"),
            page=int(data["page"]) if data.get("page") is not None else None,
            content_hash=data.get("content_hash"),
            cached_at=datetime.fromisoformat(cached_at) if cached_at else None,
        )


@dataclass
class EmbeddingVector:
    id: str  # node key or content hash
    vector: list[float]
    metadata: VectorMetadata = field(default_factory=VectorMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "vector": list(self.vector), "metadata": self.metadata.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmbeddingVector":
        if not isinstance(data, dict) or "id" not in data or "vector" not in data:
            raise ValueError("Malformed embedding payload: expected an object with id and vector")
        vec = data["vector"]
        if not isinstance(vec, list) or not all(isinstance(x, (int, float)) for x in vec):
            raise ValueError(f"Malformed embedding payload for {data['id']!r}: vector must be a list of numbers")
        return cls(
            id=str(data["id"]),
            vector=[float(x) for x in vec],
            metadata=VectorMetadata.from_dict(data.get("metadata")),
        )


@dataclass(frozen=True)
class SimilarityResult:
    id: str
    score: float
    metadata: VectorMetadata

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "score": self.score, "metadata": self.metadata.to_dict()}


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def node_key(node_id: str) -> str:
    return f"node:{node_id}"


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity; 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vectors must have the same dimensions ({va.shape[0]} != {vb.shape[0]})")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def similarity_matrix(vectors: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarities for the rows of `vectors` ([n, d] -> [n, n])."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    unit = vectors / safe
    # Zero rows stay zero after the division, so their similarities come out as 0.
    return unit @ unit.T


class MemoryVectorIndex:
    """Exhaustive in-memory cosine index.

    Every query scans all indexed vectors, which is fine for one document's
    graph (hundreds to low thousands of nodes).
    """

    def __init__(self) -> None:
        self._vectors: dict[str, EmbeddingVector] = {}
        self._lock = threading.Lock()

    def add(self, vector: EmbeddingVector) -> None:
        with self._lock:
            self._vectors[vector.id] = vector
        logger.debug("Vector %s added to index (dim=%d)", vector.id, len(vector.vector))

    def add_batch(self, vectors: Iterable[EmbeddingVector]) -> None:
        batch = list(vectors)
        with self._lock:
            for v in batch:
                self._vectors[v.id] = v
        logger.debug("Added %d vectors to index", len(batch))

    def get(self, vector_id: str) -> EmbeddingVector | None:
        return self._vectors.get(vector_id)

    def search(
        self,
        query_vector: Sequence[float],
        *,
        top_k: int = 10,
        threshold: float = 0.0,
        node_types: Iterable[str] | None = None,
        node_ids: Iterable[str] | None = None,
    ) -> list[SimilarityResult]:
        wanted = set(node_types) if node_types else None
        scope = set(node_ids) if node_ids is not None else None
        q = np.asarray(query_vector, dtype=np.float64)
        q_norm = float(np.linalg.norm(q))

        # Snapshot so concurrent writers can't change the dict under the scan.
        candidates = list(self._vectors.values())
        hits: list[SimilarityResult] = []
        for v in candidates:
            if wanted is not None and v.metadata.type not in wanted:
                continue
            if scope is not None and v.metadata.node_id not in scope:
                continue
            vec = np.asarray(v.vector, dtype=np.float64)
            if vec.shape != q.shape:
                logger.warning(
                    "Skipping vector %s: dimension %d does not match query dimension %d",
                    v.id,
                    vec.shape[0],
                    q.shape[0],
                )
                continue
            v_norm = float(np.linalg.norm(vec))
            score = 0.0 if q_norm == 0.0 or v_norm == 0.0 else float(np.dot(q, vec) / (q_norm * v_norm))
            if score < threshold:
                continue
            hits.append(SimilarityResult(id=v.id, score=score, metadata=v.metadata))

        hits.sort(key=lambda r: r.score, reverse=True)
        out = hits[: max(0, int(top_k))]
        logger.debug(
            "Vector search over %d vectors: %d hits, best=%.4f",
            len(candidates),
            len(out),
            out[0].score if out else 0.0,
        )
        return out

    def remove(self, vector_id: str) -> bool:
        with self._lock:
            removed = self._vectors.pop(vector_id, None) is not None
        if not removed:
            logger.debug("Vector %s not found in index", vector_id)
        return removed

    def clear(self) -> None:
        with self._lock:
            n = len(self._vectors)
            self._vectors.clear()
        logger.info("Vector index cleared (%d vectors)", n)

    def size(self) -> int:
        return len(self._vectors)

    def __len__(self) -> int:
        return len(self._vectors)
