from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import numpy as np

from ..config import model_dimensions
from ..errors import EmbeddingError, ProviderUnavailable


logger = logging.getLogger(__name__)

HOSTED = "hosted"
LOCAL = "local"
AUTO = "auto"
PROVIDER_KINDS = (HOSTED, LOCAL, AUTO)

HOSTED_BATCH_SIZE = 100
LOCAL_BATCH_SIZE = 10

class EmbeddingProvider(ABC):
    name: str

    @abstractmethod
    def generate_embedding(self, text: str) -> list[float]: ...

    @abstractmethod
    def generate_embeddings(self, texts: list[str]) -> list[list[float]]: ...

    @abstractmethod
    def dimensions(self) -> int: ...

    @abstractmethod
    def is_available(self) -> bool: ...

    @property
    def model_name(self) -> str:
        return getattr(self, "model", self.name)


@dataclass
class EmbeddingUsage:
    requests: int = 0
    prompt_tokens: int = 0
    total_tokens: int = 0


class HostedEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible `/embeddings` endpoint over HTTP."""

    name = HOSTED

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        timeout_s: float = 60.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._dimensions = dimensions
        self.timeout_s = float(timeout_s)
        self._client = client
        self.usage = EmbeddingUsage()

    def generate_embedding(self, text: str) -> list[float]:
        return self.generate_embeddings([text])[0]

    def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        out: list[list[float]] = []
        started = time.perf_counter()
        for i in range(0, len(texts), HOSTED_BATCH_SIZE):
            batch = texts[i : i + HOSTED_BATCH_SIZE]
            out.extend(self._request(batch))

        if len(out) != len(texts):
            raise EmbeddingError(f"Hosted provider returned {len(out)} vectors for {len(texts)} inputs")

        logger.debug(
            "Hosted embeddings: %d texts, model=%s, %.1f ms",
            len(texts),
            self.model,
            (time.perf_counter() - started) * 1000.0,
        )
        return out

    def _request(self, batch: list[str]) -> list[list[float]]:
        url = f"{self.base_url}/embeddings"
        payload: dict[str, Any] = {"model": self.model, "input": batch, "encoding_format": "float"}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                r = self._client.post(url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout_s) as client:
                    r = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Failed to reach embedding API at {self.base_url} ({e})") from e

        if r.status_code != 200:
            raise EmbeddingError(f"Embedding API error {r.status_code}: {r.text}")

        try:
            data = r.json()
        except ValueError as e:
            raise EmbeddingError(f"Embedding API returned a non-JSON body: {r.text[:200]!r}") from e
        if not isinstance(data, dict):
            raise EmbeddingError(f"Unexpected embedding API response: {data!r}")
        items = data.get("data")
        if not isinstance(items, list) or len(items) != len(batch):
            got = len(items) if isinstance(items, list) else "no"
            raise EmbeddingError(f"Embedding API returned {got} vectors for {len(batch)} inputs")

        if not all(isinstance(item, dict) for item in items):
            raise EmbeddingError("Embedding API response items must be objects")

        usage = data.get("usage") or {}
        self.usage.requests += 1
        self.usage.prompt_tokens += int(usage.get("prompt_tokens") or 0)
        self.usage.total_tokens += int(usage.get("total_tokens") or 0)

        ordered = sorted(items, key=lambda item: int(item.get("index", 0)))
        vectors: list[list[float]] = []
        for item in ordered:
            emb = item.get("embedding")
            if not isinstance(emb, list):
                raise EmbeddingError(f"Unexpected embedding API response item: {item!r}")
            vectors.append([float(x) for x in emb])
        return vectors

    def dimensions(self) -> int:
        if self._dimensions:
            return int(self._dimensions)
        return model_dimensions(self.model)

    def is_available(self) -> bool:
        return bool(self.api_key)


class LocalEmbeddingProvider(EmbeddingProvider):
    """On-device embeddings via fastembed.

    The model is loaded on first use; callers pay that cost once per process.
    """

    name = LOCAL

    def __init__(self, model: str = "BAAI/bge-small-en-v1.5", *, dimensions: int = 384, text_model: Any = None):
        self.model = model
        self._dimensions = int(dimensions)
        self._model = text_model
        self._load_error: Exception | None = None

    def _ensure_model(self) -> Any:
        if self._model is None:
            started = time.perf_counter()
            # Import here so the rest of the package works without the model deps.
            from fastembed import TextEmbedding  # type: ignore

            self._model = TextEmbedding(model_name=self.model)
            logger.info(
                "Loaded local embedding model %s in %.1f s",
                self.model,
                time.perf_counter() - started,
            )
        return self._model

    def generate_embedding(self, text: str) -> list[float]:
        return self.generate_embeddings([text])[0]

    def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            model = self._ensure_model()
        except Exception as e:
            raise EmbeddingError(f"Local embedding model {self.model} failed to load ({e})") from e

        out: list[list[float]] = []
        for i in range(0, len(texts), LOCAL_BATCH_SIZE):
            batch = texts[i : i + LOCAL_BATCH_SIZE]
            try:
                vectors = np.array(list(model.embed(batch)), dtype=np.float32)
            except Exception as e:
                raise EmbeddingError(f"Local embedding failed for batch starting at {i} ({e})") from e
            if vectors.ndim != 2 or vectors.shape[0] != len(batch):
                raise EmbeddingError(f"Local model returned {vectors.shape[0]} vectors for {len(batch)} inputs")
            out.extend(_l2_normalize(vectors).tolist())
        return out

    def dimensions(self) -> int:
        return self._dimensions

    def is_available(self) -> bool:
        if self._load_error is not None:
            return False
        try:
            self._ensure_model()
        except Exception as e:
            self._load_error = e
            logger.warning("Local embedding provider not available: %s", e)
            return False
        return True


def resolve_provider(
    kind: str,
    *,
    local: EmbeddingProvider | None = None,
    hosted: EmbeddingProvider | None = None,
) -> EmbeddingProvider:
    """Pick the provider for `kind`.

    "auto" prefers local when it loads, then hosted when it is configured.
    An explicit kind returns that provider as-is.
    """
    if kind == AUTO:
        if local is not None and local.is_available():
            return local
        if hosted is not None and hosted.is_available():
            return hosted
        raise ProviderUnavailable("No embedding providers available (local failed to load, hosted has no API key)")

    if kind == LOCAL:
        if local is None:
            raise ProviderUnavailable("Local embedding provider is not configured")
        return local
    if kind == HOSTED:
        if hosted is None:
            raise ProviderUnavailable("Hosted embedding provider is not configured")
        return hosted

    raise ValueError(f"Unknown embedding provider {kind!r}; expected one of {', '.join(PROVIDER_KINDS)}")


def _l2_normalize(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    norm = np.linalg.norm(x, axis=1, keepdims=True)
    return x / np.maximum(norm, eps)
