from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


load_dotenv()


MODEL_DIMENSIONS = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}


def model_dimensions(model: str, default: int = 1536) -> int:
    return MODEL_DIMENSIONS.get(model, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EmbeddingConfig:
    enabled: bool = True
    provider: str = "auto"  # hosted | local | auto
    model: str = "text-embedding-3-small"
    dimensions: int = 1536


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    ttl_seconds: int | None = 86400


@dataclass(frozen=True)
class SemanticEdgeConfig:
    enabled: bool = True
    threshold: float = 0.7
    max_edges_per_node: int = 5


@dataclass(frozen=True)
class VectorSearchConfig:
    enabled: bool = True
    backend: str = "memory"  # memory | external


@dataclass(frozen=True)
class EngineConfig:
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    semantic_edges: SemanticEdgeConfig = field(default_factory=SemanticEdgeConfig)
    vector_search: VectorSearchConfig = field(default_factory=VectorSearchConfig)


@dataclass(frozen=True)
class Settings:
    # Embeddings
    embeddings_enabled: bool = _env_bool("DOCGRAPH_EMBEDDINGS_ENABLED", True)
    embed_provider: str = os.getenv("DOCGRAPH_EMBED_PROVIDER", "auto")
    embed_model: str = os.getenv("DOCGRAPH_EMBED_MODEL", "BAAI/bge-small-en-v1.5")
    # 0 means the known size of whichever model is active
    embed_dimensions: int = int(os.getenv("DOCGRAPH_EMBED_DIMENSIONS", "0") or 0)

    # Hosted (OpenAI-compatible) embeddings
    hosted_model: str = os.getenv("DOCGRAPH_HOSTED_MODEL", "text-embedding-3-small")
    hosted_base_url: str = os.getenv("DOCGRAPH_HOSTED_BASE_URL", "https://api.openai.com/v1")
    hosted_api_key: str = os.getenv("DOCGRAPH_OPENAI_API_KEY", os.getenv("OPENAI_API_KEY", ""))

    # Cache. An empty Redis URL selects the in-process cache.
    cache_enabled: bool = _env_bool("DOCGRAPH_CACHE_ENABLED", True)
    cache_ttl_seconds: int = int(os.getenv("DOCGRAPH_CACHE_TTL_SECONDS", "86400"))
    redis_url: str = os.getenv("DOCGRAPH_REDIS_URL", "")

    # Semantic edges
    semantic_edges_enabled: bool = _env_bool("DOCGRAPH_SEMANTIC_EDGES_ENABLED", True)
    semantic_threshold: float = float(os.getenv("DOCGRAPH_SEMANTIC_THRESHOLD", "0.7"))
    semantic_max_edges: int = int(os.getenv("DOCGRAPH_SEMANTIC_MAX_EDGES", "5"))

    # Vector search
    vector_search_enabled: bool = _env_bool("DOCGRAPH_VECTOR_SEARCH_ENABLED", True)
    vector_backend: str = os.getenv("DOCGRAPH_VECTOR_BACKEND", "memory")

    log_level: str = os.getenv("DOCGRAPH_LOG_LEVEL", "WARNING")

    def engine_config(self) -> EngineConfig:
        hosted = self.embed_provider == "hosted"
        model = self.hosted_model if hosted else self.embed_model
        return EngineConfig(
            embeddings=EmbeddingConfig(
                enabled=self.embeddings_enabled,
                provider=self.embed_provider,
                model=model,
                dimensions=self.embed_dimensions or model_dimensions(model, 1536 if hosted else 384),
            ),
            cache=CacheConfig(
                enabled=self.cache_enabled,
                ttl_seconds=self.cache_ttl_seconds or None,
            ),
            semantic_edges=SemanticEdgeConfig(
                enabled=self.semantic_edges_enabled,
                threshold=self.semantic_threshold,
                max_edges_per_node=self.semantic_max_edges,
            ),
            vector_search=VectorSearchConfig(
                enabled=self.vector_search_enabled,
                backend=self.vector_backend,
            ),
        )
