from __future__ import annotations

import logging

from ..config import Settings, model_dimensions
from .cache import CacheStats, EmbeddingCache, MemoryEmbeddingCache, RedisEmbeddingCache
from .embedder import HostedEmbeddingProvider, LocalEmbeddingProvider
from .service import EmbeddingsService
from .vector_store import MemoryVectorIndex


logger = logging.getLogger(__name__)


def build_cache(settings: Settings, *, stats: CacheStats | None = None) -> EmbeddingCache | None:
    if not settings.cache_enabled:
        return None
    ttl = settings.cache_ttl_seconds or None
    if settings.redis_url:
        try:
            cache = RedisEmbeddingCache.from_url(settings.redis_url, ttl, stats=stats)
            logger.info("Using Redis embedding cache at %s", settings.redis_url)
            return cache
        except Exception as e:
            logger.warning("Redis cache not available (%s), falling back to memory cache", e)
    return MemoryEmbeddingCache(ttl, stats=stats)


def build_index(settings: Settings) -> MemoryVectorIndex | None:
    if not settings.vector_search_enabled:
        return None
    if settings.vector_backend != "memory":
        logger.warning("Vector backend %r is not implemented, using memory index", settings.vector_backend)
    return MemoryVectorIndex()


def build_embeddings_service(settings: Settings | None = None) -> EmbeddingsService:
    """Wire providers, cache and index from settings."""
    settings = settings or Settings()

    hosted = None
    if settings.hosted_api_key:
        hosted = HostedEmbeddingProvider(
            api_key=settings.hosted_api_key,
            base_url=settings.hosted_base_url,
            model=settings.hosted_model,
            dimensions=settings.embed_dimensions,
        )
    local = LocalEmbeddingProvider(
        settings.embed_model,
        dimensions=settings.embed_dimensions or model_dimensions(settings.embed_model, 384),
    )

    return EmbeddingsService(
        settings.engine_config(),
        local=local,
        hosted=hosted,
        cache=build_cache(settings),
        index=build_index(settings),
    )
