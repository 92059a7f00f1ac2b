import unittest

from docgraph.config import Settings
from docgraph.index.build import build_cache, build_embeddings_service, build_index
from docgraph.index.cache import MemoryEmbeddingCache
from docgraph.index.embedder import HostedEmbeddingProvider, LocalEmbeddingProvider
from docgraph.index.vector_store import MemoryVectorIndex


def _settings(**overrides) -> Settings:
    base = dict(
        embeddings_enabled=True,
        embed_provider="auto",
        embed_model="BAAI/bge-small-en-v1.5",
        embed_dimensions=0,
        hosted_model="text-embedding-3-small",
        hosted_base_url="https://api.openai.com/v1",
        hosted_api_key="",
        cache_enabled=True,
        cache_ttl_seconds=86400,
        redis_url="",
        semantic_edges_enabled=True,
        semantic_threshold=0.7,
        semantic_max_edges=5,
        vector_search_enabled=True,
        vector_backend="memory",
        log_level="WARNING",
    )
    base.update(overrides)
    return Settings(**base)


class TestSettings(unittest.TestCase):
    def test_engine_config_mirrors_settings(self):
        cfg = _settings(semantic_threshold=0.8, semantic_max_edges=3, cache_ttl_seconds=0).engine_config()
        self.assertEqual(cfg.semantic_edges.threshold, 0.8)
        self.assertEqual(cfg.semantic_edges.max_edges_per_node, 3)
        self.assertIsNone(cfg.cache.ttl_seconds)
        self.assertEqual(cfg.embeddings.model, "BAAI/bge-small-en-v1.5")
        self.assertEqual(cfg.vector_search.backend, "memory")

    def test_hosted_provider_uses_hosted_model(self):
        cfg = _settings(embed_provider="hosted").engine_config()
        self.assertEqual(cfg.embeddings.model, "text-embedding-3-small")
        self.assertEqual(cfg.embeddings.dimensions, 1536)

    def test_dimensions_follow_the_active_model(self):
        self.assertEqual(_settings().engine_config().embeddings.dimensions, 384)
        cfg = _settings(embed_provider="hosted", hosted_model="text-embedding-3-large").engine_config()
        self.assertEqual(cfg.embeddings.dimensions, 3072)
        self.assertEqual(_settings(embed_dimensions=512).engine_config().embeddings.dimensions, 512)


class TestBuild(unittest.TestCase):
    def test_memory_cache_without_redis_url(self):
        cache = build_cache(_settings(cache_ttl_seconds=120))
        self.assertIsInstance(cache, MemoryEmbeddingCache)
        self.assertEqual(cache.ttl_seconds, 120)
        cache.close()

    def test_cache_disabled(self):
        self.assertIsNone(build_cache(_settings(cache_enabled=False)))

    def test_unreachable_redis_falls_back_to_memory(self):
        with self.assertLogs("docgraph.index.build", level="WARNING"):
            cache = build_cache(_settings(redis_url="redis://127.0.0.1:1/0"))
        self.assertIsInstance(cache, MemoryEmbeddingCache)
        cache.close()

    def test_external_backend_falls_back_to_memory(self):
        with self.assertLogs("docgraph.index.build", level="WARNING"):
            index = build_index(_settings(vector_backend="external"))
        self.assertIsInstance(index, MemoryVectorIndex)
        self.assertIsNone(build_index(_settings(vector_search_enabled=False)))

    def test_service_wiring(self):
        svc = build_embeddings_service(_settings(hosted_api_key="sk-test"))
        self.assertIsInstance(svc._local, LocalEmbeddingProvider)
        self.assertIsInstance(svc._hosted, HostedEmbeddingProvider)
        self.assertEqual(svc._local.dimensions(), 384)
        self.assertEqual(svc._hosted.dimensions(), 1536)
        self.assertIsNotNone(svc.index)
        svc.close()

        svc = build_embeddings_service(_settings())
        self.assertIsNone(svc._hosted)
        svc.close()

    def test_explicit_dimensions_reach_both_providers(self):
        svc = build_embeddings_service(_settings(hosted_api_key="sk-test", embed_dimensions=512))
        self.assertEqual(svc._local.dimensions(), 512)
        self.assertEqual(svc._hosted.dimensions(), 512)
        svc.close()


if __name__ == "__main__":
    unittest.main()
