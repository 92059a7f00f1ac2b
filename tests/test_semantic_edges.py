import unittest

from docgraph.config import EmbeddingConfig, EngineConfig, SemanticEdgeConfig
from docgraph.errors import EmbeddingError, SemanticEdgesDisabled
from docgraph.graph import Graph
from docgraph.index.cache import MemoryEmbeddingCache
from docgraph.index.service import EmbeddingsService
from docgraph.index.vector_store import MemoryVectorIndex

from fakes import FakeProvider, link, node


VECTORS = {
    "cats purr": [1.0, 0.0, 0.0],
    "kittens purr": [0.95, 0.05, 0.0],
    "stock prices": [0.0, 1.0, 0.0],
    "bond yields": [0.0, 0.9, 0.1],
}


def three_nodes() -> Graph:
    """Two near-duplicate paragraphs and an unrelated section."""
    g = Graph("doc-1")
    g.insert_node(node("a", content="cats purr"))
    g.insert_node(node("b", content="kittens purr"))
    g.insert_node(node("c", "section", "stock prices"))
    return g


def _service(provider, config=None, *, cache=True):
    return EmbeddingsService(
        config or EngineConfig(),
        provider=provider,
        cache=MemoryEmbeddingCache() if cache else None,
        index=MemoryVectorIndex(),
    )


class TestGraphEmbeddings(unittest.TestCase):
    def test_embeds_text_nodes_in_one_batch(self):
        provider = FakeProvider(VECTORS)
        g = three_nodes()
        g.insert_node(node("empty", content="   "))
        svc = _service(provider)

        report = svc.generate_graph_embeddings(g)

        self.assertEqual((report.embedded, report.cached, report.skipped), (3, 0, 1))
        self.assertEqual(provider.batch_calls, [["cats purr", "kittens purr", "stock prices"]])
        self.assertEqual(svc.index.size(), 3)
        self.assertEqual(svc.node_embedding("a").metadata.type, "paragraph")

    def test_second_run_reuses_cache(self):
        provider = FakeProvider(VECTORS)
        g = three_nodes()
        svc = _service(provider)
        svc.generate_graph_embeddings(g)

        report = svc.generate_graph_embeddings(g)
        self.assertEqual((report.embedded, report.cached), (0, 3))
        self.assertEqual(len(provider.batch_calls), 1)

    def test_changed_content_is_re_embedded(self):
        provider = FakeProvider(VECTORS)
        g = three_nodes()
        svc = _service(provider)
        svc.generate_graph_embeddings(g)

        g.get_node("c").content = "bond yields"
        report = svc.generate_graph_embeddings(g)
        self.assertEqual((report.embedded, report.cached), (1, 2))
        self.assertEqual(provider.batch_calls[-1], ["bond yields"])

    def test_disabled_is_a_no_op(self):
        provider = FakeProvider(VECTORS)
        svc = _service(provider, EngineConfig(embeddings=EmbeddingConfig(enabled=False)))
        report = svc.generate_graph_embeddings(three_nodes())
        self.assertEqual((report.embedded, report.cached, report.skipped), (0, 0, 0))
        self.assertEqual(provider.batch_calls, [])

    def test_count_mismatch_raises(self):
        class ShortProvider(FakeProvider):
            def generate_embeddings(self, texts):
                return super().generate_embeddings(texts)[:-1]

        svc = _service(ShortProvider(VECTORS))
        with self.assertRaises(EmbeddingError):
            svc.generate_graph_embeddings(three_nodes())


class TestSemanticEdges(unittest.TestCase):
    def setUp(self):
        self.provider = FakeProvider(VECTORS)
        self.graph = three_nodes()
        self.svc = _service(self.provider)
        self.svc.generate_graph_embeddings(self.graph)

    def semantic(self):
        return self.graph.query_edges(types=["semantic"])

    def test_near_duplicate_paragraphs_yield_one_pair(self):
        edges = self.svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1)
        self.assertEqual(len(edges), 2)
        self.assertEqual({(e.source, e.target) for e in edges}, {("a", "b"), ("b", "a")})
        self.assertEqual(self.graph.get_node("c").type, "section")
        self.assertFalse([e for e in self.semantic() if "c" in (e.source, e.target)])

    def test_threshold_above_one_yields_nothing(self):
        self.assertEqual(self.svc.generate_semantic_edges(self.graph, threshold=1.1), [])
        self.assertEqual(self.semantic(), [])

    def test_bidirectional_edges_mirror_weights(self):
        self.svc.generate_semantic_edges(self.graph, threshold=-1.0, max_edges_per_node=5)
        by_pair = {(e.source, e.target): e.weight for e in self.semantic()}
        for (s, t), w in by_pair.items():
            self.assertIn((t, s), by_pair)
            self.assertAlmostEqual(by_pair[(t, s)], w)

    def test_unidirectional(self):
        edges = self.svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1, bidirectional=False)
        self.assertEqual({(e.source, e.target) for e in edges}, {("a", "b"), ("b", "a")})
        edges = self.svc.generate_semantic_edges(self.graph, threshold=0.0, max_edges_per_node=1, bidirectional=False)
        # c's best match (b) is barely similar but clears a zero threshold
        self.assertEqual(len(edges), 3)

    def test_edge_metadata(self):
        edges = self.svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1)
        e = edges[0]
        self.assertEqual(e.type, "semantic")
        self.assertAlmostEqual(e.weight, e.metadata.similarity_score)
        self.assertGreaterEqual(e.metadata.similarity_score, 0.9)
        self.assertEqual(e.metadata.embedding_model, "fake-embed")

    def test_regeneration_replaces_previous_edges(self):
        link(self.graph, "a", "c", "references")
        self.svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1)
        first = {(e.source, e.target) for e in self.semantic()}
        self.svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1)
        second = {(e.source, e.target) for e in self.semantic()}
        self.assertEqual(first, second)
        self.assertEqual(len(self.semantic()), 2)
        self.assertEqual(len(self.graph.query_edges(types=["references"])), 1)

    def test_config_defaults_apply(self):
        cfg = EngineConfig(semantic_edges=SemanticEdgeConfig(threshold=0.99, max_edges_per_node=1))
        svc = _service(self.provider, cfg)
        svc.generate_graph_embeddings(self.graph)
        edges = svc.generate_semantic_edges(self.graph)
        self.assertEqual(len(edges), 2)

    def test_disabled_raises(self):
        svc = _service(self.provider, EngineConfig(semantic_edges=SemanticEdgeConfig(enabled=False)))
        with self.assertRaises(SemanticEdgesDisabled):
            svc.generate_semantic_edges(self.graph)

    def test_index_serves_vectors_without_cache(self):
        svc = _service(self.provider, cache=False)
        svc.generate_graph_embeddings(self.graph)
        edges = svc.generate_semantic_edges(self.graph, threshold=0.9, max_edges_per_node=1)
        self.assertEqual(len(edges), 2)

    def test_unembedded_graph_gets_no_edges(self):
        svc = _service(self.provider)
        self.assertEqual(svc.generate_semantic_edges(three_nodes()), [])


if __name__ == "__main__":
    unittest.main()
