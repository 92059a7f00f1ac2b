import unittest

from docgraph.config import EngineConfig
from docgraph.index.cache import MemoryEmbeddingCache
from docgraph.index.service import EmbeddingsService
from docgraph.index.vector_store import MemoryVectorIndex
from docgraph.retrieval import default_registry

from fakes import FakeProvider, node, report_graph


class TestToolRegistry(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.graph = report_graph()
        self.ctx = self.registry.create_execution_context("doc-1", self.graph)

    def test_registers_all_tools(self):
        self.assertEqual(
            self.registry.names(),
            ["get_related_node", "get_table", "get_image", "get_section", "search_nodes"],
        )
        self.assertTrue(self.registry.has("get_table"))
        self.assertIsNone(self.registry.get("nope"))

    def test_schemas(self):
        schemas = {s["name"]: s for s in self.registry.schemas()}
        params = {p["name"]: p for p in schemas["get_related_node"]["parameters"]}
        self.assertTrue(params["nodeId"]["required"])
        self.assertEqual(params["depth"]["default"], 2)
        self.assertEqual(params["maxNodes"]["default"], 10)
        self.assertNotIn("default", params["nodeTypes"])

    def test_execution_context_defaults(self):
        self.assertEqual(self.ctx.token_budget.max_tokens, 8000)
        self.assertEqual(self.ctx.token_budget.reserve_tokens, 1000)
        self.assertEqual(self.ctx.token_budget.current_tokens, 0)
        self.assertIsNone(self.ctx.embeddings)

    def test_unknown_tool_lists_available(self):
        res = self.registry.execute("summarize", {}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("get_related_node", res.error)

    def test_missing_required_parameter(self):
        res = self.registry.execute("get_table", {}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("tableId", res.error)

    def test_no_graph(self):
        res = self.registry.execute("get_table", {"tableId": "1"}, None)
        self.assertFalse(res.success)

    def test_result_wire_shape(self):
        res = self.registry.execute("get_related_node", {"nodeId": "table_1"}, self.ctx)
        d = res.to_dict()
        self.assertEqual(set(d), {"success", "data", "metadata"})
        self.assertIsNotNone(res.metadata.execution_time_ms)
        self.assertEqual(d["metadata"]["nodes_retrieved"], len(d["data"]["neighbors"]) + 1)


class TestGetRelatedNodeTool(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.graph = report_graph()
        self.ctx = self.registry.create_execution_context("doc-1", self.graph)

    def test_paragraph_filter(self):
        res = self.registry.execute("get_related_node", {"nodeId": "table_1", "nodeTypes": ["paragraph"]}, self.ctx)
        self.assertTrue(res.success)
        types = {n["type"] for n in res.data["neighbors"]}
        self.assertEqual(types, {"paragraph"})

    def test_unknown_node_is_a_soft_failure(self):
        res = self.registry.execute("get_related_node", {"nodeId": "missing"}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("missing", res.error)

    def test_budget_is_enforced(self):
        self.graph.insert_node(node("big", content="a" * 1948))
        self.ctx.token_budget.current_tokens = 9700
        self.ctx.token_budget.max_tokens = 10000
        res = self.registry.execute("get_related_node", {"nodeId": "big"}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("budget", res.error)

    def test_bad_parameter_type(self):
        res = self.registry.execute("get_related_node", {"nodeId": "table_1", "depth": "deep"}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("depth", res.error)

    def test_string_lists_from_the_command_line(self):
        res = self.registry.execute("get_related_node", {"nodeId": "table_1", "nodeTypes": "paragraph"}, self.ctx)
        self.assertTrue(res.success)
        self.assertTrue(all(n["type"] == "paragraph" for n in res.data["neighbors"]))


class TestGetTableTool(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.ctx = self.registry.create_execution_context("doc-1", report_graph())

    def test_by_id_number_and_caption(self):
        for ref in ("table_1", "1", "Table 1"):
            res = self.registry.execute("get_table", {"tableId": ref}, self.ctx)
            self.assertTrue(res.success, ref)
            self.assertEqual(res.data["table"]["id"], "table_1")

    def test_context_is_prose_near_the_table(self):
        res = self.registry.execute("get_table", {"tableId": "1"}, self.ctx)
        ctx_ids = {n["id"] for n in res.data["context"]}
        self.assertEqual(ctx_ids, {"para_1"})
        self.assertEqual(res.metadata.nodes_retrieved, 2)

    def test_without_context(self):
        res = self.registry.execute("get_table", {"tableId": "1", "includeContext": False}, self.ctx)
        self.assertEqual(res.data["context"], [])
        self.assertEqual(res.metadata.nodes_retrieved, 1)

    def test_not_found(self):
        res = self.registry.execute("get_table", {"tableId": "7"}, self.ctx)
        self.assertFalse(res.success)
        self.assertIn("not found", res.error)


class TestGetImageTool(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.ctx = self.registry.create_execution_context("doc-1", report_graph())

    def test_by_figure_number(self):
        res = self.registry.execute("get_image", {"imageId": "2"}, self.ctx)
        self.assertTrue(res.success)
        img = res.data["image"]
        self.assertEqual(img["id"], "image_2")
        self.assertEqual(img["url"], "https://example.com/users.png")
        self.assertEqual(img["caption"], "Figure 2: Active users")
        self.assertEqual(img["metadata"]["width"], 640)
        self.assertEqual({n["id"] for n in res.data["context"]}, {"para_2"})

    def test_by_caption_text(self):
        res = self.registry.execute("get_image", {"imageId": "Figure 2", "includeCaption": False}, self.ctx)
        self.assertTrue(res.success)
        self.assertIsNone(res.data["image"]["caption"])

    def test_not_found(self):
        res = self.registry.execute("get_image", {"imageId": "9"}, self.ctx)
        self.assertFalse(res.success)


class TestGetSectionTool(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.ctx = self.registry.create_execution_context("doc-1", report_graph())

    def test_by_heading_case_insensitive(self):
        res = self.registry.execute("get_section", {"sectionId": "  results "}, self.ctx)
        self.assertTrue(res.success)
        self.assertEqual(res.data["section"]["id"], "sec_1")
        self.assertEqual(
            [c["id"] for c in res.data["children"]],
            ["para_1", "para_2", "table_1", "image_2"],
        )

    def test_by_id_without_children(self):
        res = self.registry.execute("get_section", {"sectionId": "sec_1", "includeChildren": "false"}, self.ctx)
        self.assertTrue(res.success)
        self.assertEqual(res.data["children"], [])

    def test_not_found(self):
        res = self.registry.execute("get_section", {"sectionId": "Appendix"}, self.ctx)
        self.assertFalse(res.success)


class TestSearchNodesTool(unittest.TestCase):
    def setUp(self):
        self.registry = default_registry()
        self.graph = report_graph()

    def test_without_embeddings_fails_softly(self):
        ctx = self.registry.create_execution_context("doc-1", self.graph)
        res = self.registry.execute("search_nodes", {"query": "revenue"}, ctx)
        self.assertFalse(res.success)
        self.assertIn("not configured", res.error)

    def test_with_embeddings(self):
        texts = [n.content for n in self.graph.nodes if n.content.strip()]
        vectors = {t: [1.0, float(i)] for i, t in enumerate(texts)}
        vectors["revenue"] = [0.0, 1.0]
        provider = FakeProvider(vectors)
        svc = EmbeddingsService(EngineConfig(), provider=provider, cache=MemoryEmbeddingCache(), index=MemoryVectorIndex())
        svc.generate_graph_embeddings(self.graph)

        ctx = self.registry.create_execution_context("doc-1", self.graph, embeddings=svc)
        res = self.registry.execute("search_nodes", {"query": "revenue", "topK": 2}, ctx)
        self.assertTrue(res.success)
        self.assertEqual(len(res.data["results"]), 2)
        scores = [r["score"] for r in res.data["results"]]
        self.assertEqual(scores, sorted(scores, reverse=True))
        self.assertEqual(res.metadata.nodes_retrieved, 2)


if __name__ == "__main__":
    unittest.main()
