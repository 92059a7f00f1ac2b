import json
import unittest

import httpx
import numpy as np

from docgraph.errors import EmbeddingError, ProviderUnavailable
from docgraph.index.embedder import (
    HOSTED_BATCH_SIZE,
    HostedEmbeddingProvider,
    LocalEmbeddingProvider,
    resolve_provider,
)

from fakes import FakeProvider


def _embedding_api(requests: list, *, reverse: bool = False, drop: int = 0, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        if status != 200:
            return httpx.Response(status, text="rate limited")
        items = [{"index": i, "embedding": [float(len(t)), float(i)]} for i, t in enumerate(body["input"])]
        if reverse:
            items.reverse()
        if drop:
            items = items[:-drop]
        return httpx.Response(200, json={"data": items, "usage": {"prompt_tokens": 3, "total_tokens": 3}})

    return handler


def _hosted(handler) -> HostedEmbeddingProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HostedEmbeddingProvider(api_key="sk-test", base_url="https://embed.test/v1/", client=client)


class TestHostedEmbeddingProvider(unittest.TestCase):
    def test_orders_results_by_index(self):
        seen: list = []
        p = _hosted(_embedding_api(seen, reverse=True))
        out = p.generate_embeddings(["a", "bbb", "cc"])
        self.assertEqual(out, [[1.0, 0.0], [3.0, 1.0], [2.0, 2.0]])
        self.assertEqual(seen[0]["model"], "text-embedding-3-small")

    def test_batches_of_one_hundred(self):
        seen: list = []
        p = _hosted(_embedding_api(seen))
        out = p.generate_embeddings([f"t{i}" for i in range(HOSTED_BATCH_SIZE + 50)])
        self.assertEqual(len(out), 150)
        self.assertEqual([len(b["input"]) for b in seen], [100, 50])
        self.assertEqual(p.usage.requests, 2)
        self.assertEqual(p.usage.total_tokens, 6)

    def test_http_error_raises(self):
        p = _hosted(_embedding_api([], status=429))
        with self.assertRaises(EmbeddingError):
            p.generate_embedding("hello")

    def test_count_mismatch_raises(self):
        p = _hosted(_embedding_api([], drop=1))
        with self.assertRaises(EmbeddingError):
            p.generate_embeddings(["a", "b"])

    def test_non_json_body_raises(self):
        p = _hosted(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with self.assertRaises(EmbeddingError):
            p.generate_embedding("hello")

    def test_non_object_items_raise(self):
        p = _hosted(lambda request: httpx.Response(200, json={"data": [[0.1, 0.2]]}))
        with self.assertRaises(EmbeddingError):
            p.generate_embedding("hello")

    def test_non_object_payload_raises(self):
        p = _hosted(lambda request: httpx.Response(200, json=[{"embedding": [0.1]}]))
        with self.assertRaises(EmbeddingError):
            p.generate_embedding("hello")

    def test_transport_error_raises(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(EmbeddingError):
            _hosted(boom).generate_embedding("hello")

    def test_empty_input_makes_no_request(self):
        seen: list = []
        self.assertEqual(_hosted(_embedding_api(seen)).generate_embeddings([]), [])
        self.assertEqual(seen, [])

    def test_availability_and_dimensions(self):
        self.assertTrue(HostedEmbeddingProvider(api_key="k").is_available())
        self.assertFalse(HostedEmbeddingProvider(api_key="").is_available())
        self.assertEqual(HostedEmbeddingProvider(api_key="k", model="text-embedding-3-large").dimensions(), 3072)
        self.assertEqual(HostedEmbeddingProvider(api_key="k", dimensions=256).dimensions(), 256)


class _FakeTextModel:
    def __init__(self):
        self.batches = []

    def embed(self, texts):
        self.batches.append(list(texts))
        for t in texts:
            yield np.array([3.0, 4.0]) * len(t)


class _BrokenTextModel:
    def embed(self, texts):
        raise RuntimeError("onnx session died")


class TestLocalEmbeddingProvider(unittest.TestCase):
    def test_normalizes_and_batches_by_ten(self):
        model = _FakeTextModel()
        p = LocalEmbeddingProvider("fake-model", text_model=model)
        out = p.generate_embeddings([f"text {i}" for i in range(23)])
        self.assertEqual(len(out), 23)
        self.assertEqual([len(b) for b in model.batches], [10, 10, 3])
        self.assertAlmostEqual(out[0][0], 0.6, places=5)
        self.assertAlmostEqual(out[0][1], 0.8, places=5)
        self.assertTrue(p.is_available())

    def test_model_failure_raises(self):
        p = LocalEmbeddingProvider("fake-model", text_model=_BrokenTextModel())
        with self.assertRaises(EmbeddingError):
            p.generate_embedding("x")


class TestResolveProvider(unittest.TestCase):
    def test_auto_prefers_local(self):
        local = FakeProvider({}, available=True)
        hosted = FakeProvider({}, available=True)
        self.assertIs(resolve_provider("auto", local=local, hosted=hosted), local)

    def test_auto_falls_back_to_hosted(self):
        local = FakeProvider({}, available=False)
        hosted = FakeProvider({}, available=True)
        self.assertIs(resolve_provider("auto", local=local, hosted=hosted), hosted)

    def test_auto_with_nothing_available(self):
        with self.assertRaises(ProviderUnavailable):
            resolve_provider("auto", local=FakeProvider({}, available=False), hosted=None)

    def test_explicit_kind_skips_availability_check(self):
        hosted = FakeProvider({}, available=False)
        self.assertIs(resolve_provider("hosted", hosted=hosted), hosted)
        with self.assertRaises(ProviderUnavailable):
            resolve_provider("local", hosted=hosted)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            resolve_provider("cloud")


if __name__ == "__main__":
    unittest.main()
