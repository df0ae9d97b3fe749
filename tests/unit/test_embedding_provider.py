"""
Unit tests for Vector Generator adapters.
"""
import json
import math
from types import SimpleNamespace

import httpx
import pytest

from app.engine.embedding_provider import (
    GeminiOptimizedEmbeddings,
    OpenAICompatibleEmbeddings,
    cosine_similarity,
    get_vector_generator,
    l2_normalize,
)


def _generator(handler, **kwargs) -> OpenAICompatibleEmbeddings:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleEmbeddings(
        base_url="http://embeddings.local/v1/",
        model="text-embedding-test",
        client=client,
        **kwargs,
    )


class TestVectorMath:
    """**Feature: ingestion-pipeline, vector helpers**"""

    def test_l2_normalize_unit_length(self):
        normalized = l2_normalize([3.0, 4.0])
        assert math.isclose(normalized[0], 0.6, rel_tol=1e-6)
        assert math.isclose(normalized[1], 0.8, rel_tol=1e-6)

    def test_l2_normalize_zero_vector(self):
        assert l2_normalize([0.0, 0.0]) == [0.0, 0.0]

    def test_cosine_similarity(self):
        assert math.isclose(cosine_similarity([1, 0], [1, 0]), 1.0)
        assert math.isclose(cosine_similarity([1, 0], [0, 1]), 0.0, abs_tol=1e-9)
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([1, 2], [1, 2, 3]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0


class TestOpenAICompatibleEmbeddings:
    """**Feature: ingestion-pipeline, OpenAI-compatible embeddings**"""

    @pytest.mark.asyncio
    async def test_places_vectors_by_index(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]})

        generator = _generator(handler)
        vectors = await generator.embed(["first", "second"])

        assert seen["url"] == "http://embeddings.local/v1/embeddings"
        assert seen["body"] == {"model": "text-embedding-test", "input": ["first", "second"]}
        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        await generator.close()

    @pytest.mark.asyncio
    async def test_blank_inputs_are_not_sent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["input"] == ["kept"]
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.5]}]})

        vectors = await _generator(handler).embed(["", "kept", "   "])
        assert vectors == [[], [0.5], []]

    @pytest.mark.asyncio
    async def test_all_blank_skips_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await _generator(handler).embed(["", " "]) == [[], []]

    @pytest.mark.asyncio
    async def test_missing_item_stays_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2]}]})

        vectors = await _generator(handler).embed(["a", "b"])
        assert vectors == [[0.1, 0.2], []]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, text="internal error"),
        httpx.Response(429, json={"error": "rate limited"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"unexpected": True}),
        httpx.Response(200, json={"data": [{"index": 7, "embedding": [1.0]}]}),
    ])
    async def test_bad_responses_degrade_to_empty(self, response):
        vectors = await _generator(lambda request: response).embed(["a", "b"])
        assert vectors == [[], []]

    @pytest.mark.asyncio
    async def test_transport_errors_degrade_to_empty(self):
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _generator(timeout).embed(["a"]) == [[]]
        assert await _generator(refused).embed(["a"]) == [[]]

    @pytest.mark.asyncio
    async def test_bearer_and_extra_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={"data": [{"embedding": [1.0]}]})

        generator = _generator(handler, api_key="secret", extra_headers={"X-Title": "ingest"})
        assert await generator.embed(["a"]) == [[1.0]]
        assert seen["authorization"] == "Bearer secret"
        assert seen["x-title"] == "ingest"


class FakeModels:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    def embed_content(self, model, contents, config):
        self.calls.append((model, contents, config))
        if contents in self.fail_on:
            raise RuntimeError("quota exceeded")
        return SimpleNamespace(embeddings=[SimpleNamespace(values=[3.0, 4.0])])


class TestGeminiOptimizedEmbeddings:
    """**Feature: ingestion-pipeline, Gemini embeddings**"""

    def _generator(self, models: FakeModels) -> GeminiOptimizedEmbeddings:
        generator = GeminiOptimizedEmbeddings(api_key="test-key", dimensions=2)
        generator._client = SimpleNamespace(models=models)
        return generator

    @pytest.mark.asyncio
    async def test_embed_normalizes_and_requests_document_task(self):
        models = FakeModels()
        vectors = await self._generator(models).embed(["some text"])

        assert len(vectors) == 1
        assert math.isclose(vectors[0][0], 0.6, rel_tol=1e-6)
        _, _, config = models.calls[0]
        assert config.task_type == GeminiOptimizedEmbeddings.TASK_TYPE_DOCUMENT
        assert config.output_dimensionality == 2

    @pytest.mark.asyncio
    async def test_per_item_failures_are_empty(self):
        models = FakeModels(fail_on={"bad"})
        vectors = await self._generator(models).embed(["good", "bad", ""])

        assert vectors[0]
        assert vectors[1] == []
        assert vectors[2] == []
        assert len(models.calls) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await self._generator(FakeModels()).embed([]) == []


class TestFactory:
    """**Feature: ingestion-pipeline, provider selection**"""

    def test_provider_selection(self):
        assert isinstance(get_vector_generator("google"), GeminiOptimizedEmbeddings)
        assert isinstance(get_vector_generator("openrouter"), OpenAICompatibleEmbeddings)
        assert isinstance(get_vector_generator("lmstudio"), OpenAICompatibleEmbeddings)
