"""Tests for the OpenAI / Voyage HTTP embedding backends using httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from notes_rag.errors import EmbeddingFailedError, InitializationFailedError, NotInitializedError
from notes_rag.rag.remote_embeddings import OpenAIEmbeddingProvider, VoyageEmbeddingProvider


def _ok(body: dict, dims: int) -> httpx.Response:
    n = len(body["input"])
    # Reverse order to prove the provider sorts by index.
    data = [{"index": i, "embedding": [float(i)] * dims} for i in reversed(range(n))]
    return httpx.Response(200, json={"data": data})


def _openai(handler, **kwargs) -> OpenAIEmbeddingProvider:
    kwargs.setdefault("api_key", "sk-test")
    kwargs.setdefault("backoff_base_s", 0.0)
    return OpenAIEmbeddingProvider(transport=httpx.MockTransport(handler), **kwargs)


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_request_shape_and_ordering(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok(json.loads(request.content), 1536)

        provider = _openai(handler)
        await provider.initialize()
        vectors = await provider.embed_batch(["a", "b", "c"])

        assert [v[0] for v in vectors] == [0.0, 1.0, 2.0]
        request = seen[0]
        assert request.url.path.endswith("/embeddings")
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body == {"model": "text-embedding-3-small", "input": ["a", "b", "c"]}
        await provider.dispose()

    @pytest.mark.asyncio
    async def test_request_without_client_is_not_initialized(self):
        provider = _openai(lambda request: _ok(json.loads(request.content), 1536))
        with pytest.raises(NotInitializedError):
            await provider._embed_texts(["x"], query=False)

        await provider.initialize()
        await provider.dispose()
        with pytest.raises(NotInitializedError):
            await provider._embed_texts(["x"], query=False)
        assert provider.request_count == 0

    @pytest.mark.asyncio
    async def test_shortened_dimensions_sent_in_body(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return _ok(body, 256)

        provider = _openai(handler, dimensions=256)
        await provider.initialize()
        vec = await provider.embed("query")
        assert len(vec) == 256
        assert bodies[0]["dimensions"] == 256

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_initialize(self):
        provider = OpenAIEmbeddingProvider(api_key="")
        with pytest.raises(InitializationFailedError, match="API key"):
            await provider.initialize()
        assert not provider.is_ready()

    def test_unknown_model_needs_dimensions(self):
        with pytest.raises(ValueError):
            OpenAIEmbeddingProvider(model="my-finetune", api_key="k")


class TestRetries:
    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        statuses = iter([429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            if status != 200:
                return httpx.Response(status, json={"error": "slow down"})
            return _ok(json.loads(request.content), 1536)

        provider = _openai(handler)
        await provider.initialize()
        vectors = await provider.embed_batch(["x"])
        assert len(vectors) == 1
        assert provider.request_count == 2

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        provider = _openai(handler, max_retries=2)
        await provider.initialize()
        with pytest.raises(EmbeddingFailedError, match="after 3 attempts"):
            await provider.embed_batch(["x"])
        assert provider.request_count == 3

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "bad input"})

        provider = _openai(handler, max_retries=5)
        await provider.initialize()
        with pytest.raises(EmbeddingFailedError, match="HTTP 400"):
            await provider.embed("x")
        assert provider.request_count == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return _ok(json.loads(request.content), 1536)

        provider = _openai(handler)
        await provider.initialize()
        assert len(await provider.embed("x")) == 1536
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_count_mismatch_fails_batch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.0] * 1536}]})

        provider = _openai(handler)
        await provider.initialize()
        with pytest.raises(EmbeddingFailedError, match="1 embeddings for 2 inputs"):
            await provider.embed_batch(["a", "b"])


class TestConcurrencyLimit:
    @pytest.mark.asyncio
    async def test_in_flight_requests_bounded(self):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _ok(json.loads(request.content), 1536)

        provider = _openai(handler, max_concurrent_requests=2)
        await provider.initialize()
        await asyncio.gather(*(provider.embed_batch([f"text {i}"]) for i in range(6)))
        assert peak <= 2
        assert provider.request_count == 6


class TestVoyageProvider:
    @pytest.mark.asyncio
    async def test_input_type_distinguishes_queries_and_documents(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return _ok(body, 512)

        provider = VoyageEmbeddingProvider(
            api_key="voy-test", transport=httpx.MockTransport(handler), backoff_base_s=0.0
        )
        await provider.initialize()
        await provider.embed("what did I plan")
        await provider.embed_batch(["first note", "second note"])

        assert bodies[0]["input_type"] == "query"
        assert bodies[1]["input_type"] == "document"
        assert bodies[1]["model"] == "voyage-3-lite"
        assert provider.dimensions == 512
        await provider.dispose()
