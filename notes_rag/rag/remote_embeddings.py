"""
Remote embedding backends: OpenAI and Voyage AI.

Both speak the same ``POST /embeddings`` shape (``{"model", "input"}`` in,
``{"data": [{"index", "embedding"}]}`` out), so they share one httpx-based
base class. API keys are opaque strings; ``initialize()`` only checks that
one is present and opens the client.

Rate limiting: an ``asyncio.Semaphore`` bounds in-flight requests per
provider. HTTP 429, 5xx and transport errors are retried with exponential
backoff; any other 4xx fails the batch immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from notes_rag.errors import EmbeddingFailedError, InitializationFailedError, NotInitializedError
from notes_rag.rag.embedding_provider import EmbeddingProvider

LOG = logging.getLogger("rag.remote_embeddings")


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """Shared request/retry logic for ``/embeddings`` style APIs."""

    name = "remote"
    default_base_url = ""
    known_models: dict[str, int] = {}

    def __init__(
        self,
        model: str,
        dimensions: int | None,
        max_batch_size: int,
        api_key: str = "",
        base_url: str | None = None,
        timeout_s: float = 60.0,
        max_retries: int = 3,
        max_concurrent_requests: int = 4,
        backoff_base_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        dims = dimensions or self.known_models.get(model)
        if not dims:
            raise ValueError(f"Unknown {self.name} model {model!r}: pass dimensions explicitly")
        super().__init__(model, dims, max_batch_size)
        self._api_key = api_key
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout_s = timeout_s
        self._max_retries = max(0, max_retries)
        self._backoff_base_s = backoff_base_s
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_requests))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.request_count = 0

    async def _setup(self) -> None:
        if not self._api_key:
            raise InitializationFailedError(f"API key required for {self.name} embeddings", self.name)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            headers=self._headers(),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _request_body(self, texts: list[str], *, query: bool) -> dict[str, Any]:
        return {"model": self._model_id, "input": texts}

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        body = self._request_body(texts, query=query)
        async with self._semaphore:
            data = await self._post_with_retry(body)
        return self._parse_response(data, len(texts))

    async def _post_with_retry(self, body: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            raise NotInitializedError("Provider is not initialized. Call initialize() first.", self.name)
        last_error = ""
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            self.request_count += 1
            try:
                resp = await self._client.post("/embeddings", json=body)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                elif resp.status_code >= 400:
                    raise EmbeddingFailedError(
                        f"{self.name} rejected the request: HTTP {resp.status_code} {resp.text[:200]}",
                        self.name,
                    )
                else:
                    return resp.json()

            if attempt + 1 < attempts:
                wait = self._backoff_base_s * 2**attempt
                LOG.warning(
                    "%s embedding request failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    self.name,
                    attempt + 1,
                    attempts,
                    last_error,
                    wait,
                )
                await asyncio.sleep(wait)

        raise EmbeddingFailedError(
            f"{self.name} embedding request failed after {attempts} attempts: {last_error}",
            self.name,
        )

    def _parse_response(self, data: dict[str, Any], expected: int) -> list[list[float]]:
        items = data.get("data")
        if not isinstance(items, list) or len(items) != expected:
            got = len(items) if isinstance(items, list) else 0
            raise EmbeddingFailedError(f"{self.name} returned {got} embeddings for {expected} inputs", self.name)
        # Responses carry an explicit index; order is not guaranteed.
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [[float(x) for x in item["embedding"]] for item in ordered]

    async def _teardown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI embeddings API (text-embedding-3-small by default)."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    known_models = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        max_batch_size: int = 2048,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, dimensions, max_batch_size, **kwargs)

    def _request_body(self, texts: list[str], *, query: bool) -> dict[str, Any]:
        body = super()._request_body(texts, query=query)
        # text-embedding-3 models can shorten their output natively
        if self._model_id.startswith("text-embedding-3") and self._dimensions != self.known_models.get(self._model_id):
            body["dimensions"] = self._dimensions
        return body


class VoyageEmbeddingProvider(_HTTPEmbeddingProvider):
    """Voyage AI embeddings API (voyage-3-lite by default)."""

    name = "voyage"
    default_base_url = "https://api.voyageai.com/v1"
    known_models = {
        "voyage-3-lite": 512,
        "voyage-3": 1024,
        "voyage-3-large": 1024,
        "voyage-code-3": 1024,
        "voyage-multilingual-2": 1024,
    }

    def __init__(
        self,
        model: str = "voyage-3-lite",
        dimensions: int | None = None,
        max_batch_size: int = 128,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, dimensions, max_batch_size, **kwargs)

    def _request_body(self, texts: list[str], *, query: bool) -> dict[str, Any]:
        body = super()._request_body(texts, query=query)
        body["input_type"] = "query" if query else "document"
        return body
