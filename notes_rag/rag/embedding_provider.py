"""
Embedding provider abstraction with local sentence-transformers backend.

Every backend shares one lifecycle: ``initialize()`` once (concurrent
callers share the same setup task), embed while ready, ``dispose()`` when
done. Backends only implement ``_setup``, ``_embed_texts`` and
``_teardown``; the base class enforces readiness, batch limits, input
validation and output dimensions.

Convention shared by all backends: ``embed()`` is used for queries and
``embed_batch()`` for note passages. Models that distinguish the two
(E5 prefixes, Voyage ``input_type``) rely on it.

Batch failure mode: every shipped backend is atomic. A backend error fails
the whole ``embed_batch`` call with a single ``EmbeddingFailedError``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from notes_rag.config.settings import EmbeddingConfig
from notes_rag.errors import (
    BatchTooLargeError,
    DisposedError,
    EmbeddingFailedError,
    EmbeddingProviderError,
    InitializationFailedError,
    ModelNotFoundError,
    NotInitializedError,
)

LOG = logging.getLogger("rag.embedding_provider")


@dataclass(frozen=True)
class EmbeddingResult:
    """A single embedding plus the facts needed to audit it."""

    vector: list[float]
    token_count: int
    model_id: str
    dimensions: int


@dataclass(frozen=True)
class ModelLoadProgress:
    """Progress event emitted while a provider initializes."""

    status: str  # "loading", "ready", "error"
    progress: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class ProviderStatus:
    name: str
    model_id: str
    dimensions: int
    is_ready: bool
    disposed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "model_id": self.model_id,
            "dimensions": self.dimensions,
            "is_ready": self.is_ready,
            "disposed": self.disposed,
        }


ProgressCallback = Callable[[ModelLoadProgress], None]


def _notify(callback: Optional[ProgressCallback], event: ModelLoadProgress) -> None:
    if callback is None:
        return
    try:
        callback(event)
    except Exception as exc:
        LOG.debug("Progress callback raised: %s", exc)


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    name = "abstract"

    def __init__(self, model_id: str, dimensions: int, max_batch_size: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be > 0")
        self._model_id = model_id
        self._dimensions = dimensions
        self._max_batch_size = max_batch_size
        self._ready = False
        self._disposed = False
        self._init_task: Optional[asyncio.Task] = None

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def initialize(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """
        Perform one-time setup (load a model, open an HTTP client).

        Concurrent calls await the same setup task. A failed setup is not
        cached, so a later call tries again.
        """
        if self._disposed:
            raise DisposedError("Provider has been disposed", self.name)
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._run_initialize(on_progress))
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and not self._ready and self._init_task is task:
                self._init_task = None

    async def _run_initialize(self, on_progress: Optional[ProgressCallback]) -> None:
        _notify(on_progress, ModelLoadProgress(status="loading"))
        try:
            await self._setup()
        except InitializationFailedError as exc:
            _notify(on_progress, ModelLoadProgress(status="error", error=str(exc)))
            raise
        except Exception as exc:
            _notify(on_progress, ModelLoadProgress(status="error", error=str(exc)))
            raise InitializationFailedError(
                f"Failed to initialize {self.name} ({self._model_id}): {exc}", self.name
            ) from exc
        self._ready = True
        _notify(on_progress, ModelLoadProgress(status="ready", progress=100.0))
        LOG.info("Embedding provider ready: %s (%s, %d dims)", self.name, self._model_id, self._dimensions)

    def is_ready(self) -> bool:
        return self._ready and not self._disposed

    async def dispose(self) -> None:
        """Release resources. Every later call raises ``DisposedError``."""
        if self._disposed:
            return
        self._disposed = True
        was_ready = self._ready
        self._ready = False
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._init_task = None
        if was_ready:
            await self._teardown()
        LOG.debug("Embedding provider disposed: %s", self.name)

    def get_status(self) -> ProviderStatus:
        return ProviderStatus(
            name=self.name,
            model_id=self._model_id,
            dimensions=self._dimensions,
            is_ready=self.is_ready(),
            disposed=self._disposed,
        )

    # ── Embedding ─────────────────────────────────────────────────────

    async def embed(self, text: str) -> list[float]:
        """Embed a single query text."""
        self._check_usable()
        _validate_text(text, 0)
        vectors = await self._run_embed([text], query=True)
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed passages, preserving input order.

        Raises BatchTooLargeError when ``len(texts) > max_batch_size``.
        """
        self._check_usable()
        if not texts:
            return []
        if len(texts) > self._max_batch_size:
            raise BatchTooLargeError(len(texts), self._max_batch_size, self.name)
        for i, text in enumerate(texts):
            _validate_text(text, i)
        return await self._run_embed(list(texts), query=False)

    async def embed_with_metadata(self, text: str) -> EmbeddingResult:
        vector = await self.embed(text)
        return EmbeddingResult(
            vector=vector,
            token_count=self.count_tokens(text),
            model_id=self._model_id,
            dimensions=self._dimensions,
        )

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (4 chars per token). Backends may override."""
        return max(1, math.ceil(len(text) / 4))

    async def _run_embed(self, texts: list[str], *, query: bool) -> list[list[float]]:
        try:
            vectors = await self._embed_texts(texts, query=query)
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            raise EmbeddingFailedError(f"{self.name} failed to embed {len(texts)} text(s): {exc}", self.name) from exc

        if len(vectors) != len(texts):
            raise EmbeddingFailedError(
                f"{self.name} returned {len(vectors)} vectors for {len(texts)} texts", self.name
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingFailedError(
                    f"{self.name} returned a {len(vector)}-dim vector, expected {self._dimensions}",
                    self.name,
                )
        return vectors

    def _check_usable(self) -> None:
        if self._disposed:
            raise DisposedError("Provider has been disposed", self.name)
        if not self._ready:
            raise NotInitializedError("Provider is not initialized. Call initialize() first.", self.name)

    # ── Backend hooks ─────────────────────────────────────────────────

    @abstractmethod
    async def _setup(self) -> None:
        """Load the model or open the connection."""

    @abstractmethod
    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        """Return one vector per text, in order."""

    async def _teardown(self) -> None:
        """Release backend resources. Override if needed."""
        pass


def _validate_text(text: str, index: int) -> None:
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"Invalid input at index {index}: text must be a non-empty string")


# ── Local sentence-transformers backend ──────────────────────────────────────


@dataclass(frozen=True)
class LocalModelSpec:
    model_id: str
    dimensions: int
    query_prefix: str = ""
    passage_prefix: str = ""


KNOWN_LOCAL_MODELS: dict[str, LocalModelSpec] = {
    "all-MiniLM-L6-v2": LocalModelSpec("sentence-transformers/all-MiniLM-L6-v2", 384),
    "multilingual-e5-small": LocalModelSpec(
        "intfloat/multilingual-e5-small", 384, query_prefix="query: ", passage_prefix="passage: "
    ),
    "bge-m3": LocalModelSpec("BAAI/bge-m3", 1024),
    "paraphrase-multilingual-MiniLM-L12-v2": LocalModelSpec(
        "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2", 384
    ),
}

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions, ~80 MB). Known short
    keys resolve to Hugging Face ids; any other id needs explicit
    ``dimensions``. Encoding runs in a worker thread so the event loop
    stays responsive.
    """

    name = "local-sentence-transformers"

    def __init__(
        self,
        model_name: str = DEFAULT_LOCAL_MODEL,
        dimensions: int | None = None,
        max_batch_size: int = 64,
        cache_dir: str | None = None,
        device: str | None = None,
    ) -> None:
        spec = KNOWN_LOCAL_MODELS.get(model_name)
        if spec is None:
            if not dimensions:
                raise ValueError(f"Unknown local model {model_name!r}: pass dimensions explicitly")
            spec = LocalModelSpec(model_name, dimensions)
        super().__init__(spec.model_id, dimensions or spec.dimensions, max_batch_size)
        self._spec = spec
        self._cache_dir = cache_dir
        self._device = device
        self._model: Any = None

    async def _setup(self) -> None:
        self._model = await asyncio.to_thread(self._load_model)

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        LOG.info("Loading embedding model: %s", self._spec.model_id)
        try:
            model = SentenceTransformer(self._spec.model_id, cache_folder=self._cache_dir, device=self._device)
        except OSError as exc:
            raise ModelNotFoundError(f"Model {self._spec.model_id!r} could not be found: {exc}", self.name) from exc
        actual = model.get_sentence_embedding_dimension()
        if actual != self._dimensions:
            raise InitializationFailedError(
                f"Model {self._spec.model_id!r} produces {actual}-dim vectors, configured for {self._dimensions}",
                self.name,
            )
        return model

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        prefix = self._spec.query_prefix if query else self._spec.passage_prefix
        formatted = [prefix + t for t in texts] if prefix else texts
        return await asyncio.to_thread(self._encode, formatted)

    def _encode(self, texts: list[str]) -> list[list[float]]:
        embeddings = self._model.encode(
            texts,
            batch_size=min(len(texts), 32),
            show_progress_bar=False,
            normalize_embeddings=True,
            convert_to_numpy=True,
        )
        return [e.tolist() for e in embeddings]

    def count_tokens(self, text: str) -> int:
        tokenizer = getattr(self._model, "tokenizer", None)
        if tokenizer is None:
            return super().count_tokens(text)
        return len(tokenizer(text, add_special_tokens=True)["input_ids"])

    async def _teardown(self) -> None:
        self._model = None


# ── Deterministic hashing backend ────────────────────────────────────────────

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic feature-hashing embeddings.

    Each lower-cased word token is hashed (SHA-256) to a bucket and a sign;
    the bag of signed counts is L2-normalized. Texts sharing words get
    positive cosine similarity, so ranking behaves sensibly without a
    model download. Used offline and in tests.
    """

    name = "hashing"

    def __init__(self, dimensions: int = 256, max_batch_size: int = 1024, model_id: str = "hashing-v1") -> None:
        super().__init__(model_id, dimensions, max_batch_size)
        self.calls = 0

    async def _setup(self) -> None:
        return None

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        self.calls += 1
        return [self._text_to_vec(t) for t in texts]

    def _text_to_vec(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower()) or [text.strip()]
        raw = [0.0] * self._dimensions
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimensions
            raw[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(x * x for x in raw))
        if norm > 0:
            raw = [x / norm for x in raw]
        return raw

    def count_tokens(self, text: str) -> int:
        return max(1, len(_TOKEN_RE.findall(text)))


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the configured type.

    Args:
        config: Embedding section of the application config

    Returns:
        EmbeddingProvider instance (not yet initialized)

    Raises:
        ValueError: Unknown provider
    """
    provider = config.provider
    batch = config.max_batch_size or None

    if provider == "local":
        return LocalEmbeddingProvider(
            model_name=config.model or DEFAULT_LOCAL_MODEL,
            dimensions=config.dimensions or None,
            max_batch_size=batch or 64,
        )

    elif provider == "hashing":
        return HashingEmbeddingProvider(
            dimensions=config.dimensions or 256,
            max_batch_size=batch or 1024,
        )

    elif provider in ("openai", "voyage"):
        from notes_rag.rag.remote_embeddings import OpenAIEmbeddingProvider, VoyageEmbeddingProvider

        cls = OpenAIEmbeddingProvider if provider == "openai" else VoyageEmbeddingProvider
        kwargs: dict[str, Any] = {
            "api_key": config.api_key,
            "timeout_s": config.timeout_s,
            "max_retries": config.max_retries,
            "max_concurrent_requests": config.max_concurrent_requests,
        }
        if config.model:
            kwargs["model"] = config.model
        if config.dimensions:
            kwargs["dimensions"] = config.dimensions
        if batch:
            kwargs["max_batch_size"] = batch
        if config.base_url:
            kwargs["base_url"] = config.base_url
        return cls(**kwargs)

    else:
        raise ValueError(
            f"Unknown embedding provider: {provider!r}. Supported: 'local', 'openai', 'voyage', 'hashing'"
        )
