"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.integration: touches a real Chroma persistence directory
    @pytest.mark.embedding: requires the sentence-transformers model to be loadable

Run stringent tests:
    pytest -m embedding               # only embedding model tests
    pytest -m "not integration"       # skip all integration tests (fast CI)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from notes_rag.rag.embedding_provider import EmbeddingProvider, HashingEmbeddingProvider


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("sentence-transformers/all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


# Cache the check at module level so it runs once per session
_EMBEDDING_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: uses a real Chroma client on disk")
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _EMBEDDING_OK

    needs_model = [item for item in items if "embedding" in item.keywords]
    if not needs_model:
        return
    if _EMBEDDING_OK is None:
        _EMBEDDING_OK = _embedding_model_available()

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")
    if not _EMBEDDING_OK:
        for item in needs_model:
            item.add_marker(skip_embedding)


# ── Test providers ───────────────────────────────────────────────────────────


class FlakyEmbeddingProvider(HashingEmbeddingProvider):
    """Hashing provider that fails any batch containing ``poison``."""

    name = "flaky"

    def __init__(self, poison: str = "EXPLODE", dimensions: int = 64) -> None:
        super().__init__(dimensions=dimensions)
        self._poison = poison

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        if any(self._poison in t for t in texts):
            raise RuntimeError("backend rejected input")
        return await super()._embed_texts(texts, query=query)


class CancellingEmbeddingProvider(HashingEmbeddingProvider):
    """Hashing provider that sets ``cancel`` on its Nth batch call."""

    name = "cancelling"

    def __init__(self, cancel: asyncio.Event, on_call: int, dimensions: int = 64) -> None:
        super().__init__(dimensions=dimensions)
        self._cancel = cancel
        self._on_call = on_call

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        vectors = await super()._embed_texts(texts, query=query)
        if self.calls == self._on_call:
            self._cancel.set()
        return vectors


class StaticEmbeddingProvider(EmbeddingProvider):
    """Returns a preset vector per text, ``[1, 0, ...]`` for unknown text."""

    name = "static"

    def __init__(self, vectors: dict[str, list[float]], dimensions: int = 3) -> None:
        super().__init__("static-v1", dimensions, max_batch_size=16)
        self._vectors = vectors
        self.calls = 0

    async def _setup(self) -> None:
        return None

    async def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        self.calls += 1
        return [list(self._vectors.get(t, [1.0] + [0.0] * (self._dimensions - 1))) for t in texts]


# ── Fixtures ─────────────────────────────────────────────────────────────────


def write_note(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    root = tmp_path / "notes"
    root.mkdir()
    return root


@pytest.fixture
def hashing_provider():
    return HashingEmbeddingProvider(dimensions=64)
