"""
Retriever: query text → ranked note passages.

Embed query → vector top-k → drop results under ``min_score`` → sort by
score, then note path, then chunk ordinal (so ties always come back in
the same order).

Provider and store errors propagate unchanged; there is no per-item
fallback at query time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, overload

from notes_rag.errors import DimensionMismatchError
from notes_rag.rag.embedding_cache import EmbeddingCache
from notes_rag.rag.embedding_provider import EmbeddingProvider
from notes_rag.rag.vector_store import SearchFilter, VectorStore

LOG = logging.getLogger("rag.retriever")


@dataclass(frozen=True)
class Passage:
    """A single ranked chunk of a note."""

    source_path: str
    heading_path: tuple[str, ...]
    content: str
    score: float
    chunk_id: str
    ordinal: int

    def to_dict(self) -> dict:
        return {
            "source_path": self.source_path,
            "heading_path": list(self.heading_path),
            "content": self.content,
            "score": self.score,
            "chunk_id": self.chunk_id,
            "ordinal": self.ordinal,
        }


class RetrievalOutcome(Sequence[Passage]):
    """Ranked passages, plus whether the query was cancelled."""

    def __init__(self, passages: list[Passage], cancelled: bool = False) -> None:
        self._passages = passages
        self.cancelled = cancelled

    @property
    def passages(self) -> list[Passage]:
        return list(self._passages)

    @overload
    def __getitem__(self, index: int) -> Passage: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Passage]: ...

    def __getitem__(self, index):
        return self._passages[index]

    def __len__(self) -> int:
        return len(self._passages)

    def __iter__(self) -> Iterator[Passage]:
        return iter(self._passages)

    def __repr__(self) -> str:
        return f"RetrievalOutcome({len(self._passages)} passages, cancelled={self.cancelled})"


class Retriever:
    """
    Similarity retrieval over the notes index.

    Usage::

        retriever = Retriever(provider, store, default_k=5)
        for passage in await retriever.retrieve("weekly review checklist"):
            print(passage.source_path, passage.score)
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: VectorStore,
        default_k: int = 10,
        min_score: float = 0.3,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._default_k = default_k
        self._min_score = min_score
        self._cache = cache

    @property
    def cache(self) -> Optional[EmbeddingCache]:
        return self._cache

    async def retrieve(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[SearchFilter] = None,
        min_score: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RetrievalOutcome:
        if not isinstance(query, str) or not query.strip():
            raise ValueError("query must be a non-empty string")
        if self._provider.dimensions != self._store.dimensions:
            raise DimensionMismatchError(self._store.dimensions, self._provider.dimensions, "provider vs store")

        top_k = self._default_k if k is None else k
        threshold = self._min_score if min_score is None else min_score

        if _cancelled(cancel):
            return RetrievalOutcome([], cancelled=True)

        vector = await self._embed_query(query)
        if len(vector) != self._store.dimensions:
            raise DimensionMismatchError(self._store.dimensions, len(vector), "query vector")
        if _cancelled(cancel):
            return RetrievalOutcome([], cancelled=True)

        results = await self._store.search(vector, top_k, filter)
        if _cancelled(cancel):
            return RetrievalOutcome([], cancelled=True)

        passages = [
            Passage(
                source_path=r.metadata.source_path,
                heading_path=r.metadata.heading_path,
                content=r.text,
                score=r.score,
                chunk_id=r.id,
                ordinal=r.metadata.ordinal,
            )
            for r in results
            if r.score >= threshold
        ]
        passages.sort(key=lambda p: (-p.score, p.source_path, p.ordinal))

        LOG.debug("Retrieved %d/%d passages (min_score=%.2f)", len(passages), len(results), threshold)
        return RetrievalOutcome(passages)

    async def _embed_query(self, query: str) -> list[float]:
        model_id = self._provider.model_id
        if self._cache is not None:
            cached = self._cache.get(model_id, query)
            if cached is not None:
                return cached
        vector = await self._provider.embed(query)
        if self._cache is not None:
            self._cache.put(model_id, query, vector)
        return vector


def _cancelled(cancel: Optional[asyncio.Event]) -> bool:
    return cancel is not None and cancel.is_set()
