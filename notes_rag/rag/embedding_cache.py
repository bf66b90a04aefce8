"""
Bounded LRU cache of query embeddings.

Owned explicitly by whoever constructs it (normally the retriever). Keys
include the provider's model id, but callers should still ``clear()`` the
cache when they swap providers.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EmbeddingCache:
    """Least-recently-used map of (model_id, text) → vector."""

    def __init__(self, max_size: int = 100) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._entries: OrderedDict[tuple[str, str], list[float]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, model_id: str, text: str) -> Optional[list[float]]:
        key = (model_id, text)
        vector = self._entries.get(key)
        if vector is None:
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return vector

    def put(self, model_id: str, text: str, vector: list[float]) -> None:
        key = (model_id, text)
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), max_size=self._max_size, hits=self._hits, misses=self._misses)
