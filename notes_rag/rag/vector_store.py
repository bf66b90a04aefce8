"""
Abstract vector store interface with Chroma and in-memory backends.

Chroma operates in three modes:
- Embedded PersistentClient: no server needed, local persistence
  (default ``<notes>/.notes_rag/chroma``)
- HttpClient: connects to a Chroma server when a host is configured
- Ephemeral client: in-memory, for tests

Every collection has a fixed ``dimensions``; vectors of any other length
are rejected with ``DimensionMismatchError`` before anything is written.
Scores are cosine similarity (Chroma: ``1 - cosine distance``).

Follows the abstract base + factory function pattern.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

import numpy as np

from notes_rag.errors import DimensionMismatchError, StoreUnavailableError

LOG = logging.getLogger("rag.vector_store")

_CHROMA_WRITE_BATCH = 1000


@dataclass(frozen=True)
class DocumentMetadata:
    """Per-chunk metadata kept next to each vector."""

    source_path: str
    heading_path: tuple[str, ...] = ()
    content_hash: str = ""
    ordinal: int = 0

    def to_flat(self) -> Dict[str, Any]:
        """Scalar-only form (Chroma metadata values must be primitives)."""
        return {
            "source_path": self.source_path,
            "heading_path": json.dumps(list(self.heading_path), ensure_ascii=False),
            "content_hash": self.content_hash,
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_flat(cls, data: Dict[str, Any]) -> "DocumentMetadata":
        raw_path = data.get("heading_path") or "[]"
        try:
            heading_path = tuple(json.loads(raw_path))
        except (TypeError, ValueError):
            heading_path = ()
        return cls(
            source_path=str(data.get("source_path", "")),
            heading_path=heading_path,
            content_hash=str(data.get("content_hash", "")),
            ordinal=int(data.get("ordinal", 0)),
        )


@dataclass
class VectorDocument:
    """A chunk stored in the vector store."""

    id: str
    vector: List[float]
    text: str
    metadata: DocumentMetadata


@dataclass
class VectorSearchResult:
    """A single search result from the vector store."""

    id: str
    text: str
    score: float
    metadata: DocumentMetadata
    vector: Optional[List[float]] = None


def path_matches_prefix(path: str, prefix: str) -> bool:
    """True when ``path`` is ``prefix`` itself or lies under directory ``prefix/``."""
    prefix = prefix.rstrip("/")
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class SearchFilter:
    """Restricts search candidates by note path."""

    path_prefix: Optional[str] = None
    source_paths: Optional[FrozenSet[str]] = field(default=None)

    def __post_init__(self) -> None:
        if self.source_paths is not None and not isinstance(self.source_paths, frozenset):
            object.__setattr__(self, "source_paths", frozenset(self.source_paths))

    def matches(self, source_path: str) -> bool:
        if self.path_prefix is not None and not path_matches_prefix(source_path, self.path_prefix):
            return False
        if self.source_paths is not None and source_path not in self.source_paths:
            return False
        return True


class VectorStore(ABC):
    """
    Abstract interface for vector storage and similarity search.

    Implementations persist chunk vectors and support nearest-neighbor
    queries ranked by cosine similarity.
    """

    def __init__(self, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _check_vector(self, vector: Sequence[float], context: str) -> None:
        if len(vector) != self._dimensions:
            raise DimensionMismatchError(self._dimensions, len(vector), context)

    @abstractmethod
    async def upsert(self, documents: List[VectorDocument]) -> None:
        """Insert or wholesale-replace documents by id."""

    @abstractmethod
    async def delete(self, ids: Optional[List[str]] = None, path_prefix: Optional[str] = None) -> int:
        """Delete by id and/or note path prefix. Returns the number removed."""

    @abstractmethod
    async def search(
        self,
        query_vector: List[float],
        k: int = 10,
        filter: Optional[SearchFilter] = None,
    ) -> List[VectorSearchResult]:
        """Return up to ``k`` results, best first."""

    @abstractmethod
    async def count(self, path_prefix: Optional[str] = None) -> int:
        """Number of stored documents, optionally under a path prefix."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every document."""

    @abstractmethod
    async def all_documents(self) -> List[VectorDocument]:
        """Every stored document, vectors included."""

    async def close(self) -> None:
        """Release resources. Override if needed."""
        pass


# ── In-memory backend ────────────────────────────────────────────────────────


class InMemoryVectorStore(VectorStore):
    """Dict-backed store with brute-force numpy cosine search."""

    def __init__(self, dimensions: int) -> None:
        super().__init__(dimensions)
        self._docs: Dict[str, VectorDocument] = {}

    async def upsert(self, documents: List[VectorDocument]) -> None:
        for doc in documents:
            self._check_vector(doc.vector, f"document {doc.id}")
        for doc in documents:
            self._docs[doc.id] = VectorDocument(doc.id, list(doc.vector), doc.text, doc.metadata)

    async def delete(self, ids: Optional[List[str]] = None, path_prefix: Optional[str] = None) -> int:
        doomed = set()
        if ids:
            doomed.update(i for i in ids if i in self._docs)
        if path_prefix is not None:
            doomed.update(
                doc_id
                for doc_id, doc in self._docs.items()
                if path_matches_prefix(doc.metadata.source_path, path_prefix)
            )
        for doc_id in doomed:
            del self._docs[doc_id]
        return len(doomed)

    async def search(
        self,
        query_vector: List[float],
        k: int = 10,
        filter: Optional[SearchFilter] = None,
    ) -> List[VectorSearchResult]:
        self._check_vector(query_vector, "query")
        if k <= 0:
            return []
        candidates = [d for d in self._docs.values() if filter is None or filter.matches(d.metadata.source_path)]
        if not candidates:
            return []

        matrix = np.asarray([d.vector for d in candidates], dtype=np.float64)
        query = np.asarray(query_vector, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        ranked = sorted(zip(candidates, scores.tolist()), key=lambda pair: (-pair[1], pair[0].id))
        return [
            VectorSearchResult(id=d.id, text=d.text, score=float(s), metadata=d.metadata, vector=list(d.vector))
            for d, s in ranked[:k]
        ]

    async def count(self, path_prefix: Optional[str] = None) -> int:
        if path_prefix is None:
            return len(self._docs)
        return sum(1 for d in self._docs.values() if path_matches_prefix(d.metadata.source_path, path_prefix))

    async def clear(self) -> None:
        self._docs.clear()

    async def all_documents(self) -> List[VectorDocument]:
        return [VectorDocument(d.id, list(d.vector), d.text, d.metadata) for d in self._docs.values()]


# ── Chroma backend ───────────────────────────────────────────────────────────


class ChromaVectorStore(VectorStore):
    """
    Chroma-based vector store.

    Blocking chromadb calls run in a worker thread. Library errors are
    re-raised as StoreUnavailableError.
    """

    def __init__(
        self,
        dimensions: int,
        collection_name: str = "notes",
        persist_directory: Optional[str] = None,
        chroma_host: Optional[str] = None,
        chroma_port: int = 8000,
    ) -> None:
        super().__init__(dimensions)
        import chromadb

        self._collection_name = collection_name
        try:
            if chroma_host:
                self._client = chromadb.HttpClient(host=chroma_host, port=chroma_port)
                LOG.info("Chroma: connected to %s:%d", chroma_host, chroma_port)
            elif persist_directory:
                Path(persist_directory).mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=persist_directory)
                LOG.info("Chroma: persistent at %s", persist_directory)
            else:
                self._client = chromadb.EphemeralClient()
                LOG.info("Chroma: ephemeral (in-memory)")
            self._collection = self._open_collection()
        except Exception as exc:
            raise StoreUnavailableError(f"Cannot open Chroma collection {collection_name!r}: {exc}") from exc

    def _open_collection(self) -> Any:
        return self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    async def _run(self, what: str, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (DimensionMismatchError, StoreUnavailableError):
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Chroma {what} failed: {exc}") from exc

    # ── Sync helpers (worker thread) ──────────────────────────────────

    def _upsert_sync(self, documents: List[VectorDocument]) -> None:
        for i in range(0, len(documents), _CHROMA_WRITE_BATCH):
            batch = documents[i : i + _CHROMA_WRITE_BATCH]
            self._collection.upsert(
                ids=[d.id for d in batch],
                embeddings=[list(d.vector) for d in batch],
                documents=[d.text for d in batch],
                metadatas=[d.metadata.to_flat() for d in batch],
            )

    def _ids_under_prefix(self, path_prefix: str) -> List[str]:
        got = self._collection.get(include=["metadatas"])
        return [
            doc_id
            for doc_id, meta in zip(got["ids"], got["metadatas"] or [])
            if path_matches_prefix(str((meta or {}).get("source_path", "")), path_prefix)
        ]

    def _paths_matching(self, search_filter: SearchFilter) -> List[str]:
        got = self._collection.get(include=["metadatas"])
        paths = {str((meta or {}).get("source_path", "")) for meta in (got["metadatas"] or [])}
        return sorted(p for p in paths if search_filter.matches(p))

    def _delete_sync(self, ids: Optional[List[str]], path_prefix: Optional[str]) -> int:
        doomed: set[str] = set()
        if ids:
            existing = self._collection.get(ids=list(ids), include=[])
            doomed.update(existing["ids"])
        if path_prefix is not None:
            doomed.update(self._ids_under_prefix(path_prefix))
        if doomed:
            ordered = sorted(doomed)
            for i in range(0, len(ordered), _CHROMA_WRITE_BATCH):
                self._collection.delete(ids=ordered[i : i + _CHROMA_WRITE_BATCH])
        return len(doomed)

    def _search_sync(self, query_vector: List[float], k: int, search_filter: Optional[SearchFilter]) -> List[VectorSearchResult]:
        total = self._collection.count()
        if total == 0:
            return []

        kwargs: Dict[str, Any] = {
            "query_embeddings": [list(query_vector)],
            "n_results": min(k, total),
            "include": ["documents", "metadatas", "distances", "embeddings"],
        }
        if search_filter is not None:
            paths = self._paths_matching(search_filter)
            if not paths:
                return []
            kwargs["where"] = {"source_path": {"$in": paths}}

        results = self._collection.query(**kwargs)

        out: List[VectorSearchResult] = []
        ids = results.get("ids") or [[]]
        distances = results.get("distances")
        documents = results.get("documents")
        metadatas = results.get("metadatas")
        embeddings = results.get("embeddings")
        for i, doc_id in enumerate(ids[0]):
            distance = distances[0][i] if distances is not None else 1.0
            vector = None
            if embeddings is not None and embeddings[0] is not None:
                vector = [float(x) for x in embeddings[0][i]]
            out.append(
                VectorSearchResult(
                    id=doc_id,
                    text=documents[0][i] if documents is not None else "",
                    score=1.0 - float(distance),  # cosine distance → similarity
                    metadata=DocumentMetadata.from_flat((metadatas[0][i] if metadatas is not None else None) or {}),
                    vector=vector,
                )
            )
        out.sort(key=lambda r: (-r.score, r.id))
        return out

    def _all_sync(self) -> List[VectorDocument]:
        got = self._collection.get(include=["embeddings", "documents", "metadatas"])
        embeddings = got.get("embeddings")
        documents = got.get("documents")
        metadatas = got.get("metadatas")
        docs: List[VectorDocument] = []
        for i, doc_id in enumerate(got["ids"]):
            docs.append(
                VectorDocument(
                    id=doc_id,
                    vector=[float(x) for x in embeddings[i]] if embeddings is not None else [],
                    text=documents[i] if documents is not None else "",
                    metadata=DocumentMetadata.from_flat((metadatas[i] if metadatas is not None else None) or {}),
                )
            )
        return docs

    def _clear_sync(self) -> None:
        self._client.delete_collection(self._collection_name)
        self._collection = self._open_collection()

    # ── Async API ─────────────────────────────────────────────────────

    async def upsert(self, documents: List[VectorDocument]) -> None:
        if not documents:
            return
        for doc in documents:
            self._check_vector(doc.vector, f"document {doc.id}")
        await self._run("upsert", self._upsert_sync, documents)

    async def delete(self, ids: Optional[List[str]] = None, path_prefix: Optional[str] = None) -> int:
        if not ids and path_prefix is None:
            return 0
        return await self._run("delete", self._delete_sync, ids, path_prefix)

    async def search(
        self,
        query_vector: List[float],
        k: int = 10,
        filter: Optional[SearchFilter] = None,
    ) -> List[VectorSearchResult]:
        self._check_vector(query_vector, "query")
        if k <= 0:
            return []
        return await self._run("query", self._search_sync, query_vector, k, filter)

    async def count(self, path_prefix: Optional[str] = None) -> int:
        if path_prefix is None:
            return await self._run("count", self._collection.count)
        ids = await self._run("get", self._ids_under_prefix, path_prefix)
        return len(ids)

    async def clear(self) -> None:
        await self._run("clear", self._clear_sync)

    async def all_documents(self) -> List[VectorDocument]:
        return await self._run("get", self._all_sync)


def build_vector_store(
    backend: str = "chroma",
    dimensions: int = 384,
    **kwargs: Any,
) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "chroma" or "memory"
        dimensions: Vector length every document must have
        **kwargs: Backend-specific configuration

    Returns:
        VectorStore instance

    Raises:
        ValueError: Unknown backend
    """
    if backend == "chroma":
        return ChromaVectorStore(dimensions, **kwargs)
    elif backend == "memory":
        return InMemoryVectorStore(dimensions)
    else:
        raise ValueError(f"Unknown vector store backend: {backend!r}. Supported: 'chroma', 'memory'")
