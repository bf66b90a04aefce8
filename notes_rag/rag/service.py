"""
RAGService: the one entry point outside callers use.

Wires the notes source, chunker, embedding provider, vector store and
hash table together from an ``AppConfig`` (or from ready-made
components), then exposes ``search``, ``index_all`` and
``index_incremental``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from notes_rag.config.settings import AppConfig
from notes_rag.errors import NotInitializedError
from notes_rag.notes.source import NoteMetadataCache, NoteSource
from notes_rag.rag.chunker import ChunkerConfig, DocumentChunker
from notes_rag.rag.embedding_cache import EmbeddingCache
from notes_rag.rag.embedding_provider import EmbeddingProvider, ProgressCallback, build_embedding_provider
from notes_rag.rag.indexer import Indexer, IndexRunResult
from notes_rag.rag.indexer import ProgressCallback as IndexProgressCallback
from notes_rag.rag.retriever import RetrievalOutcome, Retriever
from notes_rag.rag.vector_store import SearchFilter, VectorStore, build_vector_store
from notes_rag.storage.hash_table import PathHashTable

LOG = logging.getLogger("rag.service")


@dataclass
class SearchOptions:
    """Per-query overrides; ``None`` means the configured default."""

    k: Optional[int] = None
    filter: Optional[SearchFilter] = None
    min_score: Optional[float] = None
    cancel: Optional[asyncio.Event] = None


class RAGService:
    """
    Façade over indexing and retrieval.

    Usage::

        service = RAGService(AppConfig.from_env())
        await service.initialize()
        await service.index_incremental()
        passages = await service.search("trip packing list")
        await service.close()
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or AppConfig.from_env()
        self._provider: Optional[EmbeddingProvider] = None
        self._store: Optional[VectorStore] = None
        self._hash_table: Optional[PathHashTable] = None
        self._source: Optional[NoteSource] = None
        self._chunker: Optional[DocumentChunker] = None
        self._cache: Optional[EmbeddingCache] = None
        self._indexer: Optional[Indexer] = None
        self._retriever: Optional[Retriever] = None
        self._initialized = False

    @classmethod
    def from_components(
        cls,
        *,
        provider: EmbeddingProvider,
        store: VectorStore,
        hash_table: PathHashTable,
        note_source: NoteSource,
        chunker: Optional[DocumentChunker] = None,
        cache: Optional[EmbeddingCache] = None,
        config: Optional[AppConfig] = None,
    ) -> "RAGService":
        service = cls(config or AppConfig(notes_dir=str(note_source.root)))
        service._provider = provider
        service._store = store
        service._hash_table = hash_table
        service._source = note_source
        service._chunker = chunker
        service._cache = cache
        return service

    @property
    def config(self) -> AppConfig:
        return self._config

    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """Build missing components and initialize the embedding provider."""
        if self._initialized:
            return
        cfg = self._config

        if self._provider is None:
            self._provider = build_embedding_provider(cfg.embedding)
        await self._provider.initialize(on_progress)

        if self._source is None:
            self._source = NoteSource(cfg.notes_path)
        if self._chunker is None:
            self._chunker = DocumentChunker(
                ChunkerConfig(chunk_size=cfg.chunking.chunk_size, chunk_overlap=cfg.chunking.chunk_overlap)
            )
        if self._hash_table is None:
            # The index directory lives inside the notes directory; never create the latter.
            self._source.check()
            self._hash_table = PathHashTable(cfg.hash_db_path)
        if self._store is None:
            self._store = self._build_store()
        if self._cache is None and cfg.retrieval.query_cache_size > 0:
            self._cache = EmbeddingCache(cfg.retrieval.query_cache_size)

        self._indexer = Indexer(
            note_source=self._source,
            chunker=self._chunker,
            provider=self._provider,
            store=self._store,
            hash_table=self._hash_table,
            hash_mode=cfg.indexing.hash_mode,
            concurrency=cfg.indexing.concurrency,
            metadata_cache=NoteMetadataCache(),
        )
        self._retriever = Retriever(
            self._provider,
            self._store,
            default_k=cfg.retrieval.top_k,
            min_score=cfg.retrieval.min_score,
            cache=self._cache,
        )
        self._initialized = True
        LOG.info("RAG service ready (notes: %s)", self._source.root)

    def _build_store(self) -> VectorStore:
        assert self._provider is not None
        store_cfg = self._config.store
        if store_cfg.backend == "chroma":
            return build_vector_store(
                "chroma",
                self._provider.dimensions,
                collection_name=store_cfg.collection_name,
                persist_directory=None if store_cfg.chroma_host else str(self._config.chroma_path),
                chroma_host=store_cfg.chroma_host or None,
                chroma_port=store_cfg.chroma_port,
            )
        return build_vector_store(store_cfg.backend, self._provider.dimensions)

    def _require(self) -> tuple[Indexer, Retriever]:
        if not self._initialized or self._indexer is None or self._retriever is None:
            raise NotInitializedError("RAG service is not initialized. Call initialize() first.")
        return self._indexer, self._retriever

    # ── Public surface ────────────────────────────────────────────────

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> RetrievalOutcome:
        _, retriever = self._require()
        opts = options or SearchOptions()
        return await retriever.retrieve(
            query,
            k=opts.k,
            filter=opts.filter,
            min_score=opts.min_score,
            cancel=opts.cancel,
        )

    async def index_all(
        self,
        cancel: Optional[asyncio.Event] = None,
        on_progress: Optional[IndexProgressCallback] = None,
    ) -> IndexRunResult:
        indexer, _ = self._require()
        return await indexer.index_all(cancel=cancel, on_progress=on_progress)

    async def index_incremental(
        self,
        cancel: Optional[asyncio.Event] = None,
        on_progress: Optional[IndexProgressCallback] = None,
    ) -> IndexRunResult:
        indexer, _ = self._require()
        return await indexer.index_incremental(cancel=cancel, on_progress=on_progress)

    async def close(self) -> None:
        """Dispose the provider and release the store and hash table."""
        if self._provider is not None:
            await self._provider.dispose()
        if self._store is not None:
            await self._store.close()
        if self._hash_table is not None:
            self._hash_table.close()
        self._initialized = False
