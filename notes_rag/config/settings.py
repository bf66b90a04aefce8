"""Configuration management for notes-rag.

Loads settings from environment variables with sensible defaults.
API keys are read as opaque strings and never validated here.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

INDEX_DIR_NAME = ".notes_rag"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return default if raw is None or not raw.strip() else int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return default if raw is None or not raw.strip() else float(raw)


@dataclass
class EmbeddingConfig:
    """Embedding provider selection."""
    provider: str = "local"  # "local", "openai", "voyage", "hashing"
    model: str = ""  # empty = provider default
    dimensions: int = 0  # 0 = provider default
    max_batch_size: int = 0  # 0 = provider default
    api_key: str = ""
    base_url: str = ""
    timeout_s: float = 60.0
    max_retries: int = 3
    max_concurrent_requests: int = 4

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        provider = os.getenv("NOTES_RAG_EMBEDDING_PROVIDER", "local")
        if provider == "openai":
            api_key = os.getenv("OPENAI_API_KEY", "")
        elif provider == "voyage":
            api_key = os.getenv("VOYAGE_API_KEY", "")
        else:
            api_key = ""
        return cls(
            provider=provider,
            model=os.getenv("NOTES_RAG_EMBEDDING_MODEL", ""),
            dimensions=_env_int("NOTES_RAG_EMBEDDING_DIMENSIONS", 0),
            max_batch_size=_env_int("NOTES_RAG_EMBEDDING_BATCH_SIZE", 0),
            api_key=api_key,
            base_url=os.getenv("NOTES_RAG_EMBEDDING_BASE_URL", ""),
            timeout_s=_env_float("NOTES_RAG_EMBEDDING_TIMEOUT", 60.0),
            max_retries=_env_int("NOTES_RAG_EMBEDDING_RETRIES", 3),
            max_concurrent_requests=_env_int("NOTES_RAG_EMBEDDING_CONCURRENCY", 4),
        )


@dataclass
class ChunkingConfig:
    """Chunk window in characters."""
    chunk_size: int = 1000
    chunk_overlap: int = 200

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        return cls(
            chunk_size=_env_int("NOTES_RAG_CHUNK_SIZE", 1000),
            chunk_overlap=_env_int("NOTES_RAG_CHUNK_OVERLAP", 200),
        )


@dataclass
class StoreConfig:
    """Vector store backend."""
    backend: str = "chroma"  # "chroma", "memory"
    persist_dir: str = ""  # empty = <notes_dir>/.notes_rag/chroma
    chroma_host: str = ""  # empty = embedded mode
    chroma_port: int = 8000
    collection_name: str = "notes"

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            backend=os.getenv("NOTES_RAG_VECTOR_STORE", "chroma"),
            persist_dir=os.getenv("NOTES_RAG_CHROMA_DIR", ""),
            chroma_host=os.getenv("CHROMA_HOST", ""),
            chroma_port=_env_int("CHROMA_PORT", 8000),
            collection_name=os.getenv("NOTES_RAG_COLLECTION", "notes"),
        )


@dataclass
class IndexingConfig:
    """Indexer behaviour."""
    hash_mode: str = "content"  # "content", "mtime"
    concurrency: int = 4

    @classmethod
    def from_env(cls) -> "IndexingConfig":
        return cls(
            hash_mode=os.getenv("NOTES_RAG_HASH_MODE", "content"),
            concurrency=_env_int("NOTES_RAG_INDEX_CONCURRENCY", 4),
        )


@dataclass
class RetrievalConfig:
    """Retriever defaults."""
    top_k: int = 10
    min_score: float = 0.3
    query_cache_size: int = 100

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            top_k=_env_int("NOTES_RAG_TOP_K", 10),
            min_score=_env_float("NOTES_RAG_MIN_SCORE", 0.3),
            query_cache_size=_env_int("NOTES_RAG_QUERY_CACHE_SIZE", 100),
        )


@dataclass
class AppConfig:
    """Top-level application configuration."""
    notes_dir: str = "."
    index_dir: str = ""  # empty = <notes_dir>/.notes_rag
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level!r}. Supported: {', '.join(LOG_LEVELS)}")

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            notes_dir=os.getenv("NOTES_RAG_NOTES_DIR", "."),
            index_dir=os.getenv("NOTES_RAG_INDEX_DIR", ""),
            embedding=EmbeddingConfig.from_env(),
            chunking=ChunkingConfig.from_env(),
            store=StoreConfig.from_env(),
            indexing=IndexingConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            log_level=os.getenv("NOTES_RAG_LOG_LEVEL", "INFO"),
        )

    @property
    def notes_path(self) -> Path:
        return Path(self.notes_dir).expanduser().resolve()

    @property
    def index_path(self) -> Path:
        if self.index_dir:
            return Path(self.index_dir).expanduser().resolve()
        return self.notes_path / INDEX_DIR_NAME

    @property
    def chroma_path(self) -> Path:
        if self.store.persist_dir:
            return Path(self.store.persist_dir).expanduser().resolve()
        return self.index_path / "chroma"

    @property
    def hash_db_path(self) -> Path:
        return self.index_path / "hashes.db"
