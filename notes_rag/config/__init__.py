"""Configuration for notes-rag."""

from notes_rag.config.settings import (
    AppConfig,
    ChunkingConfig,
    EmbeddingConfig,
    IndexingConfig,
    RetrievalConfig,
    StoreConfig,
)

__all__ = [
    "AppConfig",
    "ChunkingConfig",
    "EmbeddingConfig",
    "IndexingConfig",
    "RetrievalConfig",
    "StoreConfig",
]
