"""
notes-rag: semantic search over a directory of Markdown notes.

Index phase: notes → chunker → embedding provider → vector store, gated by
per-note fingerprints. Query phase: query → embedding provider → vector
search → ranked passages.
"""

from notes_rag.config.settings import AppConfig
from notes_rag.rag.service import RAGService, SearchOptions

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "RAGService",
    "SearchOptions",
    "__version__",
]
