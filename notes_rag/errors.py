"""
Exception hierarchy for the notes RAG pipeline.

Provider errors carry a short ``code`` so callers can branch on the kind
of failure without importing every subclass. Indexing downgrades these to
``PerFileIndexError`` entries in the run result; retrieval lets them
propagate unchanged.
"""

from __future__ import annotations


class RAGError(Exception):
    """Base class for every error raised by notes_rag."""


# ── Embedding provider ───────────────────────────────────────────────────────


class EmbeddingProviderError(RAGError):
    """Base class for embedding provider failures."""

    code = "provider_error"

    def __init__(self, message: str, provider_name: str = "") -> None:
        super().__init__(message)
        self.provider_name = provider_name


class NotInitializedError(EmbeddingProviderError):
    code = "not_initialized"


class InitializationFailedError(EmbeddingProviderError):
    code = "initialization_failed"


class ModelNotFoundError(InitializationFailedError):
    code = "model_not_found"


class EmbeddingFailedError(EmbeddingProviderError):
    code = "embedding_failed"


class BatchTooLargeError(EmbeddingProviderError):
    code = "batch_too_large"

    def __init__(self, size: int, limit: int, provider_name: str = "") -> None:
        super().__init__(f"Batch of {size} texts exceeds the limit of {limit}", provider_name)
        self.size = size
        self.limit = limit


class DisposedError(EmbeddingProviderError):
    code = "disposed"


# ── Store / retrieval ────────────────────────────────────────────────────────


class DimensionMismatchError(RAGError):
    """A vector's length differs from the collection's configured dimensions."""

    def __init__(self, expected: int, actual: int, context: str = "") -> None:
        detail = f" ({context})" if context else ""
        super().__init__(f"Expected vectors of dimension {expected}, got {actual}{detail}")
        self.expected = expected
        self.actual = actual


class StoreUnavailableError(RAGError):
    """The vector store backend could not be reached or failed an operation."""


# ── Indexing ─────────────────────────────────────────────────────────────────


class PerFileIndexError(RAGError):
    """Wraps any failure scoped to a single note during an indexing run."""

    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause


class NotesDirectoryError(RAGError):
    """The notes directory is missing or unreadable."""


class IndexConfigurationError(RAGError):
    """The stored index was built with settings incompatible with the current run."""
