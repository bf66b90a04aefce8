"""Notes directory access and the explicit note-metadata cache."""

from notes_rag.notes.source import NoteFile, NoteMetadata, NoteMetadataCache, NoteSource

__all__ = [
    "NoteFile",
    "NoteMetadata",
    "NoteMetadataCache",
    "NoteSource",
]
