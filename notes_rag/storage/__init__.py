"""
Persistent bookkeeping for incremental indexing.

Provides:
- hashing: per-note fingerprints (content or mtime mode) and change detection
- PathHashTable: SQLite path → hash table plus recorded index settings
"""

from notes_rag.storage.hash_table import IndexMeta, PathHashTable
from notes_rag.storage.hashing import ChangeSet, compute_hashes, detect_changes

__all__ = [
    "ChangeSet",
    "IndexMeta",
    "PathHashTable",
    "compute_hashes",
    "detect_changes",
]
