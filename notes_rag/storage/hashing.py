"""
Per-note fingerprints for incremental change detection.

Two modes:
- ``content``: SHA-256 of the file bytes. Robust, costs one read per note.
- ``mtime``: ``"<mtime_ns>:<size>"``. No read, but touching a file marks
  it changed.

The indexer records which mode built the index and refuses to mix them.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field

from notes_rag.notes.source import NoteFile

LOG = logging.getLogger("storage.hashing")

HASH_MODES = ("content", "mtime")


def check_hash_mode(mode: str) -> str:
    if mode not in HASH_MODES:
        raise ValueError(f"Unknown hash mode: {mode!r}. Supported: 'content', 'mtime'")
    return mode


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def mtime_fingerprint(note: NoteFile) -> str:
    return f"{note.mtime_ns}:{note.size}"


async def compute_hashes(notes: list[NoteFile], mode: str) -> dict[str, str]:
    """
    Fingerprint every note, skipping (and logging) unreadable ones.

    Unreadable notes are left out of the result so the caller treats them
    as changed and reports the read failure through the normal per-file
    path.
    """
    check_hash_mode(mode)
    if mode == "mtime":
        return {n.path: mtime_fingerprint(n) for n in notes}

    def _hash_all() -> dict[str, str]:
        hashes: dict[str, str] = {}
        for note in notes:
            try:
                hashes[note.path] = hash_bytes(note.abs_path.read_bytes())
            except OSError as exc:
                LOG.warning("Cannot hash %s: %s", note.path, exc)
        return hashes

    return await asyncio.to_thread(_hash_all)


@dataclass
class ChangeSet:
    """Notes that changed since the last recorded run."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)


def detect_changes(
    current_paths: list[str],
    current_hashes: dict[str, str],
    stored_hashes: dict[str, str],
) -> ChangeSet:
    """
    Compare current fingerprints with stored ones.

    ``current_paths`` lists every note on disk; a path missing from
    ``current_hashes`` (unreadable) counts as modified, or added if it was
    never stored.
    """
    current = set(current_paths)
    stored = set(stored_hashes)

    added = sorted(current - stored)
    removed = sorted(stored - current)
    modified: list[str] = []
    unchanged: list[str] = []
    for path in sorted(current & stored):
        if current_hashes.get(path) == stored_hashes[path]:
            unchanged.append(path)
        else:
            modified.append(path)

    LOG.info(
        "Change detection: %d added, %d modified, %d removed, %d unchanged",
        len(added),
        len(modified),
        len(removed),
        len(unchanged),
    )
    return ChangeSet(added=added, modified=modified, removed=removed, unchanged=unchanged)
