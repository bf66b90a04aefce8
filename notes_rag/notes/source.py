"""
Notes directory access.

``NoteSource`` lists and reads Markdown notes under one root.
``NoteMetadataCache`` keeps per-note metadata (title, frontmatter) for
callers that need it repeatedly. It is owned by whoever builds it and is
passed explicitly; entries are invalidated when a note is added, modified
(mtime or size change) or removed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from notes_rag.errors import NotesDirectoryError

LOG = logging.getLogger("notes.source")

NOTE_SUFFIX = ".md"


@dataclass(frozen=True)
class NoteFile:
    """A note as found on disk."""

    path: str  # relative to the notes root, POSIX separators
    abs_path: Path
    mtime_ns: int
    size: int


@dataclass
class NoteMetadata:
    path: str
    title: str
    frontmatter: dict[str, Any] = field(default_factory=dict)
    mtime_ns: int = 0
    size: int = 0
    chunk_count: int = 0


def note_title(path: str, frontmatter: dict[str, Any]) -> str:
    """Frontmatter ``title`` when present, otherwise the file stem."""
    title = frontmatter.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    return Path(path).stem


class NoteSource:
    """Lists ``*.md`` files recursively, skipping hidden directories."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def check(self) -> None:
        """Raise NotesDirectoryError unless the root is a readable directory."""
        if not self._root.is_dir():
            raise NotesDirectoryError(f"Notes directory does not exist: {self._root}")
        if not os.access(self._root, os.R_OK | os.X_OK):
            raise NotesDirectoryError(f"Notes directory is not readable: {self._root}")

    def list_notes(self) -> list[NoteFile]:
        self.check()
        notes: list[NoteFile] = []
        try:
            for dirpath, dirnames, filenames in os.walk(self._root):
                dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
                for name in filenames:
                    if name.startswith(".") or not name.endswith(NOTE_SUFFIX):
                        continue
                    abs_path = Path(dirpath) / name
                    try:
                        st = abs_path.stat()
                    except OSError as exc:
                        LOG.warning("Cannot stat %s: %s", abs_path, exc)
                        continue
                    rel = abs_path.relative_to(self._root).as_posix()
                    notes.append(NoteFile(rel, abs_path, st.st_mtime_ns, st.st_size))
        except OSError as exc:
            raise NotesDirectoryError(f"Cannot scan notes directory {self._root}: {exc}") from exc
        notes.sort(key=lambda n: n.path)
        return notes

    def resolve(self, path: str) -> NoteFile:
        """Stat a single note by its relative path. Raises FileNotFoundError."""
        abs_path = self._root / path
        st = abs_path.stat()
        return NoteFile(Path(path).as_posix(), abs_path, st.st_mtime_ns, st.st_size)

    async def read(self, note: NoteFile) -> str:
        return await asyncio.to_thread(note.abs_path.read_text, encoding="utf-8")


class NoteMetadataCache:
    """Explicit path → NoteMetadata cache keyed on (mtime_ns, size)."""

    def __init__(self) -> None:
        self._entries: dict[str, NoteMetadata] = {}

    def get(self, note: NoteFile) -> Optional[NoteMetadata]:
        meta = self._entries.get(note.path)
        if meta is None:
            return None
        if meta.mtime_ns != note.mtime_ns or meta.size != note.size:
            del self._entries[note.path]
            return None
        return meta

    def update(self, note: NoteFile, frontmatter: dict[str, Any], chunk_count: int = 0) -> NoteMetadata:
        meta = NoteMetadata(
            path=note.path,
            title=note_title(note.path, frontmatter),
            frontmatter=dict(frontmatter),
            mtime_ns=note.mtime_ns,
            size=note.size,
            chunk_count=chunk_count,
        )
        self._entries[note.path] = meta
        return meta

    def invalidate(self, path: str) -> None:
        self._entries.pop(path, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)
