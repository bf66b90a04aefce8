"""
Indexer: notes directory → chunks → embeddings → vector store.

Two run modes:
- ``index_all()``: clear the store and hash table, index every note, write
  a fresh hash table.
- ``index_incremental()``: fingerprint every note, re-index only added or
  modified ones, delete chunks of vanished ones, skip the rest without
  any embedding call.

Per-note work runs concurrently under a semaphore. A failure while
reading, chunking, embedding or storing one note is recorded as a
``PerFileIndexError`` in the run result and leaves that note's hash entry
untouched, so the next incremental run retries it. The hash table is
written once, after every per-note unit of the run has settled.

Hash mode authority: the mode recorded with the index wins. A run
configured with a different mode is refused (``IndexConfigurationError``)
unless the hash table is empty, in which case the configured mode is
adopted. Changing the embedding model requires ``index_all()``.

Cancellation is cooperative via an ``asyncio.Event``. Once it is set no
new note is started and in-flight notes stop at their next suspension
point. Chunks already upserted stay; only completed notes get hash
entries; the result comes back with ``cancelled=True``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from notes_rag.errors import (
    DimensionMismatchError,
    IndexConfigurationError,
    NotInitializedError,
    PerFileIndexError,
)
from notes_rag.notes.source import NoteFile, NoteMetadataCache, NoteSource, note_title
from notes_rag.rag.chunker import Chunk, DocumentChunker
from notes_rag.rag.embedding_provider import EmbeddingProvider
from notes_rag.rag.vector_store import DocumentMetadata, VectorDocument, VectorStore, path_matches_prefix
from notes_rag.storage.hash_table import IndexMeta, PathHashTable
from notes_rag.storage.hashing import (
    check_hash_mode,
    compute_hashes,
    detect_changes,
    hash_bytes,
    mtime_fingerprint,
)

LOG = logging.getLogger("rag.indexer")

MAX_TITLE_CONTEXT_LENGTH = 80
MAX_HEADER_CONTEXT_LENGTH = 80
MAX_HEADER_CONTEXT_LEVEL = 3
MAX_HEADER_CONTEXT_CHUNKS = 2

# Section names too generic to help retrieval.
HEADER_STOPLIST = frozenset(
    {
        "overview", "summary", "notes", "note", "todo", "todos", "appendix",
        "references", "reference", "intro", "introduction", "background",
        "conclusion", "misc", "miscellaneous",
        "개요", "서론", "소개", "배경", "요약", "정리", "결론", "참고", "참고문헌",
        "부록", "메모", "노트", "목차", "할 일", "할일",
        "概要", "はじめに", "まとめ", "結論", "参考", "参考文献", "付録", "メモ",
        "概述", "简介", "引言", "背景", "总结", "结论", "附录", "备注", "笔记", "待办",
    }
)

_WS_RE = re.compile(r"\s+")


@dataclass
class IndexProgress:
    """Progress event for one indexing run."""

    total: int
    processed: int
    current_path: str
    status: str  # "indexing", "complete", "cancelled"


ProgressCallback = Callable[[IndexProgress], None]


@dataclass
class IndexRunResult:
    """Outcome of an indexing run. Never persisted."""

    processed: int = 0
    skipped: int = 0
    failed: list[tuple[str, PerFileIndexError]] = field(default_factory=list)
    elapsed_ms: int = 0
    removed: int = 0
    skipped_paths: list[str] = field(default_factory=list)
    chunks: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": [{"path": p, "error": str(e.cause)} for p, e in self.failed],
            "elapsed_ms": self.elapsed_ms,
            "removed": self.removed,
            "skipped_paths": self.skipped_paths,
            "chunks": self.chunks,
            "cancelled": self.cancelled,
        }


@dataclass
class IndexValidation:
    """Consistency report between the vector store and the hash table."""

    total_documents: int = 0
    indexed_notes: int = 0
    orphaned_paths: list[str] = field(default_factory=list)  # chunks without a hash entry
    missing_paths: list[str] = field(default_factory=list)  # hash entry without chunks
    dimension_mismatches: list[str] = field(default_factory=list)  # document ids

    @property
    def is_valid(self) -> bool:
        return not (self.orphaned_paths or self.missing_paths or self.dimension_mismatches)

    def to_dict(self) -> dict:
        return {
            "total_documents": self.total_documents,
            "indexed_notes": self.indexed_notes,
            "orphaned_paths": self.orphaned_paths,
            "missing_paths": self.missing_paths,
            "dimension_mismatches": self.dimension_mismatches,
            "is_valid": self.is_valid,
        }


class _UnitCancelled(Exception):
    pass


@dataclass
class _UnitOutcome:
    fingerprint: str
    chunks: int


# ── Embedding text ───────────────────────────────────────────────────────────


def _normalize(value: str) -> str:
    return _WS_RE.sub(" ", value.lower()).strip()


def _truncate(value: str, max_length: int) -> str:
    collapsed = _WS_RE.sub(" ", value).strip()
    if len(collapsed) <= max_length:
        return collapsed
    if max_length <= 3:
        return collapsed[:max_length]
    return collapsed[: max_length - 3] + "..."


def _wants_header_context(chunk: Chunk, title: str, section_index: int) -> bool:
    if not chunk.heading_path or section_index >= MAX_HEADER_CONTEXT_CHUNKS:
        return False
    header = chunk.heading_path[-1].strip()
    if len(header) < 2 or chunk.content.lstrip().startswith("#"):
        return False
    normalized = _normalize(header)
    return bool(normalized) and normalized not in HEADER_STOPLIST and normalized != _normalize(title)


def build_embedding_texts(chunks: list[Chunk], title: str) -> list[str]:
    """
    Chunk content with note title (and, early in a section, its heading)
    prepended. Only the embedding sees these prefixes.
    """
    texts: list[str] = []
    title_line = f"# {_truncate(title, MAX_TITLE_CONTEXT_LENGTH)}\n\n"
    previous_path: Optional[tuple[str, ...]] = None
    section_index = 0
    for chunk in chunks:
        section_index = section_index + 1 if chunk.heading_path == previous_path else 0
        previous_path = chunk.heading_path

        text = chunk.content
        if _wants_header_context(chunk, title, section_index):
            level = min(max(len(chunk.heading_path), 2), MAX_HEADER_CONTEXT_LEVEL)
            header = _truncate(chunk.heading_path[-1], MAX_HEADER_CONTEXT_LENGTH)
            text = f"{'#' * level} {header}\n\n{text}"
        texts.append(title_line + text)
    return texts


# ── Indexer ──────────────────────────────────────────────────────────────────


class Indexer:
    """
    Builds and maintains the vector index for one notes directory.

    The provider and store are shared with the retriever; the indexer
    takes no lock around them.
    """

    def __init__(
        self,
        note_source: NoteSource,
        chunker: DocumentChunker,
        provider: EmbeddingProvider,
        store: VectorStore,
        hash_table: PathHashTable,
        hash_mode: str = "content",
        concurrency: int = 4,
        metadata_cache: Optional[NoteMetadataCache] = None,
    ) -> None:
        self._source = note_source
        self._chunker = chunker
        self._provider = provider
        self._store = store
        self._hash_table = hash_table
        self._hash_mode = check_hash_mode(hash_mode)
        self._concurrency = max(1, concurrency)
        self._metadata_cache = metadata_cache if metadata_cache is not None else NoteMetadataCache()

    @property
    def metadata_cache(self) -> NoteMetadataCache:
        return self._metadata_cache

    # ── Public operations ─────────────────────────────────────────────

    async def index_all(
        self,
        cancel: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexRunResult:
        """Rebuild the whole index from scratch."""
        started = time.monotonic()
        self._check_ready()
        notes = await asyncio.to_thread(self._source.list_notes)

        await self._store.clear()
        await asyncio.to_thread(self._hash_table.clear)
        await asyncio.to_thread(self._hash_table.set_meta, self._current_meta(self._hash_mode))
        self._metadata_cache.clear()
        LOG.info("Full index of %d notes (%s)", len(notes), self._provider.model_id)

        result = IndexRunResult()
        fingerprints = await self._run_units(notes, self._hash_mode, result, cancel, on_progress, replace=False)
        await asyncio.to_thread(self._hash_table.update, fingerprints)

        return self._finish(result, started, "Full index")

    async def index_incremental(
        self,
        cancel: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexRunResult:
        """Re-index only notes whose fingerprint changed since the last run."""
        started = time.monotonic()
        self._check_ready()
        notes = await asyncio.to_thread(self._source.list_notes)
        stored = await asyncio.to_thread(self._hash_table.load)
        mode = await self._authoritative_mode(bool(stored))

        current = await compute_hashes(notes, mode)
        changes = detect_changes([n.path for n in notes], current, stored)

        result = IndexRunResult(skipped=len(changes.unchanged), skipped_paths=list(changes.unchanged))

        removed_ok: list[str] = []
        for path in changes.removed:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                break
            try:
                await self._store.delete(path_prefix=path)
            except Exception as exc:
                self._record_failure(result, path, exc)
                continue
            self._metadata_cache.invalidate(path)
            removed_ok.append(path)
        result.removed = len(removed_ok)

        todo = set(changes.added) | set(changes.modified)
        pending = [n for n in notes if n.path in todo]
        fingerprints: dict[str, str] = {}
        if not result.cancelled:
            fingerprints = await self._run_units(pending, mode, result, cancel, on_progress, replace=True)

        await asyncio.to_thread(self._hash_table.update, fingerprints, removed_ok)
        await asyncio.to_thread(self._hash_table.set_meta, self._current_meta(mode))

        return self._finish(result, started, "Incremental index")

    async def index_note(self, path: str) -> IndexRunResult:
        """Re-index one note by its path relative to the notes directory."""
        started = time.monotonic()
        self._check_ready()
        self._source.check()
        stored_count = await asyncio.to_thread(len, self._hash_table)
        mode = await self._authoritative_mode(stored_count > 0)

        result = IndexRunResult()
        try:
            note = await asyncio.to_thread(self._source.resolve, path)
        except OSError as exc:
            self._record_failure(result, path, exc)
            return self._finish(result, started, "Note index")

        fingerprints = await self._run_units([note], mode, result, None, None, replace=True)
        await asyncio.to_thread(self._hash_table.update, fingerprints)
        await asyncio.to_thread(self._hash_table.set_meta, self._current_meta(mode))
        return self._finish(result, started, "Note index")

    async def remove_note(self, path: str) -> int:
        """Delete a note's chunks and hash entry. Returns chunks removed."""
        removed = await self._store.delete(path_prefix=path)
        stored = await asyncio.to_thread(self._hash_table.load)
        gone = [p for p in stored if path_matches_prefix(p, path)]
        await asyncio.to_thread(self._hash_table.update, {}, gone)
        for p in gone:
            self._metadata_cache.invalidate(p)
        self._metadata_cache.invalidate(path)
        LOG.info("Removed %s: %d chunks", path, removed)
        return removed

    async def validate_index(self) -> IndexValidation:
        """Cross-check the store against the hash table."""
        docs = await self._store.all_documents()
        stored = await asyncio.to_thread(self._hash_table.load)

        paths_in_store = {d.metadata.source_path for d in docs}
        report = IndexValidation(total_documents=len(docs), indexed_notes=len(stored))
        report.orphaned_paths = sorted(paths_in_store - set(stored))
        report.dimension_mismatches = sorted(d.id for d in docs if len(d.vector) != self._provider.dimensions)

        # Notes without chunks are legitimate when they chunk to nothing.
        for path in sorted(set(stored) - paths_in_store):
            if await self._expects_chunks(path):
                report.missing_paths.append(path)

        if not report.is_valid:
            LOG.warning(
                "Index validation: %d orphaned, %d missing, %d dimension mismatches",
                len(report.orphaned_paths),
                len(report.missing_paths),
                len(report.dimension_mismatches),
            )
        return report

    # ── Internals ─────────────────────────────────────────────────────

    def _check_ready(self) -> None:
        if not self._provider.is_ready():
            raise NotInitializedError(
                "Embedding provider is not initialized. Call initialize() first.", self._provider.name
            )
        if self._provider.dimensions != self._store.dimensions:
            raise DimensionMismatchError(self._store.dimensions, self._provider.dimensions, "provider vs store")

    def _current_meta(self, mode: str) -> IndexMeta:
        return IndexMeta(hash_mode=mode, model_id=self._provider.model_id, dimensions=self._provider.dimensions)

    async def _authoritative_mode(self, has_entries: bool) -> str:
        meta = await asyncio.to_thread(self._hash_table.get_meta)
        if meta is None:
            return self._hash_mode
        if meta.model_id != self._provider.model_id or meta.dimensions != self._provider.dimensions:
            raise DimensionMismatchError(
                meta.dimensions,
                self._provider.dimensions,
                f"index built with {meta.model_id!r}, provider is {self._provider.model_id!r}; run a full reindex",
            )
        if meta.hash_mode != self._hash_mode and has_entries:
            raise IndexConfigurationError(
                f"Index was built with hash mode {meta.hash_mode!r} but {self._hash_mode!r} is configured; "
                "run a full reindex to switch modes"
            )
        return self._hash_mode

    async def _run_units(
        self,
        notes: list[NoteFile],
        mode: str,
        result: IndexRunResult,
        cancel: Optional[asyncio.Event],
        on_progress: Optional[ProgressCallback],
        replace: bool,
    ) -> dict[str, str]:
        semaphore = asyncio.Semaphore(self._concurrency)
        fingerprints: dict[str, str] = {}
        total = len(notes)
        done = 0

        async def run(note: NoteFile) -> None:
            nonlocal done
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    return
                _emit(on_progress, IndexProgress(total, done, note.path, "indexing"))
                try:
                    outcome = await self._index_one(note, mode, cancel, replace)
                except _UnitCancelled:
                    result.cancelled = True
                    return
                except Exception as exc:
                    self._record_failure(result, note.path, exc)
                else:
                    fingerprints[note.path] = outcome.fingerprint
                    result.processed += 1
                    result.chunks += outcome.chunks
                done += 1

        await asyncio.gather(*(run(n) for n in notes))

        result.failed.sort(key=lambda pair: pair[0])
        status = "cancelled" if result.cancelled else "complete"
        _emit(on_progress, IndexProgress(total, done, "", status))
        return fingerprints

    async def _index_one(
        self,
        note: NoteFile,
        mode: str,
        cancel: Optional[asyncio.Event],
        replace: bool,
    ) -> _UnitOutcome:
        self._metadata_cache.invalidate(note.path)
        data = await asyncio.to_thread(note.abs_path.read_bytes)
        _check_cancel(cancel)
        fingerprint = hash_bytes(data) if mode == "content" else mtime_fingerprint(note)
        text = data.decode("utf-8")

        chunks = self._chunker.chunk(text, note.path)
        frontmatter = chunks[0].frontmatter if chunks else self._chunker.split_frontmatter(text)[0]

        vectors: list[list[float]] = []
        if chunks:
            texts = build_embedding_texts(chunks, note_title(note.path, frontmatter))
            batch_size = self._provider.max_batch_size
            for i in range(0, len(texts), batch_size):
                vectors.extend(await self._provider.embed_batch(texts[i : i + batch_size]))
                _check_cancel(cancel)

        # Delete and upsert run as one unit: no cancel point between them.
        if replace:
            await self._store.delete(path_prefix=note.path)

        documents = [
            VectorDocument(
                id=chunk.id,
                vector=vector,
                text=chunk.content,
                metadata=DocumentMetadata(
                    source_path=chunk.source_path,
                    heading_path=chunk.heading_path,
                    content_hash=chunk.content_hash,
                    ordinal=chunk.ordinal,
                ),
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        if documents:
            await self._store.upsert(documents)
        self._metadata_cache.update(note, frontmatter, chunk_count=len(documents))

        LOG.debug("Indexed %s: %d chunks", note.path, len(documents))
        return _UnitOutcome(fingerprint=fingerprint, chunks=len(documents))

    async def _expects_chunks(self, path: str) -> bool:
        try:
            note = await asyncio.to_thread(self._source.resolve, path)
        except OSError:
            return True
        cached = self._metadata_cache.get(note)
        if cached is not None:
            return cached.chunk_count > 0
        try:
            text = await self._source.read(note)
        except (OSError, UnicodeDecodeError):
            return True
        return bool(self._chunker.chunk(text, path))

    def _record_failure(self, result: IndexRunResult, path: str, exc: Exception) -> None:
        error = exc if isinstance(exc, PerFileIndexError) else PerFileIndexError(path, exc)
        result.failed.append((path, error))
        LOG.warning("Failed to index %s: %s", path, exc)

    def _finish(self, result: IndexRunResult, started: float, label: str) -> IndexRunResult:
        result.elapsed_ms = int((time.monotonic() - started) * 1000)
        LOG.info(
            "%s%s: %d processed, %d skipped, %d failed, %d removed, %d chunks in %dms",
            label,
            " (cancelled)" if result.cancelled else "",
            result.processed,
            result.skipped,
            len(result.failed),
            result.removed,
            result.chunks,
            result.elapsed_ms,
        )
        return result


def _check_cancel(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise _UnitCancelled()


def _emit(callback: Optional[ProgressCallback], event: IndexProgress) -> None:
    if callback is None:
        return
    try:
        callback(event)
    except Exception as exc:
        LOG.debug("Progress callback raised: %s", exc)
