"""
Tests for the Indexer: full and incremental runs, failure isolation,
hash-mode authority, cancellation, single-note operations and validation.
"""

from __future__ import annotations

import asyncio
import os

import pytest

from notes_rag.errors import (
    DimensionMismatchError,
    EmbeddingFailedError,
    IndexConfigurationError,
    NotesDirectoryError,
    NotInitializedError,
    PerFileIndexError,
)
from notes_rag.notes.source import NoteSource
from notes_rag.rag.chunker import Chunk, ChunkerConfig, DocumentChunker
from notes_rag.rag.embedding_provider import HashingEmbeddingProvider
from notes_rag.rag.indexer import IndexProgress, Indexer, build_embedding_texts
from notes_rag.rag.vector_store import DocumentMetadata, InMemoryVectorStore, VectorDocument
from notes_rag.storage.hash_table import PathHashTable

from conftest import CancellingEmbeddingProvider, FlakyEmbeddingProvider, write_note


@pytest.fixture
def make_indexer(notes_dir, tmp_path):
    tables: list[PathHashTable] = []

    def _make(provider, store=None, table=None, chunker=None, **kwargs):
        store = store if store is not None else InMemoryVectorStore(provider.dimensions)
        if table is None:
            table = PathHashTable(tmp_path / "index" / "hashes.db")
            tables.append(table)
        indexer = Indexer(
            NoteSource(notes_dir),
            chunker or DocumentChunker(),
            provider,
            store,
            table,
            **kwargs,
        )
        return indexer, store, table

    yield _make
    for t in tables:
        t.close()


def _three_notes(notes_dir):
    write_note(notes_dir, "a.md", "# Alpha\nFirst note about apples.")
    write_note(notes_dir, "b.md", "# Beta\nSecond note about bananas.")
    write_note(notes_dir, "sub/c.md", "# Gamma\nThird note about cherries.")


class TestIndexAll:
    @pytest.mark.asyncio
    async def test_indexes_every_note(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)

        result = await indexer.index_all()

        assert result.processed == 3
        assert result.chunks == 3
        assert result.failed == []
        assert not result.cancelled
        assert await store.count() == 3
        assert sorted(table.load()) == ["a.md", "b.md", "sub/c.md"]
        meta = table.get_meta()
        assert (meta.hash_mode, meta.model_id, meta.dimensions) == ("content", "hashing-v1", 64)

    @pytest.mark.asyncio
    async def test_stored_text_is_unprefixed(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "a.md", "# Title\nHello world.")
        await hashing_provider.initialize()
        indexer, store, _ = make_indexer(hashing_provider)
        await indexer.index_all()

        (doc,) = await store.all_documents()
        assert doc.text == "# Title\nHello world."
        assert doc.metadata.source_path == "a.md"
        assert doc.metadata.heading_path == ("Title",)
        assert len(doc.vector) == store.dimensions

    @pytest.mark.asyncio
    async def test_clears_previous_contents(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "a.md", "apples")
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await store.upsert(
            [VectorDocument("stale", [1.0] + [0.0] * 63, "old", DocumentMetadata(source_path="old.md"))]
        )
        table.update({"old.md": "x"})

        await indexer.index_all()

        assert {d.metadata.source_path for d in await store.all_documents()} == {"a.md"}
        assert list(table.load()) == ["a.md"]

    @pytest.mark.asyncio
    async def test_batches_respect_provider_limit(self, notes_dir, make_indexer):
        write_note(notes_dir, "long.md", "\n\n".join(f"Paragraph {i} with some words." for i in range(40)))
        provider = HashingEmbeddingProvider(dimensions=64, max_batch_size=3)
        await provider.initialize()
        indexer, store, _ = make_indexer(provider, chunker=DocumentChunker(ChunkerConfig(100, 20)))

        result = await indexer.index_all()

        assert result.failed == []
        assert result.chunks == await store.count()
        assert provider.calls == -(-result.chunks // 3)

    @pytest.mark.asyncio
    async def test_frontmatter_only_note_is_processed_without_chunks(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "empty.md", "---\ntitle: Empty\n---\n")
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)

        result = await indexer.index_all()

        assert result.processed == 1
        assert result.chunks == 0
        assert await store.count() == 0
        assert "empty.md" in table.load()
        assert indexer.metadata_cache.get(NoteSource(notes_dir).resolve("empty.md")).title == "Empty"


class TestIncremental:
    @pytest.mark.asyncio
    async def test_second_run_makes_no_embedding_calls(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, _, _ = make_indexer(hashing_provider)

        first = await indexer.index_incremental()
        assert first.processed == 3
        calls = hashing_provider.calls

        second = await indexer.index_incremental()
        assert hashing_provider.calls == calls
        assert second.processed == 0
        assert second.skipped == 3
        assert second.skipped_paths == ["a.md", "b.md", "sub/c.md"]

    @pytest.mark.asyncio
    async def test_modified_note_is_reindexed(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await indexer.index_all()
        before = table.load()["b.md"]

        write_note(notes_dir, "b.md", "# Beta\nBananas are now plantains.")
        result = await indexer.index_incremental()

        assert result.processed == 1
        assert result.skipped == 2
        assert table.load()["b.md"] != before
        texts = [d.text for d in await store.all_documents() if d.metadata.source_path == "b.md"]
        assert texts == ["# Beta\nBananas are now plantains."]

    @pytest.mark.asyncio
    async def test_shrinking_note_drops_old_chunks(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "n.md", "\n\n".join(f"Paragraph {i} of a long note." for i in range(30)))
        await hashing_provider.initialize()
        indexer, store, _ = make_indexer(hashing_provider, chunker=DocumentChunker(ChunkerConfig(100, 20)))
        await indexer.index_incremental()
        assert await store.count(path_prefix="n.md") > 3

        write_note(notes_dir, "n.md", "Now short.")
        await indexer.index_incremental()
        assert await store.count(path_prefix="n.md") == 1

    @pytest.mark.asyncio
    async def test_deleted_note_is_removed(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await indexer.index_all()

        (notes_dir / "a.md").unlink()
        result = await indexer.index_incremental()

        assert result.removed == 1
        assert await store.count(path_prefix="a.md") == 0
        assert "a.md" not in table.load()
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_mtime_mode(self, notes_dir, hashing_provider, make_indexer):
        path = write_note(notes_dir, "a.md", "apples")
        await hashing_provider.initialize()
        indexer, _, table = make_indexer(hashing_provider, hash_mode="mtime")
        await indexer.index_incremental()
        st = path.stat()
        assert table.load()["a.md"] == f"{st.st_mtime_ns}:{st.st_size}"

        later = st.st_mtime_ns + 5_000_000_000
        os.utime(path, ns=(later, later))
        result = await indexer.index_incremental()
        assert result.processed == 1
        assert table.load()["a.md"] == f"{later}:{st.st_size}"


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_one_failing_note(self, notes_dir, make_indexer):
        _three_notes(notes_dir)
        write_note(notes_dir, "bad.md", "This note will EXPLODE the backend.")
        provider = FlakyEmbeddingProvider()
        await provider.initialize()
        indexer, store, table = make_indexer(provider)

        result = await indexer.index_all()

        assert result.processed == 3
        assert [p for p, _ in result.failed] == ["bad.md"]
        error = result.failed[0][1]
        assert isinstance(error, PerFileIndexError)
        assert isinstance(error.cause, EmbeddingFailedError)
        assert {d.metadata.source_path for d in await store.all_documents()} == {"a.md", "b.md", "sub/c.md"}
        assert "bad.md" not in table.load()

    @pytest.mark.asyncio
    async def test_failed_note_is_retried(self, notes_dir, make_indexer):
        write_note(notes_dir, "bad.md", "EXPLODE")
        provider = FlakyEmbeddingProvider()
        await provider.initialize()
        indexer, store, table = make_indexer(provider)

        first = await indexer.index_incremental()
        assert len(first.failed) == 1

        write_note(notes_dir, "bad.md", "fixed now")
        second = await indexer.index_incremental()
        assert second.processed == 1
        assert second.failed == []
        assert "bad.md" in table.load()

    @pytest.mark.asyncio
    async def test_invalid_utf8(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "ok.md", "fine")
        (notes_dir / "binary.md").write_bytes(b"\xff\xfe\x00broken")
        await hashing_provider.initialize()
        indexer, _, table = make_indexer(hashing_provider)

        result = await indexer.index_all()

        assert result.processed == 1
        assert [p for p, _ in result.failed] == ["binary.md"]
        assert isinstance(result.failed[0][1].cause, UnicodeDecodeError)
        assert list(table.load()) == ["ok.md"]
        assert result.to_dict()["failed"][0]["path"] == "binary.md"


class TestSetupErrors:
    @pytest.mark.asyncio
    async def test_provider_not_initialized(self, notes_dir, make_indexer):
        indexer, _, _ = make_indexer(HashingEmbeddingProvider(dimensions=64))
        with pytest.raises(NotInitializedError):
            await indexer.index_all()
        with pytest.raises(NotInitializedError):
            await indexer.index_incremental()

    @pytest.mark.asyncio
    async def test_missing_notes_directory(self, tmp_path, hashing_provider):
        await hashing_provider.initialize()
        table = PathHashTable(tmp_path / "hashes.db")
        indexer = Indexer(
            NoteSource(tmp_path / "does-not-exist"),
            DocumentChunker(),
            hashing_provider,
            InMemoryVectorStore(64),
            table,
        )
        with pytest.raises(NotesDirectoryError):
            await indexer.index_incremental()
        table.close()

    @pytest.mark.asyncio
    async def test_provider_store_dimension_mismatch(self, notes_dir, hashing_provider, make_indexer):
        await hashing_provider.initialize()
        indexer, _, _ = make_indexer(hashing_provider, store=InMemoryVectorStore(32))
        with pytest.raises(DimensionMismatchError):
            await indexer.index_all()


class TestHashModeAuthority:
    @pytest.mark.asyncio
    async def test_mode_change_is_refused(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider, hash_mode="content")
        await indexer.index_all()

        mtime_indexer, _, _ = make_indexer(hashing_provider, store=store, table=table, hash_mode="mtime")
        with pytest.raises(IndexConfigurationError, match="hash mode"):
            await mtime_indexer.index_incremental()
        assert table.get_meta().hash_mode == "content"

    @pytest.mark.asyncio
    async def test_empty_table_adopts_configured_mode(self, notes_dir, hashing_provider, make_indexer):
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider, hash_mode="content")
        await indexer.index_all()  # no notes: meta recorded, table empty
        assert table.get_meta().hash_mode == "content"

        write_note(notes_dir, "a.md", "apples")
        mtime_indexer, _, _ = make_indexer(hashing_provider, store=store, table=table, hash_mode="mtime")
        result = await mtime_indexer.index_incremental()

        assert result.processed == 1
        assert table.get_meta().hash_mode == "mtime"

    @pytest.mark.asyncio
    async def test_model_change_requires_full_reindex(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await indexer.index_all()

        other = HashingEmbeddingProvider(dimensions=64, model_id="hashing-v2")
        await other.initialize()
        other_indexer, _, _ = make_indexer(other, store=store, table=table)
        with pytest.raises(DimensionMismatchError, match="full reindex"):
            await other_indexer.index_incremental()

        result = await other_indexer.index_all()
        assert result.processed == 3
        assert table.get_meta().model_id == "hashing-v2"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, notes_dir, make_indexer):
        _three_notes(notes_dir)
        cancel = asyncio.Event()
        provider = CancellingEmbeddingProvider(cancel, on_call=2)
        await provider.initialize()
        indexer, store, table = make_indexer(provider, concurrency=1)

        result = await indexer.index_all(cancel=cancel)

        assert result.cancelled is True
        assert result.processed == 1
        assert list(table.load()) == ["a.md"]
        assert {d.metadata.source_path for d in await store.all_documents()} == {"a.md"}

    @pytest.mark.asyncio
    async def test_cancel_during_replace_keeps_new_chunks(self, notes_dir, hashing_provider, make_indexer):
        cancel = asyncio.Event()

        class CancelOnDeleteStore(InMemoryVectorStore):
            async def delete(self, ids=None, path_prefix=None):
                removed = await super().delete(ids=ids, path_prefix=path_prefix)
                cancel.set()
                return removed

        write_note(notes_dir, "a.md", "apples")
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider, store=CancelOnDeleteStore(64))
        await indexer.index_all()
        assert await store.count(path_prefix="a.md") == 1

        write_note(notes_dir, "a.md", "apples and pears")
        result = await indexer.index_incremental(cancel=cancel)

        assert cancel.is_set()
        assert result.processed == 1
        texts = [d.text for d in await store.all_documents() if d.metadata.source_path == "a.md"]
        assert texts == ["apples and pears"]
        assert "a.md" in table.load()

    @pytest.mark.asyncio
    async def test_already_cancelled_incremental(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        cancel = asyncio.Event()
        cancel.set()

        result = await indexer.index_incremental(cancel=cancel)

        assert result.cancelled is True
        assert result.processed == 0
        assert hashing_provider.calls == 0
        assert table.load() == {}
        assert await store.count() == 0


class TestProgress:
    @pytest.mark.asyncio
    async def test_events(self, notes_dir, hashing_provider, make_indexer):
        write_note(notes_dir, "a.md", "apples")
        write_note(notes_dir, "b.md", "bananas")
        await hashing_provider.initialize()
        indexer, _, _ = make_indexer(hashing_provider, concurrency=1)
        events: list[IndexProgress] = []

        await indexer.index_all(on_progress=events.append)

        assert [(e.processed, e.current_path, e.status) for e in events] == [
            (0, "a.md", "indexing"),
            (1, "b.md", "indexing"),
            (2, "", "complete"),
        ]
        assert all(e.total == 2 for e in events)


class TestSingleNote:
    @pytest.mark.asyncio
    async def test_index_note(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await indexer.index_all()

        write_note(notes_dir, "new.md", "A fresh idea.")
        result = await indexer.index_note("new.md")
        assert result.processed == 1
        assert "new.md" in table.load()
        assert await store.count(path_prefix="new.md") == 1

        missing = await indexer.index_note("ghost.md")
        assert [p for p, _ in missing.failed] == ["ghost.md"]

    @pytest.mark.asyncio
    async def test_remove_note(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider)
        await indexer.index_all()

        assert await indexer.remove_note("sub/c.md") == 1
        assert "sub/c.md" not in table.load()
        assert await store.count(path_prefix="sub") == 0
        assert await indexer.remove_note("sub/c.md") == 0


class TestValidateIndex:
    @pytest.mark.asyncio
    async def test_consistent_index(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        write_note(notes_dir, "empty.md", "---\ntitle: nothing\n---\n")
        await hashing_provider.initialize()
        indexer, _, _ = make_indexer(hashing_provider)
        await indexer.index_all()

        report = await indexer.validate_index()
        assert report.is_valid
        assert report.total_documents == 3
        assert report.indexed_notes == 4

    @pytest.mark.asyncio
    async def test_orphaned_and_missing(self, notes_dir, hashing_provider, make_indexer):
        _three_notes(notes_dir)
        await hashing_provider.initialize()
        indexer, store, _ = make_indexer(hashing_provider)
        await indexer.index_all()

        await store.upsert([VectorDocument("ghost-0", [1.0] + [0.0] * 63, "boo", DocumentMetadata("ghost.md"))])
        await store.delete(path_prefix="b.md")

        report = await indexer.validate_index()
        assert not report.is_valid
        assert report.orphaned_paths == ["ghost.md"]
        assert report.missing_paths == ["b.md"]
        assert report.to_dict()["is_valid"] is False

    @pytest.mark.asyncio
    async def test_uses_cached_chunk_counts(self, notes_dir, hashing_provider, make_indexer):
        class CountingChunker(DocumentChunker):
            calls = 0

            def chunk(self, text, source_path):
                CountingChunker.calls += 1
                return super().chunk(text, source_path)

        _three_notes(notes_dir)
        write_note(notes_dir, "empty.md", "---\ntitle: nothing\n---\n")
        await hashing_provider.initialize()
        indexer, store, table = make_indexer(hashing_provider, chunker=CountingChunker())
        await indexer.index_all()
        await store.delete(path_prefix="b.md")
        after_index = CountingChunker.calls

        report = await indexer.validate_index()
        assert report.missing_paths == ["b.md"]
        assert CountingChunker.calls == after_index

        fresh, _, _ = make_indexer(hashing_provider, store=store, table=table, chunker=CountingChunker())
        report = await fresh.validate_index()
        assert report.missing_paths == ["b.md"]
        assert CountingChunker.calls == after_index + 2


def _chunk(content: str, heading_path: tuple[str, ...], ordinal: int = 0) -> Chunk:
    return Chunk(
        id=f"n-{ordinal:04d}",
        source_path="n.md",
        content=content,
        heading_path=heading_path,
        start_offset=0,
        end_offset=len(content),
        ordinal=ordinal,
    )


class TestEmbeddingTexts:
    def test_title_and_section_heading(self):
        chunks = [_chunk(f"text {i}", ("Setup",), i) for i in range(3)]
        assert build_embedding_texts(chunks, "Guide") == [
            "# Guide\n\n## Setup\n\ntext 0",
            "# Guide\n\n## Setup\n\ntext 1",
            "# Guide\n\ntext 2",
        ]

    def test_generic_and_duplicate_headings_skipped(self):
        assert build_embedding_texts([_chunk("body", ("Summary",))], "Guide") == ["# Guide\n\nbody"]
        assert build_embedding_texts([_chunk("body", ("요약",))], "Guide") == ["# Guide\n\nbody"]
        assert build_embedding_texts([_chunk("body", ("guide",))], "Guide") == ["# Guide\n\nbody"]

    def test_chunk_starting_with_heading(self):
        texts = build_embedding_texts([_chunk("# Title\nHello world.", ("Title",))], "A")
        assert texts == ["# A\n\n# Title\nHello world."]

    def test_deep_heading_level_capped(self):
        (text,) = build_embedding_texts([_chunk("body", ("A", "B", "C", "Deep"))], "T")
        assert text == "# T\n\n### Deep\n\nbody"

    def test_long_title_truncated(self):
        (text,) = build_embedding_texts([_chunk("body", ())], "x" * 100)
        assert text == "# " + "x" * 77 + "...\n\nbody"
