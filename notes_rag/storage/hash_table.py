"""
SQLite-backed path → hash table.

Lives beside the vector store (``<notes>/.notes_rag/hashes.db``) and also
records the settings that built the index (hash mode, model id,
dimensions), so an incremental run can tell when a full reindex is
needed.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from notes_rag.errors import StoreUnavailableError

LOG = logging.getLogger("storage.hash_table")

_SCHEMA_SQL = """
-- Per-note fingerprints of the last successful index
CREATE TABLE IF NOT EXISTS file_hashes (
    file_path TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    last_updated TEXT NOT NULL
);

-- Settings the index was built with
CREATE TABLE IF NOT EXISTS index_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class IndexMeta:
    hash_mode: str
    model_id: str
    dimensions: int


class PathHashTable:
    """
    Persistent path → hash map.

    Safe to call from worker threads; one lock serializes access to the
    single connection.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"Cannot open hash table at {self._db_path}: {exc}") from exc

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("Hash table is closed")
        return self._conn

    # ── File hashes ───────────────────────────────────────────────────

    def load(self) -> dict[str, str]:
        with self._lock:
            try:
                cur = self._connection().execute("SELECT file_path, content_hash FROM file_hashes")
                return {row[0]: row[1] for row in cur.fetchall()}
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot read hash table: {exc}") from exc

    def update(self, hashes: dict[str, str], removed: Iterable[str] = ()) -> None:
        """Upsert ``hashes`` and drop ``removed`` in one transaction."""
        now = datetime.now(timezone.utc).isoformat()
        rows = [(path, h, now) for path, h in hashes.items()]
        gone = [(path,) for path in removed]
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    if rows:
                        conn.executemany(
                            "INSERT OR REPLACE INTO file_hashes (file_path, content_hash, last_updated) "
                            "VALUES (?, ?, ?)",
                            rows,
                        )
                    if gone:
                        conn.executemany("DELETE FROM file_hashes WHERE file_path = ?", gone)
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot write hash table: {exc}") from exc
        LOG.debug("Hash table updated: %d written, %d removed", len(rows), len(gone))

    def clear(self) -> None:
        """Drop every hash entry and the recorded index settings."""
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute("DELETE FROM file_hashes")
                    conn.execute("DELETE FROM index_meta")
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot clear hash table: {exc}") from exc

    def __len__(self) -> int:
        with self._lock:
            return self._connection().execute("SELECT COUNT(*) FROM file_hashes").fetchone()[0]

    # ── Index settings ────────────────────────────────────────────────

    def get_meta(self) -> Optional[IndexMeta]:
        with self._lock:
            try:
                rows = dict(self._connection().execute("SELECT key, value FROM index_meta").fetchall())
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot read index settings: {exc}") from exc
        if "hash_mode" not in rows:
            return None
        return IndexMeta(
            hash_mode=rows["hash_mode"],
            model_id=rows.get("model_id", ""),
            dimensions=int(rows.get("dimensions", "0")),
        )

    def set_meta(self, meta: IndexMeta) -> None:
        rows = [
            ("hash_mode", meta.hash_mode),
            ("model_id", meta.model_id),
            ("dimensions", str(meta.dimensions)),
        ]
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.executemany("INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", rows)
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot write index settings: {exc}") from exc

    # ── Lifecycle ─────────────────────────────────────────────────────

    def close(self) -> None:
        """Release database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
