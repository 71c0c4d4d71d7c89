"""
SQLite backing store for the cache (table cache_entries).
Values are stored as JSON text; rows that fail to decode are logged and skipped.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, List

from .backend import BackingStore, StoredEntry

logger = logging.getLogger(__name__)


class SqliteBackingStore(BackingStore):
    """BackingStore over an open sqlite3 connection (migrations already applied)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def load_all(self, prefix: str = "") -> List[StoredEntry]:
        try:
            cur = self._conn.execute(
                "SELECT key, value, written_at FROM cache_entries WHERE key LIKE ? ESCAPE '\\'",
                (_like_prefix(prefix),),
            )
            rows = cur.fetchall()
        except sqlite3.Error as exc:
            logger.warning("cache_entries unreadable, starting cold: %s", exc)
            return []

        entries: List[StoredEntry] = []
        for key, raw, written_at in rows:
            try:
                entries.append(StoredEntry(key=key, value=json.loads(raw), written_at=float(written_at)))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping corrupted cache entry %s: %s", key, exc)
        return entries

    def write(self, key: str, value: Any, written_at: float) -> None:
        self._conn.execute(
            """
            INSERT INTO cache_entries (key, value, written_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                written_at = excluded.written_at;
            """,
            (key, json.dumps(value, separators=(",", ":"), sort_keys=True), float(written_at)),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        self._conn.commit()


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"
