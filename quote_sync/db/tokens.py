"""
Persistence of user-added tokens (symbol -> provider ref).

Only custom tokens are stored; the default set comes from config and is
always present. Writes are upserts, so adding the same token twice leaves
exactly one record.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict

from ..timeutils import now_utc_iso

logger = logging.getLogger(__name__)


class TokenStore:
    """Read/write tracked_tokens rows."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert(self, symbol: str, provider_ref: str) -> None:
        self._conn.execute(
            """
            INSERT INTO tracked_tokens (symbol, provider_ref, added_at)
            VALUES (?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                provider_ref = excluded.provider_ref;
            """,
            (symbol.upper(), provider_ref.lower(), now_utc_iso()),
        )
        self._conn.commit()

    def remove(self, symbol: str) -> None:
        self._conn.execute("DELETE FROM tracked_tokens WHERE symbol = ?", (symbol.upper(),))
        self._conn.commit()

    def load_all(self) -> Dict[str, str]:
        """symbol -> provider ref, in insertion order. Empty on a missing/corrupt table."""
        try:
            cur = self._conn.execute(
                "SELECT symbol, provider_ref FROM tracked_tokens ORDER BY added_at, symbol"
            )
            return {row[0].upper(): row[1] for row in cur.fetchall() if row[0] and row[1]}
        except sqlite3.Error as exc:
            logger.warning("tracked_tokens unreadable: %s", exc)
            return {}


class MemoryTokenStore:
    """Dict-backed TokenStore for tests and ephemeral engines."""

    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._rows: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def upsert(self, symbol: str, provider_ref: str) -> None:
        self.writes += 1
        self._rows[symbol.upper()] = provider_ref.lower()

    def remove(self, symbol: str) -> None:
        self._rows.pop(symbol.upper(), None)

    def load_all(self) -> Dict[str, str]:
        return dict(self._rows)
