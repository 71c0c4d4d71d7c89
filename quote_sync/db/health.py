"""
Provider health persistence in SQLite.

Stores the failover coordinator's per-provider status after each dispatch
so outer tools (the CLI `status` command) can show provider health without
running an engine.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..providers.base import ProviderStatus
from ..timeutils import epoch_to_iso, now_utc_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthRecord:
    """One provider_health row as read back for display."""

    provider_name: str
    available: bool
    cooldown_until: Optional[str]
    consecutive_errors: int
    last_error: Optional[str]
    last_ok_at: Optional[str]
    updated_at: Optional[str]


class ProviderHealthStore:
    """Read/write provider health records from SQLite."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert(self, status: ProviderStatus, now: float) -> None:
        """Insert or update a provider's health record."""
        self._conn.execute(
            """
            INSERT INTO provider_health
                (provider_name, available, cooldown_until, consecutive_errors,
                 last_error, last_ok_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider_name) DO UPDATE SET
                available = excluded.available,
                cooldown_until = excluded.cooldown_until,
                consecutive_errors = excluded.consecutive_errors,
                last_error = excluded.last_error,
                last_ok_at = excluded.last_ok_at,
                updated_at = excluded.updated_at;
            """,
            (
                status.provider_name,
                1 if status.available(now) else 0,
                epoch_to_iso(status.cooldown_until),
                status.consecutive_errors,
                status.last_error,
                epoch_to_iso(status.last_ok_at),
                now_utc_iso(),
            ),
        )
        self._conn.commit()

    def upsert_all(self, statuses: Dict[str, ProviderStatus], now: float) -> None:
        """Batch upsert all provider health records."""
        for s in statuses.values():
            self.upsert(s, now)

    def load_all(self) -> List[HealthRecord]:
        """Load all provider health records."""
        try:
            cur = self._conn.execute(
                "SELECT provider_name, available, cooldown_until, consecutive_errors, "
                "last_error, last_ok_at, updated_at FROM provider_health ORDER BY provider_name"
            )
            return [
                HealthRecord(
                    provider_name=row[0],
                    available=bool(row[1]),
                    cooldown_until=row[2],
                    consecutive_errors=row[3] or 0,
                    last_error=row[4],
                    last_ok_at=row[5],
                    updated_at=row[6],
                )
                for row in cur.fetchall()
            ]
        except sqlite3.OperationalError:
            return []
