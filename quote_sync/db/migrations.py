"""
Idempotent database migrations.

All schema changes use CREATE TABLE IF NOT EXISTS and guarded ALTER TABLE
so they can be re-run safely at any time.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)


def _safe_add_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> None:
    """Add a column if it doesn't already exist."""
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type};")
        conn.commit()
        logger.debug("Added column %s.%s", table, column)
    except sqlite3.OperationalError:
        pass


def run_migrations(conn: sqlite3.Connection) -> None:
    """
    Apply all schema migrations idempotently.

    Safe to call on every startup: only creates/alters what is missing.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cache_entries (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            written_at REAL NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tracked_tokens (
            symbol TEXT PRIMARY KEY,
            provider_ref TEXT NOT NULL,
            added_at TEXT NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS provider_health (
            provider_name TEXT PRIMARY KEY,
            available INTEGER NOT NULL DEFAULT 1,
            cooldown_until TEXT,
            consecutive_errors INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            updated_at TEXT
        );
        """
    )
    _safe_add_column(conn, "provider_health", "last_ok_at", "TEXT")

    conn.commit()
