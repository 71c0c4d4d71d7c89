"""
SQLite connection lifecycle: context manager with guaranteed close, plus the
long-lived connection the engine keeps for its backing store.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from ..db.migrations import run_migrations


def open_db(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open (creating if needed) the engine database and apply migrations."""
    path = str(db_path) if str(db_path) == ":memory:" else str(Path(db_path).resolve())
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    run_migrations(conn)
    return conn


@contextmanager
def sqlite_conn(db_path: Union[str, Path]) -> Generator[sqlite3.Connection, None, None]:
    """Yield a migrated SQLite connection that is always closed on exit."""
    conn = open_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
