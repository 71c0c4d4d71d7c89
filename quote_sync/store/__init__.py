"""Backing stores for the quote and metadata caches."""

from __future__ import annotations

from .backend import BackingStore, MemoryBackingStore, StoredEntry
from .sqlite_backend import SqliteBackingStore
from .sqlite_session import open_db, sqlite_conn

__all__ = [
    "BackingStore",
    "MemoryBackingStore",
    "StoredEntry",
    "SqliteBackingStore",
    "open_db",
    "sqlite_conn",
]
