"""SQLite schema, tracked-token persistence and provider health records."""

from __future__ import annotations

from .health import HealthRecord, ProviderHealthStore
from .migrations import run_migrations
from .tokens import MemoryTokenStore, TokenStore

__all__ = [
    "HealthRecord",
    "ProviderHealthStore",
    "run_migrations",
    "MemoryTokenStore",
    "TokenStore",
]
