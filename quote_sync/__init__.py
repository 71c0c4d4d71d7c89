"""
Quote sync: keeps tracked asset symbols populated with quotes and metadata
from rate-limited HTTP providers, with batching, failover and a persistent
TTL cache.
"""

from __future__ import annotations

from ._version import __version__
from .engine import QuoteSyncEngine, SyncSettings
from .providers.defaults import create_engine

__all__ = [
    "__version__",
    "QuoteSyncEngine",
    "SyncSettings",
    "create_engine",
]
