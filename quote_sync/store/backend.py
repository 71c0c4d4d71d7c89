"""
Backing store interface for the cache: durable key -> (JSON value, written_at).

The cache mirrors every write here and reloads from it at startup. Backends
may raise on I/O problems; the cache turns those into misses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass(frozen=True)
class StoredEntry:
    """One persisted cache record. `value` is already JSON-decoded."""

    key: str
    value: Any
    written_at: float


class BackingStore(ABC):
    """Durable key/value store used as the cache's persistent mirror."""

    @abstractmethod
    def load_all(self, prefix: str = "") -> List[StoredEntry]:
        """Every readable entry whose key starts with prefix. Unreadable rows are skipped."""
        ...

    @abstractmethod
    def write(self, key: str, value: Any, written_at: float) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryBackingStore(BackingStore):
    """In-process backing store for tests and throwaway engines."""

    def __init__(self) -> None:
        self._rows: Dict[str, StoredEntry] = {}
        self.writes = 0

    def load_all(self, prefix: str = "") -> List[StoredEntry]:
        return [e for k, e in self._rows.items() if k.startswith(prefix)]

    def write(self, key: str, value: Any, written_at: float) -> None:
        self.writes += 1
        self._rows[key] = StoredEntry(key=key, value=value, written_at=written_at)

    def delete(self, key: str) -> None:
        self._rows.pop(key, None)
