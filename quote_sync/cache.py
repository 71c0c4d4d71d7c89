"""
TTL-aware cache with an in-memory view mirrored to a persistent backing store.

- get(key): hit only while age <= TTL; expired entries read as a miss but are
  kept for get_fallback() so callers can prefer stale data over an error.
- is_stale(key): True once age exceeds stale_fraction * TTL, the signal for an
  opportunistic background refresh.
- set(key, value): updates memory first, then persists. A failed persist is
  logged and never invalidates the in-memory view.
- load(): seeds memory from the backing store; rows younger than TTL become
  live entries, older ones are only kept as fallback.

No eviction beyond TTL-on-read; size is bounded by the tracked symbols.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .providers.base import CurrencyQuote, Quote
from .store.backend import BackingStore
from .timeutils import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTE_PREFIX = "quote:"
META_PREFIX = "meta:"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    written_at: float


class CacheStore(Generic[T]):
    """Key -> value cache for one kind of record (quotes or metadata)."""

    def __init__(
        self,
        backing: BackingStore,
        *,
        prefix: str,
        ttl_s: float,
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
        stale_fraction: float = 0.8,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self._backing = backing
        self._prefix = prefix
        self._ttl_s = ttl_s
        self._encode = encode
        self._decode = decode
        self._stale_fraction = stale_fraction
        self._clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._fallback: Dict[str, CacheEntry[T]] = {}

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def load(self) -> int:
        """Seed the in-memory view from the backing store. Returns the number of live entries."""
        now = self._clock.now()
        try:
            stored = self._backing.load_all(self._prefix)
        except (sqlite3.Error, OSError, ValueError) as exc:
            logger.warning("Backing store unreadable for %s*, starting cold: %s", self._prefix, exc)
            return 0

        live = 0
        for row in stored:
            key = row.key[len(self._prefix):]
            try:
                entry = CacheEntry(value=self._decode(row.value), written_at=float(row.written_at))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping undecodable cache entry %s: %s", row.key, exc)
                continue
            if now - entry.written_at <= self._ttl_s:
                self._entries[key] = entry
                live += 1
            else:
                self._fallback[key] = entry
        logger.debug("Loaded %d live / %d expired %s* entries", live, len(self._fallback), self._prefix)
        return live

    def age(self, key: str) -> Optional[float]:
        entry = self._entries.get(key) or self._fallback.get(key)
        if entry is None:
            return None
        return self._clock.now() - entry.written_at

    def get(self, key: str) -> Optional[T]:
        """Fresh value or None (miss). Expired values are retained for get_fallback."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock.now() - entry.written_at > self._ttl_s:
            self._fallback[key] = entry
            del self._entries[key]
            return None
        return entry.value

    def get_fallback(self, key: str) -> Optional[T]:
        """Last written value regardless of age."""
        entry = self._entries.get(key) or self._fallback.get(key)
        return entry.value if entry is not None else None

    def is_stale(self, key: str) -> bool:
        """True when the entry is missing or older than stale_fraction * TTL."""
        age = self.age(key)
        if age is None:
            return True
        return age > self._stale_fraction * self._ttl_s

    def set(self, key: str, value: T, written_at: Optional[float] = None) -> None:
        ts = self._clock.now() if written_at is None else written_at
        self._entries[key] = CacheEntry(value=value, written_at=ts)
        self._fallback.pop(key, None)
        try:
            self._backing.write(self._full_key(key), self._encode(value), ts)
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.error("Persisting %s failed (in-memory value kept): %s", self._full_key(key), exc)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._fallback.pop(key, None)
        try:
            self._backing.delete(self._full_key(key))
        except (sqlite3.Error, OSError) as exc:
            logger.error("Deleting %s from backing store failed: %s", self._full_key(key), exc)

    def keys(self) -> List[str]:
        return sorted(set(self._entries) | set(self._fallback))


def merge_quote(previous: Optional[Quote], fresh: Quote) -> Quote:
    """
    Replace `previous` with `fresh`, carrying forward 24h low/high per
    currency when the fresh quote came from an endpoint that lacks them.
    """
    if previous is None:
        return fresh
    prices: Dict[str, CurrencyQuote] = {}
    for cur, cq in fresh.prices.items():
        old = previous.prices.get(cur)
        if old is not None and not cq.has_range() and old.has_range():
            cq = replace(
                cq,
                low_24h=cq.low_24h if cq.low_24h is not None else old.low_24h,
                high_24h=cq.high_24h if cq.high_24h is not None else old.high_24h,
            )
        prices[cur] = cq
    return replace(fresh, prices=prices)


def apply_ranges(quote: Quote, ranges: Quote) -> Quote:
    """Overlay 24h low/high (and change, when missing) from a range quote onto `quote`."""
    prices = dict(quote.prices)
    for cur, rq in ranges.prices.items():
        base = prices.get(cur)
        if base is None:
            prices[cur] = rq
            continue
        prices[cur] = replace(
            base,
            low_24h=rq.low_24h if rq.low_24h is not None else base.low_24h,
            high_24h=rq.high_24h if rq.high_24h is not None else base.high_24h,
            change_24h=base.change_24h if base.change_24h is not None else rq.change_24h,
        )
    return replace(quote, prices=prices)
