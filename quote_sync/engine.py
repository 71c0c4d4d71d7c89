"""
Quote sync engine: the single object consumers talk to.

It owns the tracked tokens, the quote and metadata caches, the rate limiter,
the failover coordinator, the dispatch pipeline and the request queue, all
injected or built in the constructor. Nothing here raises for provider
failures; callers see at worst a cache miss, a symbol that stays pending for
a while, or `last_error`.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .cache import META_PREFIX, QUOTE_PREFIX, CacheStore
from .providers.base import CurrencyQuote, Metadata, ProviderStatus, Quote, QuoteProvider
from .providers.failover import FailoverCoordinator
from .providers.ratelimit import RateLimiter
from .providers.resilience import ProviderLimits, RetryConfig
from .store.backend import BackingStore
from .sync.batch import Batch, BatchState
from .sync.dispatch import DispatchPipeline
from .sync.pending import PendingStateTracker
from .sync.queue import RequestQueue
from .sync.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

TokenSpec = Union[str, Tuple[str, Optional[str]]]


@dataclass
class SyncSettings:
    """Cache, queue and dispatch tuning (config sections `cache`, `queue`, `dispatch`)."""
    quote_ttl_s: float = 600.0
    metadata_ttl_s: float = 14 * 24 * 3600.0
    range_ttl_s: float = 1800.0
    stale_fraction: float = 0.8
    recent_data_s: float = 60.0
    max_batch_size: int = 50
    high_priority_window_s: float = 0.1
    normal_window_s: float = 0.5
    call_timeout_s: float = 15.0
    aux_wait_cap_s: float = 2.0
    metadata_session_limit: int = 2000
    auto_refresh_s: float = 600.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SyncSettings":
        cache = cfg.get("cache") or {}
        queue = cfg.get("queue") or {}
        dispatch = cfg.get("dispatch") or {}
        d = cls()
        return cls(
            quote_ttl_s=float(cache.get("quote_ttl_s", d.quote_ttl_s)),
            metadata_ttl_s=float(cache.get("metadata_ttl_s", d.metadata_ttl_s)),
            range_ttl_s=float(cache.get("range_ttl_s", d.range_ttl_s)),
            stale_fraction=float(cache.get("stale_fraction", d.stale_fraction)),
            recent_data_s=float(cache.get("recent_data_s", d.recent_data_s)),
            max_batch_size=int(queue.get("max_batch_size", d.max_batch_size)),
            high_priority_window_s=float(queue.get("high_priority_window_s", d.high_priority_window_s)),
            normal_window_s=float(queue.get("normal_window_s", d.normal_window_s)),
            call_timeout_s=float(dispatch.get("call_timeout_s", d.call_timeout_s)),
            aux_wait_cap_s=float(dispatch.get("aux_wait_cap_s", d.aux_wait_cap_s)),
            metadata_session_limit=int(dispatch.get("metadata_session_limit", d.metadata_session_limit)),
            auto_refresh_s=float(dispatch.get("auto_refresh_s", d.auto_refresh_s)),
        )


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class QuoteSyncEngine:
    """
    Keeps tracked symbols populated with quotes and metadata.

    Consumer API: add_symbol, add_symbols, remove_symbol, refresh, get_quote,
    is_pending, get_metadata, plus search and status accessors. `start()`
    must run on the event loop the scheduler uses.
    """

    def __init__(
        self,
        providers: Mapping[str, QuoteProvider],
        scheduler: Scheduler,
        backing: BackingStore,
        token_store: Any,
        *,
        priority: Optional[List[str]] = None,
        limits: Optional[Dict[str, ProviderLimits]] = None,
        default_tokens: Optional[Mapping[str, str]] = None,
        settings: Optional[SyncSettings] = None,
        retry_config: Optional[RetryConfig] = None,
        health_store: Any = None,
    ) -> None:
        self._settings = settings or SyncSettings()
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._token_store = token_store
        self._health_store = health_store

        s = self._settings
        self.quotes: CacheStore[Quote] = CacheStore(
            backing,
            prefix=QUOTE_PREFIX,
            ttl_s=s.quote_ttl_s,
            encode=lambda q: q.to_dict(),
            decode=Quote.from_dict,
            stale_fraction=s.stale_fraction,
            clock=self._clock,
        )
        self.metadata: CacheStore[Metadata] = CacheStore(
            backing,
            prefix=META_PREFIX,
            ttl_s=s.metadata_ttl_s,
            encode=lambda m: m.to_dict(),
            decode=Metadata.from_dict,
            stale_fraction=s.stale_fraction,
            clock=self._clock,
        )

        order = list(priority or providers.keys())
        limits = dict(limits or {})
        self.limiter = RateLimiter(limits, clock=self._clock)
        self.coordinator = FailoverCoordinator(order, limits, range_ttl_s=s.range_ttl_s, clock=self._clock)
        self.pending = PendingStateTracker()
        self.pipeline = DispatchPipeline(
            providers,
            self.coordinator,
            self.limiter,
            self.quotes,
            self.metadata,
            scheduler,
            ref_for=self.get_ref,
            is_tracked=self.is_tracked,
            retry_config=retry_config,
            call_timeout_s=s.call_timeout_s,
            aux_wait_cap_s=s.aux_wait_cap_s,
            metadata_session_limit=s.metadata_session_limit,
        )
        self.queue = RequestQueue(
            self.pipeline,
            scheduler,
            self.pending,
            max_batch_size=s.max_batch_size,
            high_priority_window_s=s.high_priority_window_s,
            normal_window_s=s.normal_window_s,
            on_batch_done=self._on_batch_done,
        )

        self._defaults: Dict[str, str] = {
            normalize_symbol(sym): ref for sym, ref in (default_tokens or {}).items()
        }
        self._tokens: Dict[str, str] = dict(self._defaults)
        self._refresh_timer: Optional[TimerHandle] = None
        self._started = False
        self._last_error: Optional[str] = None
        self._last_updated: Optional[float] = None

    # Lifecycle

    def start(self) -> None:
        """Load persisted state, queue symbols lacking fresh quotes, arm auto-refresh."""
        if self._started:
            return
        self._started = True
        self.quotes.load()
        self.metadata.load()
        try:
            custom = self._token_store.load_all()
        except sqlite3.Error as exc:
            logger.error("Could not load tracked tokens: %s", exc)
            custom = {}
        for sym, ref in custom.items():
            sym = normalize_symbol(sym)
            if sym and sym not in self._tokens:
                self._tokens[sym] = ref
        missing = [sym for sym in self._tokens if self.quotes.get(sym) is None]
        logger.info("Engine started: %d tokens, %d need quotes", len(self._tokens), len(missing))
        if missing:
            self.queue.enqueue(missing)
        self._arm_auto_refresh()

    def close(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        self.queue.close()
        self._persist_health()
        self._started = False

    def _arm_auto_refresh(self) -> None:
        if self._settings.auto_refresh_s <= 0:
            return
        self._refresh_timer = self._scheduler.call_later(self._settings.auto_refresh_s, self._on_auto_refresh)

    def _on_auto_refresh(self) -> None:
        self._refresh_timer = None
        self.refresh()
        self._arm_auto_refresh()

    # Tokens

    def is_tracked(self, symbol: str) -> bool:
        return normalize_symbol(symbol) in self._tokens

    def is_default(self, symbol: str) -> bool:
        return normalize_symbol(symbol) in self._defaults

    def tracked_symbols(self) -> List[str]:
        return list(self._tokens)

    def get_ref(self, symbol: str) -> Optional[str]:
        return self._tokens.get(normalize_symbol(symbol))

    def add_symbol(self, symbol: str, provider_ref: Optional[str] = None) -> bool:
        """
        Start tracking a symbol. Returns False when it was already tracked.

        The first quote is fetched with high priority unless a quote younger
        than `recent_data_s` is already cached.
        """
        added = self._track(symbol, provider_ref)
        if added is None:
            return False
        if self._needs_fetch(added):
            self.queue.enqueue([added], high_priority=True)
        return True

    def add_symbols(self, tokens: Union[Mapping[str, Optional[str]], Iterable[TokenSpec]]) -> List[str]:
        """Track several symbols (mapping or iterable of symbol / (symbol, ref)). Returns those newly added."""
        items = tokens.items() if isinstance(tokens, Mapping) else tokens
        added = []
        for item in items:
            sym, ref = (item, None) if isinstance(item, str) else item
            result = self._track(sym, ref)
            if result is not None:
                added.append(result)
        fetch = [s for s in added if self._needs_fetch(s)]
        if fetch:
            self.queue.enqueue(fetch)
        return added

    def _track(self, symbol: str, provider_ref: Optional[str]) -> Optional[str]:
        sym = normalize_symbol(symbol)
        if not sym:
            raise ValueError("symbol must be a non-empty string")
        if sym in self._tokens:
            return None
        ref = (provider_ref or sym).strip().lower()
        self._tokens[sym] = ref
        try:
            self._token_store.upsert(sym, ref)
        except sqlite3.Error as exc:
            logger.error("Persisting token %s failed: %s", sym, exc)
        logger.info("Tracking %s (ref=%s)", sym, ref)
        return sym

    def _needs_fetch(self, symbol: str) -> bool:
        age = self.quotes.age(symbol)
        return age is None or age > self._settings.recent_data_s

    def remove_symbol(self, symbol: str) -> bool:
        """Stop tracking a custom symbol. Default tokens cannot be removed."""
        sym = normalize_symbol(symbol)
        if sym in self._defaults:
            logger.warning("Refusing to remove default token %s", sym)
            return False
        if self._tokens.pop(sym, None) is None:
            return False
        try:
            self._token_store.remove(sym)
        except sqlite3.Error as exc:
            logger.error("Removing token %s from store failed: %s", sym, exc)
        self.queue.discard(sym)
        self.quotes.delete(sym)
        self.metadata.delete(sym)
        self.coordinator.forget(sym)
        logger.info("Stopped tracking %s", sym)
        return True

    # Reads

    def refresh(self, force: bool = False) -> Dict[str, Quote]:
        """
        Queue stale (or, with force, all) tracked symbols and return what is
        cached right now, stale values included.
        """
        if force:
            targets = list(self._tokens)
        else:
            targets = [s for s in self._tokens if self.quotes.is_stale(s)]
        if targets:
            self.queue.enqueue(targets)
        cached = {}
        for sym in self._tokens:
            quote = self.quotes.get_fallback(sym)
            if quote is not None:
                cached[sym] = quote
        return cached

    def get_quote(self, symbol: str, currency: str = "usd") -> Optional[CurrencyQuote]:
        """
        Fresh quote for `symbol` in `currency`, or None.

        A stale hit is still returned and schedules a background refresh; a
        miss on a tracked symbol schedules a high-priority fetch.
        """
        sym = normalize_symbol(symbol)
        quote = self.quotes.get(sym)
        tracked = sym in self._tokens
        if quote is None:
            if tracked:
                self.queue.enqueue([sym], high_priority=True)
            return None
        if tracked and self.quotes.is_stale(sym):
            self.queue.enqueue([sym])
        return quote.get(currency)

    def is_pending(self, symbol: str) -> bool:
        return self.pending.is_pending(normalize_symbol(symbol))

    def get_metadata(self, symbol: str) -> Optional[Metadata]:
        return self.metadata.get(normalize_symbol(symbol))

    async def search(self, query: str) -> List[Metadata]:
        query = (query or "").strip()
        if not query:
            return []
        return await self.pipeline.search(query)

    # Status

    def provider_statuses(self) -> Dict[str, ProviderStatus]:
        return self.coordinator.statuses()

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_updated(self) -> Optional[float]:
        return self._last_updated

    def _on_batch_done(self, batch: Batch) -> None:
        now = self._clock.now()
        if batch.succeeded:
            self._last_updated = now
        if batch.state is BatchState.SUCCEEDED:
            self._last_error = None
        elif batch.last_error:
            kind = batch.last_error_kind.value if batch.last_error_kind else "UNKNOWN"
            self._last_error = f"{kind}: {batch.last_error}"
        if batch.state is BatchState.FAILED:
            logger.warning("Gave up on %s: %s", sorted(batch.failed), self._last_error)
        self._persist_health()

    def _persist_health(self) -> None:
        if self._health_store is None:
            return
        try:
            self._health_store.upsert_all(self.coordinator.statuses(), self._clock.now())
        except sqlite3.Error as exc:
            logger.error("Persisting provider health failed: %s", exc)
