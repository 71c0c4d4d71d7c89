"""
Dispatch pipeline: one run of a batch through
rate limiter -> failover coordinator -> provider adapter -> cache writes.

A run performs at most one primary quote call per provider (a rate-limited
primary may fail over to the secondary within the same run), commits
whatever data came back, and leaves the batch in SUCCEEDED, RETRYING (with
`retry_in` set) or FAILED. It arms no timers itself; the request queue
schedules retries from the returned batch, so retry policy can be tested
with fake providers and no network.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from ..cache import CacheStore, apply_ranges, merge_quote
from ..providers.base import (
    AuthDenied,
    ErrorKind,
    Metadata,
    ProviderError,
    ProviderTimeout,
    Quote,
    QuoteProvider,
    RateLimited,
    UnknownProviderError,
)
from ..providers.failover import FailoverCoordinator
from ..providers.http import classify_exception
from ..providers.ratelimit import RateLimiter
from ..providers.resilience import RetryConfig
from .batch import Batch
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class DispatchPipeline:
    """Runs batches against providers and writes results into the caches."""

    def __init__(
        self,
        providers: Mapping[str, QuoteProvider],
        coordinator: FailoverCoordinator,
        limiter: RateLimiter,
        quotes: CacheStore[Quote],
        metadata: CacheStore[Metadata],
        scheduler: Scheduler,
        *,
        ref_for: Callable[[str], Optional[str]],
        is_tracked: Callable[[str], bool],
        retry_config: Optional[RetryConfig] = None,
        call_timeout_s: float = 15.0,
        aux_wait_cap_s: float = 2.0,
        metadata_session_limit: int = 2000,
    ) -> None:
        missing = [n for n in coordinator.priority if n not in providers]
        if missing:
            raise ValueError(f"No adapter registered for providers: {missing}")
        self._providers = dict(providers)
        self._coordinator = coordinator
        self._limiter = limiter
        self._quotes = quotes
        self._metadata = metadata
        self._scheduler = scheduler
        self._ref_for = ref_for
        self._is_tracked = is_tracked
        self._retry = retry_config or RetryConfig()
        self._call_timeout_s = call_timeout_s
        self._aux_wait_cap_s = aux_wait_cap_s
        self._metadata_session_limit = metadata_session_limit
        self._metadata_requested = 0

    @property
    def metadata_requested(self) -> int:
        return self._metadata_requested

    def _refs(self, symbols: Sequence[str]) -> Dict[str, str]:
        refs: Dict[str, str] = {}
        for sym in symbols:
            ref = self._ref_for(sym)
            if ref:
                refs[sym] = ref
        return refs

    async def _call(self, provider_name: str, method: str, *args: Any) -> Any:
        """Invoke an adapter method off the loop under the per-call timeout."""
        fn = getattr(self._providers[provider_name], method)
        self._limiter.record_call(provider_name)
        logger.debug("%s.%s()", provider_name, method)
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._call_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(
                f"{provider_name}.{method} exceeded {self._call_timeout_s:.1f}s", provider_name
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            raise classify_exception(exc, provider_name) from exc

    async def run(self, batch: Batch) -> Batch:
        batch.dispatch()
        if not batch.symbols:
            batch.finish()
            return batch

        selection = self._coordinator.select()
        if not selection.available:
            # No partial dispatch: the whole batch waits for the earliest recovery.
            batch.note_error(ErrorKind.RATE_LIMITED, "all providers cooling")
            batch.retry(selection.retry_in)
            logger.info(
                "Batch %d: all providers cooling, retry in %.1fs", batch.batch_id, selection.retry_in
            )
            return batch

        name = selection.provider_name
        failed_over = False
        while True:
            wait = self._limiter.wait_time(name)
            if wait > 0:
                batch.retry(wait)
                logger.debug("Batch %d: %s rate gate closed, retry in %.2fs", batch.batch_id, name, wait)
                return batch

            batch.provider_name = name
            try:
                quotes: Dict[str, Quote] = await self._call(
                    name, "fetch_quotes", list(batch.symbols), self._refs(batch.symbols)
                )
            except ProviderError as err:
                self._coordinator.record_failure(name, err)
                batch.note_error(err.kind, str(err))
                if isinstance(err, RateLimited):
                    if err.retry_after:
                        self._limiter.note_cooldown(name, err.retry_after)
                    alt = None if failed_over else self._coordinator.alternative(name)
                    if alt is not None:
                        logger.warning("Batch %d: %s rate limited, failing over to %s", batch.batch_id, name, alt)
                        name = alt
                        failed_over = True
                        continue
                    delay = self._coordinator.soonest_recovery_in()
                    batch.retry(delay)
                    logger.warning("Batch %d: rate limited, retry in %.1fs", batch.batch_id, delay)
                    return batch
                return self._retry_or_fail(batch, err)
            break

        self._coordinator.record_success(name)
        delivered = self._commit_quotes(batch, quotes)
        batch.succeed(delivered)
        logger.info(
            "Batch %d: %s delivered %d symbols, %d outstanding",
            batch.batch_id, name, len(delivered), len(batch.symbols),
        )

        await self._refresh_ranges(name, delivered, quotes)
        await self._refresh_metadata(name, delivered)

        if batch.symbols:
            err = UnknownProviderError(
                f"{name} returned no data for {', '.join(batch.symbols[:5])}", name
            )
            batch.note_error(err.kind, str(err))
            return self._retry_or_fail(batch, err)

        batch.finish()
        return batch

    def _retry_or_fail(self, batch: Batch, err: ProviderError) -> Batch:
        attempt = batch.record_attempt()
        if attempt >= self._retry.max_retries:
            batch.fail()
            logger.warning(
                "Batch %d abandoned after %d attempts (%s): %s",
                batch.batch_id, attempt, err.kind.value, str(err)[:200],
            )
            return batch
        if isinstance(err, AuthDenied):
            delay = self._retry.auth_retry_s
        else:
            delay = self._retry.delay_for(attempt)
        batch.retry(delay)
        logger.info(
            "Batch %d attempt %d/%d failed (%s), retry in %.1fs",
            batch.batch_id, attempt, self._retry.max_retries, err.kind.value, delay,
        )
        return batch

    def _commit_quotes(self, batch: Batch, quotes: Mapping[str, Quote]) -> Set[str]:
        delivered: Set[str] = set()
        for sym in batch.symbols:
            quote = quotes.get(sym)
            if quote is None or not quote.is_valid():
                continue
            delivered.add(sym)
            if not self._is_tracked(sym):
                logger.debug("Dropping quote for untracked symbol %s", sym)
                continue
            self._quotes.set(sym, merge_quote(self._quotes.get_fallback(sym), quote))
        return delivered

    async def _wait_for_slot(self, provider_name: str) -> bool:
        """Wait briefly for the rate gate; False when the wait would exceed the cap."""
        if not self._coordinator.is_available(provider_name):
            return False
        wait = self._limiter.wait_time(provider_name)
        if wait > self._aux_wait_cap_s:
            return False
        if wait > 0:
            await self._scheduler.sleep(wait)
        return self._limiter.can_call(provider_name)

    def _aux_failure(self, provider_name: str, what: str, err: ProviderError) -> None:
        self._coordinator.record_failure(provider_name, err)
        if isinstance(err, RateLimited) and err.retry_after:
            self._limiter.note_cooldown(provider_name, err.retry_after)
        logger.warning("%s %s call failed (%s): %s", provider_name, what, err.kind.value, str(err)[:200])

    async def _refresh_ranges(self, provider_name: str, delivered: Set[str], quotes: Mapping[str, Quote]) -> None:
        due = self._coordinator.ranges_due(s for s in sorted(delivered) if self._is_tracked(s))
        if not due:
            return
        # Some providers return low/high with the basic quote already.
        covered = [s for s in due if all(cq.has_range() for cq in quotes[s].prices.values())]
        self._coordinator.mark_ranges(covered)
        due = [s for s in due if s not in covered]
        if not due or not await self._wait_for_slot(provider_name):
            return
        try:
            ranges: Dict[str, Quote] = await self._call(provider_name, "fetch_ranges", due, self._refs(due))
        except ProviderError as err:
            self._aux_failure(provider_name, "range", err)
            return

        updated = []
        for sym in due:
            rq = ranges.get(sym)
            current = self._quotes.get_fallback(sym)
            if rq is None or current is None or not self._is_tracked(sym):
                continue
            self._quotes.set(sym, apply_ranges(current, rq))
            updated.append(sym)
        self._coordinator.mark_ranges(updated)
        logger.debug("%s ranges refreshed for %d/%d symbols", provider_name, len(updated), len(due))

    async def _refresh_metadata(self, provider_name: str, delivered: Set[str]) -> None:
        missing = [s for s in sorted(delivered) if self._is_tracked(s) and self._metadata.get(s) is None]
        budget = self._metadata_session_limit - self._metadata_requested
        if not missing or budget <= 0:
            return
        missing = missing[:budget]
        if not await self._wait_for_slot(provider_name):
            return
        self._metadata_requested += len(missing)
        try:
            meta: Dict[str, Metadata] = await self._call(
                provider_name, "fetch_metadata", missing, self._refs(missing)
            )
        except ProviderError as err:
            self._aux_failure(provider_name, "metadata", err)
            return
        for sym in missing:
            m = meta.get(sym)
            if m is not None and self._is_tracked(sym):
                self._metadata.set(sym, m)

    async def search(self, query: str) -> List[Metadata]:
        """Free-text search on the first provider that is available and not rate gated."""
        for name in self._coordinator.priority:
            if not self._coordinator.is_available(name) or not self._limiter.can_call(name):
                continue
            try:
                results: List[Metadata] = await self._call(name, "search", query)
            except ProviderError as err:
                self._aux_failure(name, "search", err)
                continue
            self._coordinator.record_success(name)
            return results
        logger.info("Search for %r skipped: no provider ready", query)
        return []
