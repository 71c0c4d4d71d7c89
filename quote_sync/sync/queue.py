"""
Request queue / batcher.

enqueue() admits symbols into the pending set and (re)arms a debounce timer:
a short window for high-priority requests (a token the user just added), a
longer one for bursts such as startup refreshes. When the timer fires and no
dispatch is running, up to `max_batch_size` symbols are taken oldest-first
into a Batch and handed to the dispatch pipeline. The queue then applies the
outcome: delivered symbols leave the pending set, abandoned ones too, and a
RETRYING batch gets its own retry timer. Leftover symbols or due retries arm
the next cycle immediately.

Only one pipeline run is active at a time. Requests arriving meanwhile just
change the pending set and the composition of the next batch.
"""
from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .batch import Batch, BatchState
from .dispatch import DispatchPipeline
from .pending import PendingStateTracker
from .scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

BatchListener = Callable[[Batch], None]


class RequestQueue:
    def __init__(
        self,
        pipeline: DispatchPipeline,
        scheduler: Scheduler,
        pending: Optional[PendingStateTracker] = None,
        *,
        max_batch_size: int = 50,
        high_priority_window_s: float = 0.1,
        normal_window_s: float = 0.5,
        on_batch_done: Optional[BatchListener] = None,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._pipeline = pipeline
        self._scheduler = scheduler
        self._pending = pending if pending is not None else PendingStateTracker()
        self._max_batch_size = max_batch_size
        self._high_window_s = high_priority_window_s
        self._normal_window_s = normal_window_s
        self._on_batch_done = on_batch_done

        # Admitted symbols not yet assigned to a batch, in enqueue order.
        self._waiting: "OrderedDict[str, None]" = OrderedDict()
        self._assigned: Dict[str, Batch] = {}
        self._ready: Deque[Batch] = deque()
        self._retry_timers: Dict[int, TimerHandle] = {}
        self._debounce: Optional[TimerHandle] = None
        self._debounce_high = False
        self._next_cycle: Optional[TimerHandle] = None
        self._processing = False
        self._closed = False

    @property
    def pending(self) -> PendingStateTracker:
        return self._pending

    @property
    def processing(self) -> bool:
        return self._processing

    def is_pending(self, symbol: str) -> bool:
        return self._pending.is_pending(symbol)

    def pending_symbols(self) -> List[str]:
        return sorted(self._pending.snapshot())

    def waiting_symbols(self) -> List[str]:
        """Symbols admitted but not yet part of a batch, oldest first."""
        return list(self._waiting)

    def enqueue(self, symbols: Iterable[str], high_priority: bool = False) -> List[str]:
        """Admit symbols and arm the debounce timer. Returns the newly admitted symbols."""
        if self._closed:
            return []
        added = self._pending.mark(symbols)
        for sym in added:
            self._waiting[sym] = None
        if added:
            logger.debug("Enqueued %s (high=%s)", added, high_priority)
            self._arm_debounce(high_priority)
        elif high_priority and self._waiting and not self._debounce_high:
            # Already waiting symbols were asked for urgently: shorten the window.
            self._arm_debounce(True)
        return added

    def _arm_debounce(self, high_priority: bool) -> None:
        armed = self._debounce is not None and not self._debounce.cancelled
        if armed and self._debounce_high and not high_priority:
            return
        if armed:
            self._debounce.cancel()
        window = self._high_window_s if high_priority else self._normal_window_s
        self._debounce = self._scheduler.call_later(window, self._on_debounce)
        self._debounce_high = high_priority

    def discard(self, symbol: str) -> None:
        """Forget a symbol wherever it sits: waiting, in a batch, or pending."""
        self._waiting.pop(symbol, None)
        self._pending.clear([symbol])
        batch = self._assigned.pop(symbol, None)
        if batch is None or symbol not in batch.symbols:
            return
        batch.symbols.remove(symbol)
        if not batch.symbols and batch.state is BatchState.RETRYING:
            timer = self._retry_timers.pop(batch.batch_id, None)
            if timer is not None:
                timer.cancel()
            if batch in self._ready:
                self._ready.remove(batch)
            logger.debug("Batch %d emptied by removal, dropped", batch.batch_id)

    def close(self) -> None:
        """Cancel every timer; in-flight calls finish but nothing new is scheduled."""
        self._closed = True
        for timer in (self._debounce, self._next_cycle, *self._retry_timers.values()):
            if timer is not None:
                timer.cancel()
        self._debounce = None
        self._next_cycle = None
        self._retry_timers.clear()
        self._ready.clear()

    async def _on_debounce(self) -> None:
        self._debounce = None
        self._debounce_high = False
        await self._pump()

    async def _on_next_cycle(self) -> None:
        self._next_cycle = None
        await self._pump()

    async def _pump(self) -> None:
        if self._processing or self._closed:
            return
        batch = self._ready.popleft() if self._ready else self._next_batch()
        if batch is None:
            return
        self._processing = True
        try:
            await self._run(batch)
        finally:
            self._processing = False
        self._continue()

    def _next_batch(self) -> Optional[Batch]:
        symbols: List[str] = []
        while self._waiting and len(symbols) < self._max_batch_size:
            sym, _ = self._waiting.popitem(last=False)
            symbols.append(sym)
        if not symbols:
            return None
        batch = Batch(symbols=symbols)
        for sym in symbols:
            self._assigned[sym] = batch
        logger.debug("Batch %d assembled: %d symbols, %d still waiting", batch.batch_id, len(symbols), len(self._waiting))
        return batch

    async def _run(self, batch: Batch) -> None:
        try:
            await self._pipeline.run(batch)
        except Exception:
            logger.exception("Dispatch of batch %d crashed; abandoning its symbols", batch.batch_id)
            self._release(batch.succeeded | set(batch.symbols))
            batch.symbols = []
            return
        self._apply(batch)

    def _release(self, symbols: Iterable[str]) -> None:
        symbols = list(symbols)
        for sym in symbols:
            self._assigned.pop(sym, None)
        self._pending.clear(symbols)

    def _apply(self, batch: Batch) -> None:
        self._release(batch.succeeded)
        if batch.state is BatchState.FAILED:
            self._release(batch.failed)
        elif batch.state is BatchState.RETRYING:
            if batch.symbols and not self._closed:
                delay = batch.retry_in or 0.0
                self._retry_timers[batch.batch_id] = self._scheduler.call_later(
                    delay, lambda: self._on_retry(batch)
                )
                logger.debug("Batch %d retry armed in %.2fs", batch.batch_id, delay)
        if self._on_batch_done is not None:
            try:
                self._on_batch_done(batch)
            except Exception:
                logger.exception("Batch listener failed for batch %d", batch.batch_id)

    async def _on_retry(self, batch: Batch) -> None:
        if self._retry_timers.pop(batch.batch_id, None) is None or not batch.symbols:
            return
        self._ready.append(batch)
        await self._pump()

    def _continue(self) -> None:
        if self._closed or self._next_cycle is not None:
            return
        debounce_armed = self._debounce is not None and not self._debounce.cancelled
        if self._ready or (self._waiting and not debounce_armed):
            self._next_cycle = self._scheduler.call_later(0.0, self._on_next_cycle)
