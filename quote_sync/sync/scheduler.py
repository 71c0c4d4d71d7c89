"""
Cancellable timers for debounce windows, retry backoff and periodic refresh.

Engine components never capture ambient timers; they hold TimerHandle
objects and cancel/re-arm them explicitly. Callbacks may be plain functions
or return an awaitable, which is run as a task on the event loop.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Protocol, Set

from ..timeutils import Clock, SystemClock

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TimerHandle(Protocol):
    @property
    def when(self) -> float:
        """Clock time at which the callback is due."""
        ...

    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    @property
    def clock(self) -> Clock: ...

    def call_later(self, delay_s: float, callback: Callback) -> TimerHandle: ...

    async def sleep(self, delay_s: float) -> None: ...


class _AsyncioTimer:
    def __init__(self, when: float) -> None:
        self._when = when
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    @property
    def when(self) -> float:
        return self._when

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class AsyncioScheduler:
    """Scheduler on the running asyncio loop. Keeps spawned tasks referenced until done."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def clock(self) -> Clock:
        return self._clock

    def call_later(self, delay_s: float, callback: Callback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        delay_s = max(0.0, delay_s)
        timer = _AsyncioTimer(self._clock.now() + delay_s)

        def _fire() -> None:
            if timer.cancelled:
                return
            result = callback()
            if inspect.isawaitable(result):
                task = loop.create_task(_log_failures(result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        timer._handle = loop.call_later(delay_s, _fire)
        return timer

    async def sleep(self, delay_s: float) -> None:
        await asyncio.sleep(max(0.0, delay_s))

    async def drain(self) -> None:
        """Wait for callback tasks that are currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def _log_failures(awaitable: Any) -> None:
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled callback failed")
