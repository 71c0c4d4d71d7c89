"""
Pending-state tracking: which symbols have a fresh value in flight.

The request queue is the only writer. Consumers read `is_pending` to show a
"fetching" placeholder instead of an empty value, and may subscribe to be
told when membership changes.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Set

logger = logging.getLogger(__name__)

Listener = Callable[[str, bool], None]


class PendingStateTracker:
    def __init__(self) -> None:
        self._pending: Set[str] = set()
        self._listeners: List[Listener] = []

    def is_pending(self, symbol: str) -> bool:
        return symbol in self._pending

    def snapshot(self) -> Set[str]:
        return set(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._pending

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener(symbol, pending)`; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def mark(self, symbols: Iterable[str]) -> List[str]:
        """Add symbols; returns the ones that were not already pending."""
        added = []
        for sym in symbols:
            if sym in self._pending:
                continue
            self._pending.add(sym)
            added.append(sym)
            self._notify(sym, True)
        return added

    def clear(self, symbols: Iterable[str]) -> None:
        for sym in symbols:
            if sym in self._pending:
                self._pending.discard(sym)
                self._notify(sym, False)

    def _notify(self, symbol: str, pending: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(symbol, pending)
            except Exception:
                logger.exception("Pending-state listener failed for %s", symbol)
