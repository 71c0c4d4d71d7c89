"""
Per-provider call accounting.

Tracks a rolling 60-second window of call timestamps plus a hard minimum
spacing between consecutive calls to the same provider. `can_call` is a
gate, not a hint: callers that get False must wait `wait_time` and ask again.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, Optional

from ..timeutils import Clock, SystemClock
from .resilience import ProviderLimits

logger = logging.getLogger(__name__)

WINDOW_S = 60.0


class RateLimiter:
    """Rolling per-minute budget, minimum spacing and quota cooldown per provider."""

    def __init__(self, limits: Dict[str, ProviderLimits], clock: Optional[Clock] = None) -> None:
        self._limits = dict(limits)
        self._clock = clock or SystemClock()
        self._calls: Dict[str, Deque[float]] = {name: deque() for name in self._limits}
        self._last_call: Dict[str, float] = {}
        self._cooldown_until: Dict[str, float] = {}

    def _limits_for(self, provider_name: str) -> ProviderLimits:
        if provider_name not in self._limits:
            self._limits[provider_name] = ProviderLimits()
            self._calls[provider_name] = deque()
        return self._limits[provider_name]

    def _prune(self, provider_name: str, now: float) -> Deque[float]:
        calls = self._calls.setdefault(provider_name, deque())
        while calls and now - calls[0] >= WINDOW_S:
            calls.popleft()
        return calls

    def wait_time(self, provider_name: str) -> float:
        """Seconds until can_call(provider_name) turns True; 0.0 when it already is."""
        limits = self._limits_for(provider_name)
        now = self._clock.now()
        waits = [0.0]

        until = self._cooldown_until.get(provider_name)
        if until is not None and now < until:
            waits.append(until - now)

        last = self._last_call.get(provider_name)
        if last is not None and now - last < limits.min_interval_s:
            waits.append(limits.min_interval_s - (now - last))

        calls = self._prune(provider_name, now)
        if limits.calls_per_minute > 0 and len(calls) >= limits.calls_per_minute:
            waits.append(WINDOW_S - (now - calls[0]))

        return max(waits)

    def can_call(self, provider_name: str) -> bool:
        return self.wait_time(provider_name) <= 0.0

    def record_call(self, provider_name: str, cooldown_hint: Optional[float] = None) -> None:
        """
        Account for one call. Reaching the per-minute tier limit, or an
        explicit cooldown hint from a 429-style response, starts a cooldown.
        """
        limits = self._limits_for(provider_name)
        now = self._clock.now()
        calls = self._prune(provider_name, now)
        calls.append(now)
        self._last_call[provider_name] = now

        cooldown: Optional[float] = None
        if cooldown_hint is not None:
            cooldown = cooldown_hint
        elif limits.calls_per_minute > 0 and len(calls) >= limits.calls_per_minute:
            cooldown = limits.cooldown_s
        if cooldown is not None and cooldown > 0:
            until = now + cooldown
            self._cooldown_until[provider_name] = max(until, self._cooldown_until.get(provider_name, 0.0))
            logger.warning(
                "Rate limit cooldown for %s: %.1fs (%d calls in window)",
                provider_name, cooldown, len(calls),
            )

    def note_cooldown(self, provider_name: str, seconds: float) -> None:
        """Extend the cooldown without counting a call (hint arrived after the call was recorded)."""
        if seconds <= 0:
            return
        until = self._clock.now() + seconds
        self._cooldown_until[provider_name] = max(until, self._cooldown_until.get(provider_name, 0.0))

    def calls_in_window(self, provider_name: str) -> int:
        return len(self._prune(provider_name, self._clock.now()))
