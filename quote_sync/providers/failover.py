"""
Failover coordinator: ordered provider preference with cooldown tracking.

Each provider is either AVAILABLE or COOLING. A provider enters COOLING on a
rate-limit response or after `error_threshold` consecutive errors, and
returns to AVAILABLE purely by its deadline passing; the check happens
lazily on the next selection, so no timer is involved.

The coordinator also remembers, per symbol, when the heavier 24h range data
was last fetched so it is only requested again once its own TTL elapses.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..timeutils import Clock, SystemClock
from .base import ProviderError, ProviderStatus, RateLimited, Selection
from .resilience import ProviderLimits

logger = logging.getLogger(__name__)


class FailoverCoordinator:
    """
    Chooses the provider for each call.

    Preference follows the priority list: the first AVAILABLE provider wins.
    When every provider is cooling, the one with the soonest deadline is
    reported together with `available=False` and the wait, so the caller can
    reschedule instead of looping.
    """

    def __init__(
        self,
        priority: List[str],
        limits: Optional[Dict[str, ProviderLimits]] = None,
        range_ttl_s: float = 1800.0,
        clock: Optional[Clock] = None,
    ) -> None:
        if not priority:
            raise ValueError("FailoverCoordinator needs at least one provider")
        self._priority = list(priority)
        self._limits = dict(limits or {})
        self._range_ttl_s = range_ttl_s
        self._clock = clock or SystemClock()
        self._status: Dict[str, ProviderStatus] = {
            name: ProviderStatus(provider_name=name) for name in self._priority
        }
        self._ranges_fetched_at: Dict[str, float] = {}

    @property
    def priority(self) -> List[str]:
        return list(self._priority)

    def _limits_for(self, provider_name: str) -> ProviderLimits:
        return self._limits.get(provider_name) or ProviderLimits()

    def is_available(self, provider_name: str) -> bool:
        return self._status[provider_name].available(self._clock.now())

    def select(self, exclude: Iterable[str] = ()) -> Selection:
        """Pick the preferred AVAILABLE provider, or report the soonest-to-recover one."""
        now = self._clock.now()
        skip = set(exclude)
        candidates = [n for n in self._priority if n not in skip] or list(self._priority)

        for name in candidates:
            if self._status[name].available(now):
                return Selection(provider_name=name, available=True)

        soonest = min(candidates, key=lambda n: self._status[n].cooldown_until or now)
        until = self._status[soonest].cooldown_until or now
        return Selection(provider_name=soonest, available=False, retry_in=max(0.0, until - now))

    def alternative(self, provider_name: str) -> Optional[str]:
        """Another AVAILABLE provider than `provider_name`, if any."""
        sel = self.select(exclude=[provider_name])
        if sel.available and sel.provider_name != provider_name:
            return sel.provider_name
        return None

    def record_success(self, provider_name: str) -> None:
        status = self._status[provider_name]
        if status.consecutive_errors or status.consecutive_cooldowns:
            logger.info("Provider %s recovered", provider_name)
        status.record_success(self._clock.now())

    def record_failure(self, provider_name: str, error: ProviderError) -> None:
        """Account for a failed call; may move the provider into COOLING."""
        status = self._status[provider_name]
        status.record_failure(str(error))
        limits = self._limits_for(provider_name)

        if isinstance(error, RateLimited):
            self._cool(status, limits, hint=error.retry_after, reason="rate limited")
        elif status.consecutive_errors >= limits.error_threshold:
            self._cool(status, limits, hint=None, reason=f"{status.consecutive_errors} consecutive errors")

    def _cool(self, status: ProviderStatus, limits: ProviderLimits, hint: Optional[float], reason: str) -> None:
        now = self._clock.now()
        status.consecutive_cooldowns += 1
        window = limits.cooldown_for(status.consecutive_cooldowns, hint=hint)
        status.cooldown_until = max(now + window, status.cooldown_until or 0.0)
        status.consecutive_errors = 0
        logger.warning(
            "Provider %s COOLING for %.1fs (%s): %s",
            status.provider_name, window, reason, (status.last_error or "")[:200],
        )

    def cooldown_until(self, provider_name: str) -> Optional[float]:
        status = self._status[provider_name]
        if status.available(self._clock.now()):
            return None
        return status.cooldown_until

    def soonest_recovery_in(self) -> float:
        """Seconds until the earliest cooling provider recovers (0.0 if one is available)."""
        sel = self.select()
        return 0.0 if sel.available else sel.retry_in

    def statuses(self) -> Dict[str, ProviderStatus]:
        """Snapshot copies of every provider's status."""
        return {
            name: ProviderStatus(
                provider_name=s.provider_name,
                cooldown_until=s.cooldown_until,
                consecutive_errors=s.consecutive_errors,
                consecutive_cooldowns=s.consecutive_cooldowns,
                last_error=s.last_error,
                last_ok_at=s.last_ok_at,
            )
            for name, s in self._status.items()
        }

    # Range (24h low/high) bookkeeping

    def ranges_due(self, symbols: Iterable[str]) -> List[str]:
        now = self._clock.now()
        due = []
        for sym in symbols:
            fetched = self._ranges_fetched_at.get(sym)
            if fetched is None or now - fetched >= self._range_ttl_s:
                due.append(sym)
        return due

    def mark_ranges(self, symbols: Iterable[str]) -> None:
        now = self._clock.now()
        for sym in symbols:
            self._ranges_fetched_at[sym] = now

    def forget(self, symbol: str) -> None:
        self._ranges_fetched_at.pop(symbol, None)
