"""
Resilience primitives: retry backoff schedule and provider cooldown policy.

Adapters never retry on their own; the dispatch pipeline consults these to
decide when a batch runs again and how long a failing provider sits out.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class RetryConfig:
    """Configuration for batch retry with exponential backoff."""
    max_retries: int = 3
    base_delay_s: float = 3.0
    max_delay_s: float = 60.0
    backoff_factor: float = 2.0
    auth_retry_s: float = 60.0

    @classmethod
    def from_config(cls, dispatch: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_retries=int(dispatch.get("max_retries", 3)),
            base_delay_s=float(dispatch.get("base_backoff_s", 3.0)),
            max_delay_s=float(dispatch.get("max_backoff_s", 60.0)),
            auth_retry_s=float(dispatch.get("auth_retry_s", 60.0)),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base, 2*base, 4*base, ... capped."""
        attempt = max(1, attempt)
        return min(
            self.base_delay_s * (self.backoff_factor ** (attempt - 1)),
            self.max_delay_s,
        )


@dataclass
class ProviderLimits:
    """Per-provider quota and cooldown settings."""
    calls_per_minute: int = 30
    min_interval_s: float = 0.6
    cooldown_s: float = 20.0
    max_cooldown_s: float = 300.0
    error_threshold: int = 3

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "ProviderLimits":
        return cls(
            calls_per_minute=int(section.get("calls_per_minute", 30)),
            min_interval_s=float(section.get("min_interval_s", 0.6)),
            cooldown_s=float(section.get("cooldown_s", 20.0)),
            max_cooldown_s=float(section.get("max_cooldown_s", 300.0)),
            error_threshold=int(section.get("error_threshold", 3)),
        )

    def cooldown_for(self, consecutive_cooldowns: int, hint: Optional[float] = None) -> float:
        """
        Cooldown window for the n-th consecutive cooldown (1-based).

        An explicit Retry-After hint wins. Otherwise the window doubles per
        consecutive cooldown, capped at max_cooldown_s.
        """
        if hint is not None and hint > 0:
            return float(hint)
        n = max(1, consecutive_cooldowns)
        return min(self.cooldown_s * (2 ** (n - 1)), self.max_cooldown_s)
