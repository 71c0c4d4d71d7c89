"""
Single source for "now" time. Engine components take a Clock so tests can
drive time deterministically; QUOTE_SYNC_DETERMINISTIC_TIME pins the ISO
timestamps used in log lines and health records.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time as epoch seconds."""
        ...


class SystemClock:
    """Wall clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


def now_utc_iso() -> str:
    """
    Return current UTC time in ISO format (seconds).
    If env QUOTE_SYNC_DETERMINISTIC_TIME is set, return that value instead.
    """
    fixed = os.environ.get("QUOTE_SYNC_DETERMINISTIC_TIME", "").strip()
    if fixed:
        return fixed if fixed.endswith("Z") or "+" in fixed else f"{fixed}Z"
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def epoch_to_iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="seconds")
