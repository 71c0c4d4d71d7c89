"""Fake providers, clock and scheduler for engine tests (no live network)."""

from .providers import (
    DEFAULT_PRICES,
    FakeClock,
    FakeCrashingProvider,
    FakeProviderAlwaysFail,
    FakeProviderFailNThenSucceed,
    FakeQuoteProvider,
    FakeRateLimitedProvider,
    ManualScheduler,
)

__all__ = [
    "DEFAULT_PRICES",
    "FakeClock",
    "FakeCrashingProvider",
    "FakeProviderAlwaysFail",
    "FakeProviderFailNThenSucceed",
    "FakeQuoteProvider",
    "FakeRateLimitedProvider",
    "ManualScheduler",
]
