"""
Provider layer for quote synchronization.

Adapters for upstream HTTP APIs normalize responses into canonical Quote and
Metadata records and classify failures. Rate limiting and failover live
beside them so the dispatch pipeline can select, gate and demote providers
from one place.
"""

from __future__ import annotations

from .base import (
    AuthDenied,
    CurrencyQuote,
    ErrorKind,
    MalformedResponse,
    Metadata,
    ProviderError,
    ProviderState,
    ProviderStatus,
    ProviderTimeout,
    Quote,
    QuoteProvider,
    RateLimited,
    Selection,
    UnknownProviderError,
)
from .coingecko import CoinGeckoProvider
from .cryptocompare import CryptoCompareProvider
from .failover import FailoverCoordinator
from .ratelimit import RateLimiter
from .registry import ProviderRegistry
from .resilience import ProviderLimits, RetryConfig

__all__ = [
    "AuthDenied",
    "CurrencyQuote",
    "ErrorKind",
    "MalformedResponse",
    "Metadata",
    "ProviderError",
    "ProviderState",
    "ProviderStatus",
    "ProviderTimeout",
    "Quote",
    "QuoteProvider",
    "RateLimited",
    "Selection",
    "UnknownProviderError",
    "CoinGeckoProvider",
    "CryptoCompareProvider",
    "FailoverCoordinator",
    "RateLimiter",
    "ProviderRegistry",
    "ProviderLimits",
    "RetryConfig",
]
