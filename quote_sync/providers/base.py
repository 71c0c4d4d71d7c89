"""
Provider interfaces and data contracts.

Every upstream source implements the QuoteProvider protocol and returns the
canonical shapes defined here:
- Quote: per-currency price, 24h change and 24h low/high for one symbol.
- Metadata: display name, icon and market rank for one symbol.

Upstream failures are raised as ProviderError subclasses so the dispatch
pipeline can decide between retry, backoff and failover in one place.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable


class ErrorKind(enum.Enum):
    """Failure taxonomy shared by all adapters."""

    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    AUTH_DENIED = "AUTH_DENIED"
    MALFORMED = "MALFORMED"
    UNKNOWN = "UNKNOWN"


class ProviderError(Exception):
    """Base class for classified provider failures."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, provider_name: str = "") -> None:
        super().__init__(message)
        self.provider_name = provider_name


class RateLimited(ProviderError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, provider_name: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(message, provider_name)
        self.retry_after = retry_after


class ProviderTimeout(ProviderError):
    kind = ErrorKind.TIMEOUT


class AuthDenied(ProviderError):
    kind = ErrorKind.AUTH_DENIED


class MalformedResponse(ProviderError):
    kind = ErrorKind.MALFORMED


class UnknownProviderError(ProviderError):
    kind = ErrorKind.UNKNOWN


@dataclass(frozen=True)
class CurrencyQuote:
    """Price data for one symbol in one fiat currency."""

    price: float
    change_24h: Optional[float] = None
    low_24h: Optional[float] = None
    high_24h: Optional[float] = None

    def has_range(self) -> bool:
        return self.low_24h is not None and self.high_24h is not None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "price": self.price,
            "change24h": self.change_24h,
            "low24h": self.low_24h,
            "high24h": self.high_24h,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CurrencyQuote":
        if not isinstance(data, Mapping):
            raise ValueError(f"currency quote payload must be an object, got {type(data).__name__}")
        return cls(
            price=float(data["price"]),
            change_24h=to_float(data.get("change24h")),
            low_24h=to_float(data.get("low24h")),
            high_24h=to_float(data.get("high24h")),
        )


@dataclass(frozen=True)
class Quote:
    """Immutable quote for one symbol across currencies."""

    symbol: str
    prices: Dict[str, CurrencyQuote]
    provider_name: str = ""

    def get(self, currency: str) -> Optional[CurrencyQuote]:
        return self.prices.get(currency.lower())

    def is_valid(self) -> bool:
        return bool(self.prices) and all(cq.price > 0 for cq in self.prices.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "provider": self.provider_name,
            "prices": {cur: cq.to_dict() for cur, cq in self.prices.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Quote":
        if not isinstance(data, Mapping):
            raise ValueError(f"quote payload must be an object, got {type(data).__name__}")
        prices = data.get("prices")
        if not isinstance(prices, dict):
            raise ValueError("quote payload missing prices")
        return cls(
            symbol=str(data["symbol"]).upper(),
            prices={str(cur).lower(): CurrencyQuote.from_dict(v) for cur, v in prices.items()},
            provider_name=str(data.get("provider") or ""),
        )


@dataclass(frozen=True)
class Metadata:
    """Descriptive data for one symbol; refreshed far less often than quotes."""

    symbol: str
    display_name: str
    icon_ref: Optional[str] = None
    market_rank: Optional[int] = None
    provider_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "displayName": self.display_name,
            "iconRef": self.icon_ref,
            "marketRank": self.market_rank,
            "providerRef": self.provider_ref,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Metadata":
        if not isinstance(data, Mapping):
            raise ValueError(f"metadata payload must be an object, got {type(data).__name__}")
        rank = data.get("marketRank")
        return cls(
            symbol=str(data["symbol"]).upper(),
            display_name=str(data.get("displayName") or data["symbol"]),
            icon_ref=data.get("iconRef"),
            market_rank=int(rank) if rank is not None else None,
            provider_ref=data.get("providerRef"),
        )


class ProviderState(enum.Enum):
    """Failover state of a provider. There is no terminal state."""

    AVAILABLE = "AVAILABLE"
    COOLING = "COOLING"


@dataclass
class ProviderStatus:
    """Mutable health state for a single provider instance."""

    provider_name: str
    cooldown_until: Optional[float] = None
    consecutive_errors: int = 0
    consecutive_cooldowns: int = 0
    last_error: Optional[str] = None
    last_ok_at: Optional[float] = None

    def available(self, now: float) -> bool:
        return self.cooldown_until is None or now >= self.cooldown_until

    def state(self, now: float) -> ProviderState:
        return ProviderState.AVAILABLE if self.available(now) else ProviderState.COOLING

    def record_success(self, now: float) -> None:
        self.consecutive_errors = 0
        self.consecutive_cooldowns = 0
        self.last_ok_at = now
        self.last_error = None
        self.cooldown_until = None

    def record_failure(self, error: str) -> None:
        self.consecutive_errors += 1
        self.last_error = error[:500]


@runtime_checkable
class QuoteProvider(Protocol):
    """Protocol for quote/metadata providers. Adapters never retry internally."""

    @property
    def provider_name(self) -> str: ...

    def fetch_quotes(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        """Basic quotes for the given symbols. Symbols the upstream lacks are omitted."""
        ...

    def fetch_ranges(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        """Quotes including 24h low/high, from the heavier endpoint."""
        ...

    def fetch_metadata(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Metadata]:
        ...

    def search(self, query: str) -> List[Metadata]:
        ...


@dataclass
class Selection:
    """Outcome of a provider selection by the failover coordinator."""

    provider_name: str
    available: bool
    retry_in: float = 0.0


def to_float(x: Any) -> Optional[float]:
    if x is None:
        return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None
