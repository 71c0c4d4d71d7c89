"""
CoinGecko provider (Provider A).

Uses the public CoinGecko v3 API (demo key optional):
  GET /simple/price      basic quotes, all currencies, 24h change
  GET /coins/markets     heavier endpoint: 24h low/high, name, image, rank
  GET /search            free-text search
CoinGecko addresses coins by id ("bitcoin"), so every call needs the
symbol -> provider ref map.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config import currencies as config_currencies
from .base import CurrencyQuote, MalformedResponse, Metadata, Quote, to_float
from .http import HTTP_TIMEOUT_S, get_json

logger = logging.getLogger(__name__)

COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"


def _ref_index(symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, str]:
    """ref -> symbol for the symbols that have a ref."""
    out: Dict[str, str] = {}
    for sym in symbols:
        ref = refs.get(sym)
        if ref:
            out[ref.lower()] = sym
    return out


class CoinGeckoProvider:
    """Fetch quotes and metadata from the CoinGecko public API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        currencies: Optional[List[str]] = None,
        base_url: str = COINGECKO_BASE_URL,
        timeout: float = HTTP_TIMEOUT_S,
    ) -> None:
        self._api_key = api_key
        self._currencies = [c.lower() for c in (currencies or config_currencies())]
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return "coingecko"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-cg-demo-api-key"] = self._api_key
        return headers

    def _get(self, path: str, params: Dict[str, Any]) -> Any:
        return get_json(
            f"{self._base_url}{path}",
            self.provider_name,
            params=params,
            headers=self._headers(),
            timeout=self._timeout,
        )

    def _map_simple_price(self, symbol: str, record: Any) -> Optional[Quote]:
        if not isinstance(record, dict):
            return None
        prices: Dict[str, CurrencyQuote] = {}
        for cur in self._currencies:
            price = to_float(record.get(cur))
            if price is None or price <= 0:
                continue
            prices[cur] = CurrencyQuote(price=price, change_24h=to_float(record.get(f"{cur}_24h_change")))
        if not prices:
            return None
        return Quote(symbol=symbol, prices=prices, provider_name=self.provider_name)

    def fetch_quotes(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        by_ref = _ref_index(symbols, refs)
        if not by_ref:
            return {}
        data = self._get(
            "/simple/price",
            {
                "ids": ",".join(by_ref),
                "vs_currencies": ",".join(self._currencies),
                "include_24hr_change": "true",
                "precision": "full",
            },
        )
        if not isinstance(data, dict):
            raise MalformedResponse(
                f"CoinGecko /simple/price returned {type(data).__name__}", self.provider_name
            )

        out: Dict[str, Quote] = {}
        for ref, record in data.items():
            sym = by_ref.get(str(ref).lower())
            if sym is None:
                continue
            quote = self._map_simple_price(sym, record)
            if quote is not None:
                out[sym] = quote
        logger.debug("CoinGecko simple/price: %d/%d symbols", len(out), len(by_ref))
        return out

    def _markets(self, by_ref: Dict[str, str]) -> List[Dict[str, Any]]:
        data = self._get(
            "/coins/markets",
            {
                "vs_currency": self._currencies[0],
                "ids": ",".join(by_ref),
                "per_page": len(by_ref),
                "page": 1,
                "sparkline": "false",
                "price_change_percentage": "24h",
            },
        )
        if not isinstance(data, list):
            raise MalformedResponse(
                f"CoinGecko /coins/markets returned {type(data).__name__}", self.provider_name
            )
        return [row for row in data if isinstance(row, dict) and row.get("id")]

    def fetch_ranges(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        by_ref = _ref_index(symbols, refs)
        if not by_ref:
            return {}
        cur = self._currencies[0]
        out: Dict[str, Quote] = {}
        for row in self._markets(by_ref):
            sym = by_ref.get(str(row["id"]).lower())
            price = to_float(row.get("current_price"))
            if sym is None or price is None or price <= 0:
                continue
            out[sym] = Quote(
                symbol=sym,
                prices={
                    cur: CurrencyQuote(
                        price=price,
                        change_24h=to_float(row.get("price_change_percentage_24h")),
                        low_24h=to_float(row.get("low_24h")),
                        high_24h=to_float(row.get("high_24h")),
                    )
                },
                provider_name=self.provider_name,
            )
        return out

    def fetch_metadata(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Metadata]:
        by_ref = _ref_index(symbols, refs)
        if not by_ref:
            return {}
        out: Dict[str, Metadata] = {}
        for row in self._markets(by_ref):
            ref = str(row["id"]).lower()
            sym = by_ref.get(ref)
            if sym is None:
                continue
            rank = row.get("market_cap_rank")
            out[sym] = Metadata(
                symbol=sym,
                display_name=str(row.get("name") or sym),
                icon_ref=row.get("image"),
                market_rank=int(rank) if isinstance(rank, (int, float)) else None,
                provider_ref=ref,
            )
        return out

    def search(self, query: str) -> List[Metadata]:
        if not query.strip():
            return []
        data = self._get("/search", {"query": query.strip()})
        coins = data.get("coins") if isinstance(data, dict) else None
        if not isinstance(coins, list):
            raise MalformedResponse("CoinGecko /search missing coins list", self.provider_name)
        results: List[Metadata] = []
        for coin in coins:
            if not isinstance(coin, dict) or not coin.get("symbol") or not coin.get("id"):
                continue
            rank = coin.get("market_cap_rank")
            results.append(
                Metadata(
                    symbol=str(coin["symbol"]).upper(),
                    display_name=str(coin.get("name") or coin["symbol"]),
                    icon_ref=coin.get("large") or coin.get("thumb"),
                    market_rank=int(rank) if isinstance(rank, (int, float)) else None,
                    provider_ref=str(coin["id"]).lower(),
                )
            )
        return results
