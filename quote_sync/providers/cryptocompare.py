"""
CryptoCompare provider (Provider B).

Uses the CryptoCompare min-api (API key optional):
  GET /data/pricemultifull       quotes with 24h change and low/high in one call
  GET /data/coin/generalinfo     name and icon per symbol
  GET /data/all/coinlist         full coin list, filtered client-side for search
CryptoCompare is keyed by ticker, so provider refs are ignored.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config import currencies as config_currencies
from .base import CurrencyQuote, MalformedResponse, Metadata, Quote, RateLimited, to_float
from .http import HTTP_TIMEOUT_S, get_json

logger = logging.getLogger(__name__)

CRYPTOCOMPARE_BASE_URL = "https://min-api.cryptocompare.com"
CRYPTOCOMPARE_MEDIA_URL = "https://www.cryptocompare.com"
SEARCH_LIMIT = 25


class CryptoCompareProvider:
    """Fetch quotes and metadata from the CryptoCompare min-api."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        currencies: Optional[List[str]] = None,
        base_url: str = CRYPTOCOMPARE_BASE_URL,
        timeout: float = HTTP_TIMEOUT_S,
    ) -> None:
        self._api_key = api_key
        self._currencies = [c.lower() for c in (currencies or config_currencies())]
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return "cryptocompare"

    def _get(self, path: str, params: Dict[str, Any]) -> Any:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["authorization"] = f"Apikey {self._api_key}"
        data = get_json(
            f"{self._base_url}{path}",
            self.provider_name,
            params=params,
            headers=headers,
            timeout=self._timeout,
        )
        # Errors arrive with HTTP 200 and Response=Error.
        if isinstance(data, dict) and data.get("Response") == "Error":
            message = str(data.get("Message") or "unknown error")
            if "rate limit" in message.lower():
                raise RateLimited(f"CryptoCompare: {message}", self.provider_name)
            raise MalformedResponse(f"CryptoCompare error: {message}", self.provider_name)
        return data

    def _map_raw(self, symbol: str, record: Any) -> Optional[Quote]:
        if not isinstance(record, dict):
            return None
        prices: Dict[str, CurrencyQuote] = {}
        for cur in self._currencies:
            row = record.get(cur.upper())
            if not isinstance(row, dict):
                continue
            price = to_float(row.get("PRICE"))
            if price is None or price <= 0:
                continue
            prices[cur] = CurrencyQuote(
                price=price,
                change_24h=to_float(row.get("CHANGEPCT24HOUR")),
                low_24h=to_float(row.get("LOW24HOUR")),
                high_24h=to_float(row.get("HIGH24HOUR")),
            )
        if not prices:
            return None
        return Quote(symbol=symbol, prices=prices, provider_name=self.provider_name)

    def fetch_quotes(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        wanted = [s.upper() for s in symbols]
        if not wanted:
            return {}
        data = self._get(
            "/data/pricemultifull",
            {"fsyms": ",".join(wanted), "tsyms": ",".join(c.upper() for c in self._currencies)},
        )
        raw = data.get("RAW") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            raise MalformedResponse("CryptoCompare pricemultifull missing RAW", self.provider_name)

        out: Dict[str, Quote] = {}
        for sym in wanted:
            quote = self._map_raw(sym, raw.get(sym))
            if quote is not None:
                out[sym] = quote
        logger.debug("CryptoCompare pricemultifull: %d/%d symbols", len(out), len(wanted))
        return out

    def fetch_ranges(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Quote]:
        # pricemultifull already carries LOW24HOUR/HIGH24HOUR.
        return self.fetch_quotes(symbols, refs)

    def fetch_metadata(self, symbols: Sequence[str], refs: Mapping[str, str]) -> Dict[str, Metadata]:
        wanted = [s.upper() for s in symbols]
        if not wanted:
            return {}
        data = self._get(
            "/data/coin/generalinfo",
            {"fsyms": ",".join(wanted), "tsym": self._currencies[0].upper()},
        )
        rows = data.get("Data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise MalformedResponse("CryptoCompare generalinfo missing Data", self.provider_name)

        out: Dict[str, Metadata] = {}
        for row in rows:
            info = row.get("CoinInfo") if isinstance(row, dict) else None
            if not isinstance(info, dict) or not info.get("Name"):
                continue
            sym = str(info["Name"]).upper()
            if sym not in wanted:
                continue
            image = info.get("ImageUrl")
            out[sym] = Metadata(
                symbol=sym,
                display_name=str(info.get("FullName") or sym),
                icon_ref=f"{CRYPTOCOMPARE_MEDIA_URL}{image}" if image else None,
                market_rank=None,
                provider_ref=refs.get(sym),
            )
        return out

    def search(self, query: str) -> List[Metadata]:
        needle = query.strip().lower()
        if not needle:
            return []
        data = self._get("/data/all/coinlist", {"summary": "true"})
        coins = data.get("Data") if isinstance(data, dict) else None
        if not isinstance(coins, dict):
            raise MalformedResponse("CryptoCompare coinlist missing Data", self.provider_name)

        results: List[Metadata] = []
        for sym, info in coins.items():
            if not isinstance(info, dict):
                continue
            name = str(info.get("FullName") or sym)
            if needle not in str(sym).lower() and needle not in name.lower():
                continue
            image = info.get("ImageUrl")
            results.append(
                Metadata(
                    symbol=str(sym).upper(),
                    display_name=name,
                    icon_ref=f"{CRYPTOCOMPARE_MEDIA_URL}{image}" if image else None,
                )
            )
        # Exact ticker matches first, then shorter names.
        results.sort(key=lambda m: (m.symbol.lower() != needle, len(m.display_name)))
        return results[:SEARCH_LIMIT]
