"""
Default provider registry configuration.

Registers built-in providers and builds a ready engine from config.yaml
settings. To add a new provider, register it here and add it to
`providers.priority`.
"""
from __future__ import annotations

import functools
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..config import _DEFAULTS, get_config
from ..db.health import ProviderHealthStore
from ..db.tokens import TokenStore
from ..engine import QuoteSyncEngine, SyncSettings
from ..errors import ConfigError
from ..store.sqlite_backend import SqliteBackingStore
from ..store.sqlite_session import open_db
from ..sync.scheduler import AsyncioScheduler, Scheduler
from .coingecko import CoinGeckoProvider
from .cryptocompare import CryptoCompareProvider
from .http import HTTP_TIMEOUT_S
from .registry import ProviderRegistry
from .resilience import ProviderLimits, RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = ["coingecko", "cryptocompare"]


def _api_key(cfg: Dict[str, Any], name: str) -> Optional[str]:
    section = (cfg.get("providers") or {}).get(name)
    key = section.get("api_key") if isinstance(section, dict) else None
    return str(key) if key else None


def _currencies(cfg: Dict[str, Any]) -> List[str]:
    return [str(c).lower() for c in cfg.get("currencies") or _DEFAULTS["currencies"]]


def _http_timeout(cfg: Dict[str, Any]) -> float:
    """Socket timeout for adapter requests, never longer than the dispatch call timeout."""
    call_timeout = (cfg.get("dispatch") or {}).get("call_timeout_s")
    return min(HTTP_TIMEOUT_S, float(call_timeout)) if call_timeout else HTTP_TIMEOUT_S


def create_default_registry(cfg: Optional[Dict[str, Any]] = None) -> ProviderRegistry:
    """Create a registry with all built-in providers, keyed and configured from cfg."""
    cfg = cfg if cfg is not None else get_config()
    currencies = _currencies(cfg)
    timeout = _http_timeout(cfg)
    registry = ProviderRegistry()
    registry.register(
        "coingecko",
        functools.partial(
            CoinGeckoProvider, api_key=_api_key(cfg, "coingecko"), currencies=currencies, timeout=timeout
        ),
    )
    registry.register(
        "cryptocompare",
        functools.partial(
            CryptoCompareProvider, api_key=_api_key(cfg, "cryptocompare"), currencies=currencies, timeout=timeout
        ),
    )
    return registry


def load_provider_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Provider priority and per-provider limits from config.

    Expected YAML structure:
        providers:
          priority: ["coingecko", "cryptocompare"]
          coingecko:
            calls_per_minute: 30
            min_interval_s: 0.6
    """
    cfg = cfg if cfg is not None else get_config()
    providers = cfg.get("providers") or {}
    priority = list(providers.get("priority") or DEFAULT_PRIORITY)
    limits = {}
    for name in priority:
        section = providers.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"providers.{name} must be a mapping, got {type(section).__name__}")
        limits[name] = ProviderLimits.from_config(section)
    return {"priority": priority, "limits": limits}


def create_engine(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    conn: Optional[sqlite3.Connection] = None,
    registry: Optional[ProviderRegistry] = None,
    scheduler: Optional[Scheduler] = None,
) -> QuoteSyncEngine:
    """
    Build a QuoteSyncEngine wired to SQLite persistence and the default providers.

    The connection is opened from `db.path` when not given; the caller owns
    closing it.
    """
    cfg = cfg if cfg is not None else get_config()
    reg = registry or create_default_registry(cfg)
    pcfg = load_provider_config(cfg)
    providers = reg.build(pcfg["priority"])
    priority = [n for n in pcfg["priority"] if n in providers]
    if not priority:
        raise ValueError(f"No registered providers in priority list {pcfg['priority']}")

    if conn is None:
        conn = open_db(cfg["db"]["path"])
    default_tokens = {
        str(sym).upper(): str(ref).lower() for sym, ref in (cfg.get("default_tokens") or {}).items()
    }
    logger.info("Creating engine: providers=%s, %d default tokens", priority, len(default_tokens))
    return QuoteSyncEngine(
        providers,
        scheduler or AsyncioScheduler(),
        SqliteBackingStore(conn),
        TokenStore(conn),
        priority=priority,
        limits=pcfg["limits"],
        default_tokens=default_tokens,
        settings=SyncSettings.from_config(cfg),
        retry_config=RetryConfig.from_config(cfg.get("dispatch") or {}),
        health_store=ProviderHealthStore(conn),
    )
