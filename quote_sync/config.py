"""
Load config from config.yaml with optional env overrides.
Single source of truth for cache TTLs, queue windows, retry policy, provider limits and tokens.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import List

import yaml

from .errors import ConfigError

# Defaults if no YAML or env
_DEFAULTS = {
    "db": {"path": "quote_sync.sqlite"},
    "cache": {
        "quote_ttl_s": 600.0,
        "metadata_ttl_s": 14 * 24 * 3600.0,
        "range_ttl_s": 1800.0,
        "stale_fraction": 0.8,
        "recent_data_s": 60.0,
    },
    "queue": {
        "max_batch_size": 50,
        "high_priority_window_s": 0.1,
        "normal_window_s": 0.5,
    },
    "dispatch": {
        "max_retries": 3,
        "base_backoff_s": 3.0,
        "max_backoff_s": 60.0,
        "auth_retry_s": 60.0,
        "call_timeout_s": 15.0,
        "aux_wait_cap_s": 2.0,
        "metadata_session_limit": 2000,
        "auto_refresh_s": 600.0,
    },
    "providers": {
        "priority": ["coingecko", "cryptocompare"],
        "coingecko": {
            "calls_per_minute": 30,
            "min_interval_s": 0.6,
            "cooldown_s": 20.0,
            "max_cooldown_s": 300.0,
            "error_threshold": 3,
            "api_key": None,
        },
        "cryptocompare": {
            "calls_per_minute": 30,
            "min_interval_s": 0.5,
            "cooldown_s": 20.0,
            "max_cooldown_s": 300.0,
            "error_threshold": 3,
            "api_key": None,
        },
    },
    "currencies": ["usd", "eur", "cad"],
    "default_tokens": {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "SOL": "solana",
        "USDC": "usd-coin",
        "XRP": "ripple",
    },
}


def _config_yaml_path() -> Path:
    """Config.yaml lives at repo root (parent of package dir) unless QUOTE_SYNC_CONFIG points elsewhere."""
    override = os.environ.get("QUOTE_SYNC_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent / "config.yaml"


def _load_yaml() -> dict:
    config_path = _config_yaml_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _env_overrides() -> dict:
    overrides: dict = {}
    path = os.environ.get("QUOTE_SYNC_DB_PATH")
    if path:
        overrides.setdefault("db", {})["path"] = path
    cg_key = os.environ.get("COINGECKO_API_KEY")
    if cg_key:
        overrides.setdefault("providers", {}).setdefault("coingecko", {})["api_key"] = cg_key
    cc_key = os.environ.get("CRYPTOCOMPARE_API_KEY")
    if cc_key:
        overrides.setdefault("providers", {}).setdefault("cryptocompare", {})["api_key"] = cc_key
    return overrides


def get_config() -> dict:
    """Return merged config: defaults <- config.yaml <- env."""
    merged = _deep_merge(copy.deepcopy(_DEFAULTS), _load_yaml())
    merged = _deep_merge(merged, _env_overrides())
    return merged


def currencies() -> List[str]:
    return [str(c).lower() for c in get_config().get("currencies", _DEFAULTS["currencies"])]
