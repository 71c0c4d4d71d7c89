"""
Shared HTTP plumbing for adapters: one GET helper and the mapping from
status codes / requests exceptions onto the provider error taxonomy.
"""
from __future__ import annotations

import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import requests

from .base import (
    AuthDenied,
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
    RateLimited,
    UnknownProviderError,
)

HTTP_TIMEOUT_S = 15.0


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def classify_response(resp: requests.Response, provider_name: str) -> Optional[ProviderError]:
    """Return the classified error for a non-2xx response, or None when the status is OK."""
    code = resp.status_code
    if code < 400:
        return None
    if code == 429:
        retry_after = parse_retry_after(resp.headers.get("Retry-After"))
        return RateLimited(f"{provider_name} rate limit (HTTP 429)", provider_name, retry_after=retry_after)
    if code in (401, 403):
        return AuthDenied(f"{provider_name} access denied (HTTP {code})", provider_name)
    if code in (408, 504):
        return ProviderTimeout(f"{provider_name} upstream timeout (HTTP {code})", provider_name)
    return UnknownProviderError(f"{provider_name} HTTP {code}", provider_name)


def classify_exception(exc: BaseException, provider_name: str) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError)):
        return ProviderTimeout(f"{provider_name}: {type(exc).__name__}: {exc}", provider_name)
    if isinstance(exc, ValueError):
        return MalformedResponse(f"{provider_name}: {type(exc).__name__}: {exc}", provider_name)
    return UnknownProviderError(f"{provider_name}: {type(exc).__name__}: {exc}", provider_name)


def get_json(
    url: str,
    provider_name: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = HTTP_TIMEOUT_S,
) -> Any:
    """GET url and decode JSON, raising a classified ProviderError on any failure."""
    try:
        resp = requests.get(url, params=params, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise classify_exception(exc, provider_name) from exc

    err = classify_response(resp, provider_name)
    if err is not None:
        raise err

    try:
        return resp.json()
    except ValueError as exc:
        raise MalformedResponse(f"{provider_name} returned non-JSON body", provider_name) from exc
