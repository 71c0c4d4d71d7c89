"""
Shared exception types for quote_sync.
Stable surface; extend only.
"""

from __future__ import annotations


class QuoteSyncError(Exception):
    """Base exception for quote_sync; catch this for any package-raised error."""

    pass


class ConfigError(QuoteSyncError):
    """Raised when config.yaml or a settings value cannot be used."""

    pass


__all__ = ["QuoteSyncError", "ConfigError"]
