"""
Provider registry: central catalog of available quote providers.

Providers register themselves here. The registry is config-driven: the
`providers.priority` list in config.yaml determines which providers are
tried in what order.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .base import QuoteProvider

logger = logging.getLogger(__name__)

ProviderFactory = Union[Callable[[], QuoteProvider], QuoteProvider]


class ProviderRegistry:
    """
    Registry mapping provider names to factories or instances.

    Usage:
        registry = ProviderRegistry()
        registry.register("coingecko", CoinGeckoProvider)
        registry.register("cryptocompare", CryptoCompareProvider)

        providers = registry.build(["coingecko", "cryptocompare"])
    """

    def __init__(self) -> None:
        self._factories: Dict[str, Any] = {}
        self._instances: Dict[str, QuoteProvider] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a provider class, zero-argument factory or ready instance by name."""
        self._factories[name] = factory
        self._instances.pop(name, None)
        logger.debug("Registered quote provider: %s", name)

    def get(self, name: str) -> QuoteProvider:
        """Get or instantiate a provider by name."""
        if name not in self._instances:
            factory = self._factories.get(name)
            if factory is None:
                raise KeyError(
                    f"Unknown quote provider '{name}'. "
                    f"Available: {list(self._factories)}"
                )
            if isinstance(factory, type) or not isinstance(factory, QuoteProvider):
                self._instances[name] = factory()
            else:
                self._instances[name] = factory
        return self._instances[name]

    @property
    def names(self) -> List[str]:
        return list(self._factories)

    def build(self, priority: Optional[List[str]] = None) -> Dict[str, QuoteProvider]:
        """Instantiate providers in priority order, skipping unknown names."""
        names = priority or list(self._factories)
        unknown = [n for n in names if n not in self._factories]
        if unknown:
            logger.warning("Ignoring unregistered providers in priority list: %s", unknown)
        return {n: self.get(n) for n in names if n in self._factories}
