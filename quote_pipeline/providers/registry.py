"""
Provider registry: central catalog of available quote providers.

Providers register under a name. A priority list from config.yaml decides
which of them are tried, and in what order, for quotes and for search.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Type, Union

from .base import QuoteProvider

logger = logging.getLogger(__name__)

ProviderFactory = Union[Type[Any], Callable[[], QuoteProvider], QuoteProvider]


class ProviderRegistry:
    """
    Registry mapping provider names to classes, factories or instances.

    Usage:
        registry = ProviderRegistry()
        registry.register("yahoo", YahooFinanceProvider)
        registry.register("alphavantage", lambda: AlphaVantageProvider(api_key))

        providers = registry.build_chain(["yahoo", "alphavantage"])
    """

    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}
        self._instances: Dict[str, QuoteProvider] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a provider by name. Re-registering drops any cached instance."""
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
            if isinstance(factory, type) or not hasattr(factory, "fetch_quote"):
                self._instances[name] = factory()  # type: ignore[operator]
            else:
                self._instances[name] = factory  # type: ignore[assignment]
        return self._instances[name]

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    @property
    def names(self) -> List[str]:
        return list(self._factories)

    def build_chain(self, priority: Optional[List[str]] = None) -> List[QuoteProvider]:
        """Build an ordered provider list from a priority list; unknown names are skipped."""
        names = priority or list(self._factories)
        chain = []
        for n in names:
            if n not in self._factories:
                logger.warning("Ignoring unknown provider '%s' in priority list", n)
                continue
            chain.append(self.get(n))
        return chain
