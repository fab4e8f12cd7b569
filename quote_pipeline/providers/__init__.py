"""
Quote providers and the machinery around them.

Adapters live in providers.feeds; the resolver in providers.chain chains
them with caching, rate limiting, retries and per-provider circuits.
"""
from __future__ import annotations

from .base import DataSource, ProviderHealth, ProviderStatus, Quote, QuoteProvider, SymbolResult
from .cache import CacheEntry, CacheStats, ExpiringCache
from .chain import ProviderPolicy, QuoteResolver, ResolverConfig, ResolverStatus
from .rate_limit import FixedWindowRateLimiter
from .registry import ProviderRegistry
from .resilience import ProviderCircuit, RetryConfig, retry_call

__all__ = [
    "CacheEntry",
    "CacheStats",
    "DataSource",
    "ExpiringCache",
    "FixedWindowRateLimiter",
    "ProviderCircuit",
    "ProviderHealth",
    "ProviderPolicy",
    "ProviderRegistry",
    "ProviderStatus",
    "Quote",
    "QuoteProvider",
    "QuoteResolver",
    "ResolverConfig",
    "ResolverStatus",
    "RetryConfig",
    "SymbolResult",
    "retry_call",
]
