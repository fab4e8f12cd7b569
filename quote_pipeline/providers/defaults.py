"""
Default provider registry configuration.

Registers built-in providers and builds a resolver from config.yaml
settings. To add a new provider, register it here and add it to the
priority lists.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..config import cache_max_entries, get_config, provider_settings, quote_priority, search_priority
from ..core.clock import Clock, SystemClock
from ..events import EventBus
from .cache import ExpiringCache
from .chain import ProviderPolicy, QuoteResolver, ResolverConfig
from .feeds.alphavantage import ALPHAVANTAGE_BASE_URL, AlphaVantageProvider
from .feeds.yahoo import YAHOO_BASE_URL, YahooFinanceProvider
from .rate_limit import FixedWindowRateLimiter
from .registry import ProviderRegistry
from .resilience import RetryConfig

logger = logging.getLogger(__name__)


def create_default_registry(
    cfg: Optional[Dict[str, Any]] = None,
    clock: Optional[Clock] = None,
) -> ProviderRegistry:
    """Create a registry with all built-in providers."""
    cfg = cfg or get_config()
    yahoo = provider_settings("yahoo", cfg)
    av = provider_settings("alphavantage", cfg)

    registry = ProviderRegistry()
    registry.register(
        "yahoo",
        lambda: YahooFinanceProvider(base_url=yahoo.get("base_url") or YAHOO_BASE_URL, clock=clock),
    )
    registry.register(
        "alphavantage",
        lambda: AlphaVantageProvider(
            str(av.get("api_key") or ""),
            base_url=av.get("base_url") or ALPHAVANTAGE_BASE_URL,
            clock=clock,
        ),
    )
    return registry


def configure_rate_limits(
    limiter: FixedWindowRateLimiter,
    names: List[str],
    cfg: Dict[str, Any],
) -> None:
    """Apply each provider's `rate_limit` block; providers without one stay unlimited."""
    for name in names:
        rl = provider_settings(name, cfg).get("rate_limit")
        if not isinstance(rl, dict) or not rl.get("calls"):
            continue
        limiter.configure(name, int(rl["calls"]), float(rl.get("window_s", 60)))
        logger.debug("Rate limit for %s: %s calls per %ss", name, rl["calls"], rl.get("window_s", 60))


def _policies(names: List[str], cfg: Dict[str, Any]) -> Dict[str, ProviderPolicy]:
    out: Dict[str, ProviderPolicy] = {}
    for index, name in enumerate(names):
        settings = provider_settings(name, cfg)
        fallback = ProviderPolicy() if index == 0 else ProviderPolicy(cache_ttl_s=600.0, timeout_multiplier=1.5)
        out[name] = ProviderPolicy(
            cache_ttl_s=float(settings.get("cache_ttl_s", fallback.cache_ttl_s)),
            timeout_multiplier=float(settings.get("timeout_multiplier", fallback.timeout_multiplier)),
        )
    return out


def create_quote_resolver(
    registry: Optional[ProviderRegistry] = None,
    cfg: Optional[Dict[str, Any]] = None,
    *,
    clock: Optional[Clock] = None,
    events: Optional[EventBus] = None,
) -> QuoteResolver:
    """Build a quote resolver with rate limits, retries and circuits from config."""
    cfg = cfg or get_config()
    clk = clock or SystemClock()
    reg = registry or create_default_registry(cfg, clk)

    providers = reg.build_chain(quote_priority(cfg))
    searchers = reg.build_chain(search_priority(cfg))
    if not providers:
        raise ValueError(f"No known quote providers in priority list {quote_priority(cfg)}")

    names = list(dict.fromkeys(p.provider_name for p in providers + searchers))
    limiter = FixedWindowRateLimiter(clock=clk)
    configure_rate_limits(limiter, names, cfg)

    r = cfg.get("resolver", {})
    retry = cfg.get("retry", {})
    return QuoteResolver(
        providers,
        search_providers=searchers,
        policies=_policies([p.provider_name for p in providers], cfg),
        cache=ExpiringCache(max_entries=cache_max_entries(cfg), clock=clk),
        rate_limiter=limiter,
        retry_config=RetryConfig(
            max_retries=int(retry.get("max_retries", 3)),
            base_delay_s=float(retry.get("base_delay_s", 0.5)),
            max_delay_s=float(retry.get("max_delay_s", 10.0)),
            backoff_factor=float(retry.get("backoff_factor", 2.0)),
        ),
        config=ResolverConfig(
            default_timeout_s=float(r.get("default_timeout_s", 10.0)),
            disable_cooldown_s=float(r.get("disable_cooldown_s", 600)),
            failure_threshold=int(r.get("failure_threshold", 3)),
            breaker_cooldown_s=float(r.get("breaker_cooldown_s", 60)),
            search_cache_ttl_s=float(r.get("search_cache_ttl_s", 3600)),
            dedupe_inflight=bool(r.get("dedupe_inflight", False)),
            max_workers=int(r.get("max_workers", 8)),
        ),
        clock=clk,
        events=events,
    )
