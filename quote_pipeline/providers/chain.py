"""
Quote resolver: ordered provider failover with caching and circuit breaking.

A request walks CacheCheck -> provider 1 (primary) -> provider 2
(secondary) -> ... -> CacheFallback, and ends Resolved or Failed. Each
provider call goes through the rate limiter and the retry executor.
Providers reporting quota or credential problems are disabled for a
cool-down. If every live source fails, the last cached value is served
flagged as stale, so callers only ever see a quote or AllSourcesExhausted.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..core.clock import Clock, SystemClock
from ..core.context import CancelToken
from ..core.errors import (
    AllSourcesExhausted,
    InvalidRequest,
    ProviderError,
    QuotePipelineError,
    RequestCancelled,
    SymbolNotFound,
    root_cause,
)
from ..events import EventBus, QuotesUpdated
from .base import DataSource, ProviderHealth, Quote, QuoteProvider, SymbolResult, normalize_symbol
from .cache import ExpiringCache
from .rate_limit import FixedWindowRateLimiter
from .resilience import ProviderCircuit, RetryConfig, retry_call

logger = logging.getLogger(__name__)

PRIMARY_POLICY_DEFAULTS = {"cache_ttl_s": 300.0, "timeout_multiplier": 1.0}
SECONDARY_POLICY_DEFAULTS = {"cache_ttl_s": 600.0, "timeout_multiplier": 1.5}


@dataclass(frozen=True)
class ProviderPolicy:
    """How the resolver treats one provider: cache lifetime and timeout stretch."""

    cache_ttl_s: float = 300.0
    timeout_multiplier: float = 1.0


@dataclass(frozen=True)
class ResolverConfig:
    default_timeout_s: float = 10.0
    disable_cooldown_s: float = 600.0
    failure_threshold: int = 3
    breaker_cooldown_s: float = 60.0
    search_cache_ttl_s: float = 3600.0
    dedupe_inflight: bool = False
    max_workers: int = 8


@dataclass(frozen=True)
class ResolverStatus:
    """Outcome of the most recent request, overwritten on every call."""

    data_source: Optional[DataSource] = None
    refresh_time: Optional[datetime] = None
    error: Optional[QuotePipelineError] = None


def quote_cache_key(symbol: str) -> str:
    return f"quote:{symbol}"


def search_cache_key(query: str) -> str:
    return f"search:{query.lower()}"


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.abandoned = False


JoinCallback = Callable[[Any, Optional[BaseException]], None]


class InflightCalls:
    """
    Collapse concurrent calls with the same key onto one execution.

    Each caller supplies its own ``fn`` and ``cancel``. If the leading caller
    is cancelled, its flight is abandoned rather than shared, and a waiting
    caller takes over with its own ``fn``. ``on_join`` runs for callers that
    received another caller's outcome.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flights: Dict[str, _Flight] = {}

    def run(
        self,
        key: str,
        fn: Callable[[], Any],
        cancel: Optional[CancelToken] = None,
        on_join: Optional[JoinCallback] = None,
    ) -> Any:
        while True:
            with self._lock:
                flight = self._flights.get(key)
                leader = flight is None
                if flight is None:
                    flight = self._flights[key] = _Flight()

            if leader:
                return self._lead(key, flight, fn)

            while not flight.done.wait(0.05):
                if cancel is not None:
                    cancel.raise_if_cancelled()
            if flight.abandoned:
                continue
            if on_join is not None:
                on_join(flight.result, flight.error)
            if flight.error is not None:
                raise flight.error
            return flight.result

    def _lead(self, key: str, flight: _Flight, fn: Callable[[], Any]) -> Any:
        try:
            flight.result = fn()
            return flight.result
        except RequestCancelled as exc:
            if exc.deadline_exceeded:
                flight.error = exc
            else:
                # Only this caller gave up; waiters retry under their own token.
                flight.abandoned = True
            raise
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()


class QuoteResolver:
    """
    Resolves symbols to quotes across an ordered list of providers.

    The first provider is the primary feed, the second the secondary feed.
    Cache, rate limiter, clock and event bus are injected so tests can run
    against fakes without network or real sleeps.
    """

    def __init__(
        self,
        providers: Sequence[QuoteProvider],
        *,
        search_providers: Optional[Sequence[QuoteProvider]] = None,
        policies: Optional[Mapping[str, ProviderPolicy]] = None,
        cache: Optional[ExpiringCache] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        retry_config: Optional[RetryConfig] = None,
        config: Optional[ResolverConfig] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        if not providers:
            raise ValueError("QuoteResolver needs at least one provider")
        self._providers = list(providers)
        self._search_providers = list(search_providers) if search_providers is not None else list(providers)
        self._config = config or ResolverConfig()
        self._clock = clock or SystemClock()
        self._cache = cache or ExpiringCache(clock=self._clock)
        self._rate_limiter = rate_limiter or FixedWindowRateLimiter(clock=self._clock)
        self._retry_config = retry_config or RetryConfig()
        self._events = events or EventBus()
        self._policies: Dict[str, ProviderPolicy] = {}
        self._circuits: Dict[str, ProviderCircuit] = {}
        self._health: Dict[str, ProviderHealth] = {}
        self._health_lock = threading.Lock()
        self._status = ResolverStatus()
        self._status_lock = threading.Lock()
        self._local = threading.local()
        self._inflight = InflightCalls()

        for index, p in enumerate(self._providers):
            defaults = PRIMARY_POLICY_DEFAULTS if index == 0 else SECONDARY_POLICY_DEFAULTS
            self._policies[p.provider_name] = ProviderPolicy(**defaults)
        for name, policy in (policies or {}).items():
            self._policies[name] = policy
        for p in self._providers + self._search_providers:
            name = p.provider_name
            if name in self._circuits:
                continue
            self._circuits[name] = ProviderCircuit(
                provider_name=name,
                failure_threshold=self._config.failure_threshold,
                breaker_cooldown_s=self._config.breaker_cooldown_s,
                disable_cooldown_s=self._config.disable_cooldown_s,
                clock=self._clock,
            )
            self._health[name] = ProviderHealth(provider_name=name)

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    def resolve_quote(
        self,
        symbol: str,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> Quote:
        """
        Resolve ``symbol`` to a quote.

        Returns a fresh provider quote, a fresh cache hit (source=CACHE,
        is_stale=False) or, when every provider fails, the last cached value
        with is_stale=True. Raises AllSourcesExhausted when nothing is
        available, InvalidRequest for a blank symbol or a non-positive timeout
        and RequestCancelled if ``cancel`` is cancelled.
        """
        sym = normalize_symbol(symbol)
        if not sym:
            err = InvalidRequest("empty symbol")
            self._set_status(None, err)
            raise err
        self._check_timeout(timeout)
        if not self._config.dedupe_inflight:
            return self._resolve(sym, timeout, force_refresh, cancel, publish=True)

        def _shared() -> Any:
            quote = self._resolve(sym, timeout, force_refresh, cancel, publish=True)
            return quote, self._local.status

        def _joined(result: Any, error: Optional[BaseException]) -> None:
            if error is not None:
                self._set_status(None, error if isinstance(error, QuotePipelineError) else None)
            else:
                status = result[1]
                self._set_status(status.data_source, status.error)

        quote, _ = self._inflight.run(f"{sym}|{int(force_refresh)}", _shared, cancel, _joined)
        return quote

    def resolve_many(
        self,
        symbols: Sequence[str],
        timeout: Optional[float] = None,
        force_refresh: bool = False,
        max_workers: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Union[Quote, QuotePipelineError]]:
        """
        Resolve several symbols in parallel, one worker thread per symbol up
        to ``max_workers``. Failures are returned in place of the quote.
        Subscribers get a single QuotesUpdated event for the whole batch.
        """
        self._check_timeout(timeout)
        unique = list(dict.fromkeys(s for s in (normalize_symbol(x) for x in symbols) if s))
        if not unique:
            return {}

        results: Dict[str, Union[Quote, QuotePipelineError]] = {}
        workers = max(1, min(max_workers or self._config.max_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quote") as pool:
            futures = {
                pool.submit(self._resolve, sym, timeout, force_refresh, cancel, publish=False): sym
                for sym in unique
            }
            for fut in as_completed(futures):
                sym = futures[fut]
                try:
                    results[sym] = fut.result()
                except QuotePipelineError as exc:
                    results[sym] = exc

        fresh = tuple(
            q for q in (results[s] for s in unique)
            if isinstance(q, Quote) and q.source is not DataSource.CACHE
        )
        if fresh:
            self._events.publish(QuotesUpdated(quotes=fresh, published_at=self._clock.now()))
        return {s: results[s] for s in unique}

    def search_symbols(
        self,
        query: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[SymbolResult]:
        """Search providers in priority order; the first to answer wins."""
        q = (query or "").strip()
        if not q:
            err = InvalidRequest("empty search query")
            self._set_status(None, err)
            raise err
        self._check_timeout(timeout)

        key = search_cache_key(q)
        cached = self._cache.get(key)
        if cached is not None:
            self._set_status(DataSource.CACHE, None)
            return list(cached)

        budget = self._config.default_timeout_s if timeout is None else timeout
        errors: List[str] = []
        last_error: Optional[QuotePipelineError] = None
        for provider in self._search_providers:
            name = provider.provider_name
            if not self._circuits[name].available:
                errors.append(f"{name}: disabled")
                continue
            try:
                results = self._call_provider(provider, provider.search_symbol, q, budget, cancel)
            except RequestCancelled as exc:
                if not exc.deadline_exceeded:
                    self._set_status(None, exc)
                    raise
                errors.append(f"{name}: deadline exceeded")
                last_error = exc
                break
            except QuotePipelineError as exc:
                last_error = self._record_failure(name, exc)
                errors.append(str(exc))
                continue

            self._record_success(name)
            self._cache.set(key, tuple(results), self._config.search_cache_ttl_s)
            self._set_status(self._source_for(name), None)
            return list(results)

        err = AllSourcesExhausted(f"search '{q}'", errors)
        if last_error is not None:
            err.__cause__ = last_error
        self._set_status(None, err)
        raise err

    def clear_caches(self) -> None:
        self._cache.clear()
        logger.info("Quote caches cleared")

    # Status accessors

    def last_data_source(self) -> Optional[DataSource]:
        with self._status_lock:
            return self._status.data_source

    def last_refresh_time(self) -> Optional[datetime]:
        with self._status_lock:
            return self._status.refresh_time

    def last_error(self) -> Optional[QuotePipelineError]:
        with self._status_lock:
            return self._status.error

    def status(self) -> ResolverStatus:
        with self._status_lock:
            return self._status

    def is_secondary_provider_available(self) -> bool:
        if len(self._providers) < 2:
            return False
        return self.is_provider_available(self._providers[1].provider_name)

    def is_provider_available(self, provider_name: str) -> bool:
        circuit = self._circuits.get(provider_name)
        return circuit is not None and circuit.available

    def get_health(self) -> Dict[str, ProviderHealth]:
        """Return health status for all providers in the chain."""
        with self._health_lock:
            return dict(self._health)

    def get_circuit_states(self) -> Dict[str, str]:
        return {name: c.state for name, c in self._circuits.items()}

    @property
    def provider_names(self) -> List[str]:
        return [p.provider_name for p in self._providers]

    @property
    def cache(self) -> ExpiringCache:
        return self._cache

    @property
    def events(self) -> EventBus:
        return self._events

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(
        self,
        sym: str,
        timeout: Optional[float],
        force_refresh: bool,
        cancel: Optional[CancelToken],
        *,
        publish: bool,
    ) -> Quote:
        key = quote_cache_key(sym)
        budget = self._config.default_timeout_s if timeout is None else timeout

        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for %s", sym)
                self._set_status(DataSource.CACHE, None)
                return cached.with_source(DataSource.CACHE, is_stale=False)

        errors: List[str] = []
        last_error: Optional[QuotePipelineError] = None
        for index, provider in enumerate(self._providers):
            name = provider.provider_name
            circuit = self._circuits[name]
            if not circuit.available:
                until = circuit.disabled_until
                errors.append(f"{name}: disabled until {until.isoformat(timespec='seconds') if until else '?'}")
                continue

            policy = self._policies[name]
            try:
                quote = self._call_provider(
                    provider, provider.fetch_quote, sym, budget * policy.timeout_multiplier, cancel
                )
            except RequestCancelled as exc:
                if not exc.deadline_exceeded:
                    self._set_status(None, exc)
                    raise
                logger.warning("Deadline exceeded resolving %s at %s", sym, name)
                errors.append(f"{name}: deadline exceeded")
                last_error = exc
                break
            except QuotePipelineError as exc:
                last_error = self._record_failure(name, exc)
                errors.append(str(exc))
                continue

            if not quote.is_valid():
                exc = SymbolNotFound(f"{sym}: non-positive price {quote.current_price}", name)
                last_error = self._record_failure(name, exc)
                errors.append(str(exc))
                continue

            source = DataSource.PRIMARY_FEED if index == 0 else DataSource.SECONDARY_FEED
            quote = quote.with_source(source, is_stale=False)
            self._cache.set(key, quote, policy.cache_ttl_s)
            self._record_success(name)
            self._set_status(source, None)
            if publish:
                self._events.publish(QuotesUpdated(quotes=(quote,), published_at=self._clock.now()))
            return quote

        entry = self._cache.get_entry(key, include_expired=True)
        if entry is not None:
            logger.warning(
                "All quote providers failed for %s, serving cached value from %s",
                sym, entry.value.fetched_at.isoformat(timespec="seconds"),
            )
            self._set_status(DataSource.CACHE, last_error)
            return entry.value.with_source(DataSource.CACHE, is_stale=True)

        err = AllSourcesExhausted(sym, errors)
        if last_error is not None:
            err.__cause__ = last_error
        logger.warning("%s", err)
        self._set_status(None, err)
        raise err

    def _call_provider(
        self,
        provider: QuoteProvider,
        method: Callable[[str, float], Any],
        arg: str,
        timeout: float,
        cancel: Optional[CancelToken],
    ) -> Any:
        name = provider.provider_name

        def _attempt() -> Any:
            # Every attempt is a real upstream call, so each one takes a slot.
            self._rate_limiter.acquire(name, cancel)
            per_call = cancel.clamp(timeout) if cancel is not None else timeout
            return method(arg, per_call)

        return retry_call(
            _attempt,
            provider_name=name,
            retry_config=self._retry_config,
            clock=self._clock,
            cancel=cancel,
        )

    def _record_success(self, name: str) -> None:
        self._circuits[name].record_success()
        with self._health_lock:
            self._health[name].record_success(self._clock.now())

    def _record_failure(self, name: str, exc: QuotePipelineError) -> QuotePipelineError:
        cause = root_cause(exc)
        circuit = self._circuits[name]
        msg = str(exc)
        if isinstance(cause, ProviderError) and cause.disables_provider:
            circuit.trip(msg)
            until = circuit.disabled_until
            with self._health_lock:
                if until is not None:
                    self._health[name].record_disabled(until, msg)
                else:
                    self._health[name].record_failure(msg)
        elif isinstance(cause, (SymbolNotFound, InvalidRequest)):
            # The provider answered; the symbol is the problem.
            logger.info("%s", msg)
            return exc
        else:
            circuit.record_failure(msg)
            with self._health_lock:
                self._health[name].record_failure(msg)
        logger.warning("Provider %s failed: %s", name, msg)
        return exc

    def _source_for(self, name: str) -> DataSource:
        if self._providers[0].provider_name == name:
            return DataSource.PRIMARY_FEED
        return DataSource.SECONDARY_FEED

    def _check_timeout(self, timeout: Optional[float]) -> None:
        if timeout is not None and timeout <= 0:
            err = InvalidRequest(f"timeout must be positive, got {timeout}")
            self._set_status(None, err)
            raise err

    def _set_status(self, source: Optional[DataSource], error: Optional[QuotePipelineError]) -> None:
        status = ResolverStatus(data_source=source, refresh_time=self._clock.now(), error=error)
        self._local.status = status
        with self._status_lock:
            self._status = status
