"""
Tests for the quote resolver.

Verifies that:
- Fresh cached quotes are served without touching providers
- The secondary feed is used when the primary fails, with its own TTL
- Stale cached values are served when every provider fails
- Zero prices are never cached or returned
- Quota and credential failures disable a provider for the cool-down
- Status, health and events reflect the latest request
"""
from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from quote_pipeline.core.context import CancelToken
from quote_pipeline.core.errors import (
    AllSourcesExhausted,
    AuthorizationFailed,
    InvalidRequest,
    NetworkError,
    RateLimited,
    RequestCancelled,
    ServerError,
    SymbolNotFound,
)
from quote_pipeline.events import EventBus
from quote_pipeline.providers.base import DataSource, ProviderStatus
from quote_pipeline.providers.chain import InflightCalls, ProviderPolicy, QuoteResolver, ResolverConfig
from quote_pipeline.providers.resilience import RetryConfig
from tests.fakes.clock import FakeClock
from tests.fakes.providers import (
    FakeQuoteProvider,
    FakeQuoteProviderAlwaysFail,
    FakeQuoteProviderFailNThenSucceed,
    ScriptedQuoteProvider,
    make_quote,
)


@pytest.fixture
def clock():
    return FakeClock()


def make_resolver(providers, clock, **kwargs):
    kwargs.setdefault("retry_config", RetryConfig(max_retries=2))
    return QuoteResolver(providers, clock=clock, **kwargs)


class TestCacheFirst:
    def test_primary_then_cache_hit(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary, FakeQuoteProvider("alphavantage")], clock)

        first = resolver.resolve_quote("AAPL")
        assert first.current_price == 175.50
        assert first.previous_close == 173.25
        assert first.source is DataSource.PRIMARY_FEED
        assert first.is_stale is False
        assert resolver.last_data_source() is DataSource.PRIMARY_FEED

        clock.advance(30)
        second = resolver.resolve_quote("AAPL")
        assert second.source is DataSource.CACHE
        assert second.is_stale is False
        assert second.current_price == 175.50
        assert primary.call_count == 1
        assert resolver.last_data_source() is DataSource.CACHE

    def test_symbol_is_normalized(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        resolver.resolve_quote(" aapl ")
        assert resolver.resolve_quote("AAPL").source is DataSource.CACHE
        assert primary.call_count == 1

    def test_primary_ttl_expiry_refetches(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        resolver.resolve_quote("AAPL")
        clock.advance(300)
        assert resolver.resolve_quote("AAPL").source is DataSource.PRIMARY_FEED
        assert primary.call_count == 2

    def test_force_refresh_bypasses_cache(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        resolver.resolve_quote("AAPL")
        quote = resolver.resolve_quote("AAPL", force_refresh=True)
        assert quote.source is DataSource.PRIMARY_FEED
        assert primary.call_count == 2

    def test_clear_caches(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        resolver.resolve_quote("AAPL")
        resolver.clear_caches()
        assert len(resolver.cache) == 0
        resolver.resolve_quote("AAPL")
        assert primary.call_count == 2


class TestFailover:
    def test_secondary_used_when_primary_exhausted(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", ServerError("boom", "yahoo", 503))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)

        quote = resolver.resolve_quote("AAPL")
        assert quote.source is DataSource.SECONDARY_FEED
        assert quote.provider_name == "alphavantage"
        assert primary.call_count == 3
        assert secondary.call_count == 1
        assert clock.sleeps == [0.5, 1.0]
        assert resolver.last_error() is None

    def test_secondary_result_cached_for_600s(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", SymbolNotFound("x", "yahoo"))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)
        resolver.resolve_quote("AAPL")

        clock.advance(599)
        assert resolver.resolve_quote("AAPL").source is DataSource.CACHE
        clock.advance(1)
        assert resolver.resolve_quote("AAPL").source is DataSource.SECONDARY_FEED
        assert secondary.call_count == 2

    def test_secondary_timeout_is_stretched(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", SymbolNotFound("x", "yahoo"))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)
        resolver.resolve_quote("AAPL", timeout=4)
        assert primary.timeouts == [4]
        assert secondary.timeouts == [pytest.approx(6.0)]

    def test_custom_policy(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver(
            [primary], clock, policies={"yahoo": ProviderPolicy(cache_ttl_s=10, timeout_multiplier=2.0)}
        )
        resolver.resolve_quote("AAPL", timeout=3)
        assert primary.timeouts == [6.0]
        clock.advance(10)
        resolver.resolve_quote("AAPL")
        assert primary.call_count == 2

    def test_primary_recovers_after_transient_failures(self, clock):
        primary = FakeQuoteProviderFailNThenSucceed("yahoo", 2, NetworkError("reset", "yahoo"))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)
        assert resolver.resolve_quote("AAPL").source is DataSource.PRIMARY_FEED
        assert secondary.call_count == 0


class TestCacheFallback:
    def test_stale_value_served_when_all_fail(self, clock):
        good = make_quote("AAPL", 175.50, 173.25, "yahoo")
        primary = ScriptedQuoteProvider("yahoo", [good, ServerError("down", "yahoo", 502)])
        secondary = FakeQuoteProviderAlwaysFail("alphavantage", NetworkError("dns", "alphavantage"))
        resolver = make_resolver([primary, secondary], clock)

        resolver.resolve_quote("AAPL")
        clock.advance(301)
        quote = resolver.resolve_quote("AAPL")

        assert quote.source is DataSource.CACHE
        assert quote.is_stale is True
        assert quote.current_price == 175.50
        assert resolver.last_data_source() is DataSource.CACHE
        assert resolver.last_error() is not None

    def test_all_sources_exhausted_without_cache(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", ServerError("down", "yahoo", 500))
        secondary = FakeQuoteProviderAlwaysFail("alphavantage", NetworkError("dns", "alphavantage"))
        resolver = make_resolver([primary, secondary], clock)

        with pytest.raises(AllSourcesExhausted) as exc_info:
            resolver.resolve_quote("AAPL")
        assert exc_info.value.key == "AAPL"
        assert len(exc_info.value.errors) == 2
        assert resolver.last_data_source() is None
        assert resolver.last_error() is exc_info.value
        assert resolver.last_refresh_time() == clock.now()

    def test_zero_price_never_cached_or_returned(self, clock):
        zero = make_quote("AAPL", 0.0, 173.25, "yahoo")
        primary = ScriptedQuoteProvider("yahoo", [zero])
        secondary = ScriptedQuoteProvider("alphavantage", [make_quote("AAPL", 0.0, None, "alphavantage")])
        resolver = make_resolver([primary, secondary], clock)

        with pytest.raises(AllSourcesExhausted):
            resolver.resolve_quote("AAPL")
        assert len(resolver.cache) == 0

    def test_status_overwritten_on_success(self, clock):
        primary = FakeQuoteProviderFailNThenSucceed("yahoo", 3, ServerError("down", "yahoo", 500))
        resolver = make_resolver([primary], clock)
        with pytest.raises(AllSourcesExhausted):
            resolver.resolve_quote("AAPL")
        assert resolver.last_error() is not None

        resolver.resolve_quote("AAPL")
        assert resolver.last_error() is None
        assert resolver.last_data_source() is DataSource.PRIMARY_FEED

    def test_blank_symbol_rejected(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        with pytest.raises(InvalidRequest):
            resolver.resolve_quote("   ")
        assert primary.call_count == 0


class TestProviderDisablement:
    def test_rate_limited_secondary_disabled_for_cooldown(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", SymbolNotFound("x", "yahoo"))
        secondary = ScriptedQuoteProvider(
            "alphavantage",
            [RateLimited("25 requests per day", "alphavantage"), make_quote("AAPL", 175.5, 173.25, "alphavantage")],
        )
        resolver = make_resolver([primary, secondary], clock)

        with pytest.raises(AllSourcesExhausted):
            resolver.resolve_quote("AAPL")
        assert secondary.call_count == 1
        assert resolver.is_secondary_provider_available() is False
        assert resolver.get_circuit_states()["alphavantage"] == "OPEN"
        assert resolver.get_health()["alphavantage"].status is ProviderStatus.DOWN

        clock.advance(599)
        with pytest.raises(AllSourcesExhausted):
            resolver.resolve_quote("AAPL")
        assert secondary.call_count == 1

        clock.advance(1)
        assert resolver.is_secondary_provider_available() is True
        quote = resolver.resolve_quote("AAPL")
        assert quote.source is DataSource.SECONDARY_FEED
        assert secondary.call_count == 2
        assert resolver.get_health()["alphavantage"].status is ProviderStatus.OK

    def test_authorization_failure_disables_primary_too(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", AuthorizationFailed("forbidden", "yahoo"))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)

        resolver.resolve_quote("AAPL")
        resolver.resolve_quote("MSFT")
        assert primary.call_count == 1
        assert resolver.is_provider_available("yahoo") is False

    def test_consecutive_failures_open_breaker(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", NetworkError("reset", "yahoo"))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock, config=ResolverConfig(failure_threshold=3))

        for _ in range(3):
            resolver.resolve_quote("AAPL", force_refresh=True)
        assert primary.call_count == 9
        assert resolver.get_circuit_states()["yahoo"] == "OPEN"

        resolver.resolve_quote("AAPL", force_refresh=True)
        assert primary.call_count == 9

    def test_unknown_symbol_does_not_count_against_provider(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock, config=ResolverConfig(failure_threshold=1))
        with pytest.raises(AllSourcesExhausted):
            resolver.resolve_quote("NOPE")
        assert resolver.is_provider_available("yahoo") is True

    def test_single_provider_has_no_secondary(self, clock):
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock)
        assert resolver.is_secondary_provider_available() is False
        assert resolver.is_provider_available("unknown") is False

    def test_degraded_health_after_repeated_failures(self, clock):
        primary = FakeQuoteProviderAlwaysFail("yahoo", ServerError("down", "yahoo", 500))
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)
        resolver.resolve_quote("AAPL", force_refresh=True)
        resolver.resolve_quote("AAPL", force_refresh=True)
        health = resolver.get_health()["yahoo"]
        assert health.status is ProviderStatus.DEGRADED
        assert health.fail_count == 2
        assert "down" in health.last_error


class TestCancellation:
    def test_explicit_cancel_raises(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        token = CancelToken(clock=clock)
        token.cancel()
        with pytest.raises(RequestCancelled):
            resolver.resolve_quote("AAPL", cancel=token)
        assert primary.call_count == 0

    def test_deadline_falls_back_to_cache(self, clock):
        good = make_quote("AAPL", 175.50, 173.25, "yahoo")
        primary = ScriptedQuoteProvider("yahoo", [good, ServerError("down", "yahoo", 500)])
        secondary = FakeQuoteProvider("alphavantage")
        resolver = make_resolver([primary, secondary], clock)
        resolver.resolve_quote("AAPL")
        clock.advance(301)

        token = CancelToken(timeout=0.7, clock=clock)
        quote = resolver.resolve_quote("AAPL", cancel=token)
        assert quote.is_stale is True
        assert secondary.call_count == 0

    def test_deadline_clamps_provider_timeout(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        token = CancelToken(timeout=2.0, clock=clock)
        resolver.resolve_quote("AAPL", timeout=10, cancel=token)
        assert primary.timeouts == [2.0]


class TestResolveMany:
    def test_mixed_results(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        results = resolver.resolve_many(["AAPL", "msft", "NOPE", "AAPL"])

        assert list(results) == ["AAPL", "MSFT", "NOPE"]
        assert results["AAPL"].current_price == 175.50
        assert results["MSFT"].current_price == 410.00
        assert isinstance(results["NOPE"], AllSourcesExhausted)

    def test_single_batch_event(self, clock):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock, events=bus)

        resolver.resolve_many(["AAPL", "MSFT", "TSLA"], max_workers=2)
        assert len(received) == 1
        assert sorted(received[0].symbols) == ["AAPL", "MSFT", "TSLA"]

    def test_empty_input(self, clock):
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock)
        assert resolver.resolve_many(["", "  "]) == {}


class TestEvents:
    def test_published_on_fresh_fetch_only(self, clock):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock, events=bus)

        resolver.resolve_quote("AAPL")
        resolver.resolve_quote("AAPL")
        assert len(received) == 1
        assert received[0].symbols == ["AAPL"]
        assert received[0].quotes[0].source is DataSource.PRIMARY_FEED

    def test_failing_subscriber_does_not_break_resolution(self, clock):
        bus = EventBus()

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock, events=bus)
        assert resolver.resolve_quote("AAPL").current_price == 175.50

    def test_unsubscribe(self, clock):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock, events=bus)
        resolver.resolve_quote("AAPL")
        assert received == []


class TestSearch:
    def test_first_working_search_provider_wins(self, clock):
        av = FakeQuoteProviderAlwaysFail("alphavantage", AuthorizationFailed("no key", "alphavantage"))
        yahoo = FakeQuoteProvider("yahoo")
        resolver = make_resolver([yahoo, av], clock, search_providers=[av, yahoo])

        results = resolver.search_symbols("aa")
        assert [r.symbol for r in results] == ["AAPL"]
        assert results[0].provider_name == "yahoo"
        assert resolver.is_provider_available("alphavantage") is False

    def test_results_cached_case_insensitively(self, clock):
        yahoo = FakeQuoteProvider("yahoo")
        resolver = make_resolver([yahoo], clock)
        resolver.search_symbols("Ms")
        resolver.search_symbols("mS")
        assert yahoo.search_count == 1
        clock.advance(3600)
        resolver.search_symbols("ms")
        assert yahoo.search_count == 2

    def test_all_search_providers_fail(self, clock):
        av = FakeQuoteProviderAlwaysFail("alphavantage", NetworkError("dns", "alphavantage"))
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock, search_providers=[av])
        with pytest.raises(AllSourcesExhausted):
            resolver.search_symbols("apple")

    def test_blank_query_rejected(self, clock):
        resolver = make_resolver([FakeQuoteProvider("yahoo")], clock)
        with pytest.raises(InvalidRequest):
            resolver.search_symbols("  ")


class _GatedProvider(FakeQuoteProvider):
    def __init__(self, name, first_error=None):
        super().__init__(name)
        self.entered = threading.Event()
        self.release = threading.Event()
        self._first_error = first_error

    def fetch_quote(self, symbol, timeout):
        self.entered.set()
        self.release.wait(5)
        quote = super().fetch_quote(symbol, timeout)
        if self._first_error is not None and self.call_count == 1:
            raise self._first_error
        return quote


def test_inflight_requests_share_one_call(clock):
    provider = _GatedProvider("yahoo")
    resolver = make_resolver([provider], clock, config=ResolverConfig(dedupe_inflight=True))
    results = []

    def worker():
        results.append(resolver.resolve_quote("AAPL"))

    threads = [threading.Thread(target=worker) for _ in range(3)]
    threads[0].start()
    assert provider.entered.wait(5)
    for t in threads[1:]:
        t.start()
    time.sleep(0.2)
    provider.release.set()
    for t in threads:
        t.join(5)

    assert provider.call_count == 1
    assert len(results) == 3
    assert all(q.current_price == 175.50 for q in results)


def test_cancelled_leader_does_not_cancel_waiting_callers(clock):
    provider = _GatedProvider("yahoo", first_error=NetworkError("reset", "yahoo"))
    resolver = make_resolver([provider], clock, config=ResolverConfig(dedupe_inflight=True))
    leader_token = CancelToken(clock=clock)
    out = {}

    def leader():
        try:
            out["leader"] = resolver.resolve_quote("AAPL", cancel=leader_token)
        except RequestCancelled as exc:
            out["leader"] = exc

    def follower():
        try:
            out["follower"] = resolver.resolve_quote("AAPL")
        except RequestCancelled as exc:
            out["follower"] = exc

    t_leader = threading.Thread(target=leader)
    t_leader.start()
    assert provider.entered.wait(5)
    t_follower = threading.Thread(target=follower)
    t_follower.start()
    time.sleep(0.2)
    leader_token.cancel()
    provider.release.set()
    t_leader.join(5)
    t_follower.join(5)

    assert isinstance(out["leader"], RequestCancelled)
    assert not isinstance(out["follower"], RequestCancelled)
    assert out["follower"].current_price == 175.50
    assert provider.call_count == 2


def test_shared_result_updates_status_for_each_caller(clock):
    provider = _GatedProvider("yahoo")
    resolver = make_resolver([provider], clock, config=ResolverConfig(dedupe_inflight=True))

    with patch.object(resolver, "_set_status", wraps=resolver._set_status) as spy:
        threads = [threading.Thread(target=resolver.resolve_quote, args=("AAPL",)) for _ in range(2)]
        threads[0].start()
        assert provider.entered.wait(5)
        threads[1].start()
        time.sleep(0.2)
        provider.release.set()
        for t in threads:
            t.join(5)

    assert provider.call_count == 1
    assert spy.call_count == 2
    assert all(c.args == (DataSource.PRIMARY_FEED, None) for c in spy.call_args_list)


class TestInflightCalls:
    def test_waiter_takes_over_after_leader_cancel(self):
        calls = InflightCalls()
        started = threading.Event()
        release = threading.Event()
        joined = []

        def cancelled_leader():
            started.set()
            release.wait(5)
            raise RequestCancelled()

        out = {}

        def lead():
            try:
                calls.run("k", cancelled_leader)
            except RequestCancelled as exc:
                out["leader"] = exc

        def wait():
            out["waiter"] = calls.run("k", lambda: "own", on_join=lambda r, e: joined.append(r))

        t1 = threading.Thread(target=lead)
        t1.start()
        assert started.wait(5)
        t2 = threading.Thread(target=wait)
        t2.start()
        time.sleep(0.2)
        release.set()
        t1.join(5)
        t2.join(5)

        assert isinstance(out["leader"], RequestCancelled)
        assert out["waiter"] == "own"
        assert joined == []

    def test_deadline_outcome_is_shared(self):
        calls = InflightCalls()
        started = threading.Event()
        release = threading.Event()
        joined = []

        def expired_leader():
            started.set()
            release.wait(5)
            raise RequestCancelled("deadline exceeded", deadline_exceeded=True)

        out = {}

        def run(name, fn, on_join=None):
            try:
                out[name] = calls.run("k", fn, on_join=on_join)
            except RequestCancelled as exc:
                out[name] = exc

        t1 = threading.Thread(target=run, args=("leader", expired_leader))
        t1.start()
        assert started.wait(5)
        t2 = threading.Thread(
            target=run, args=("waiter", lambda: "own", lambda r, e: joined.append(e))
        )
        t2.start()
        time.sleep(0.2)
        release.set()
        t1.join(5)
        t2.join(5)

        assert out["waiter"] is out["leader"]
        assert joined == [out["leader"]]


class TestTimeoutValidation:
    @pytest.mark.parametrize("timeout", [0, -1.0])
    def test_non_positive_timeout_rejected_before_any_call(self, clock, timeout):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        with pytest.raises(InvalidRequest):
            resolver.resolve_quote("AAPL", timeout=timeout)
        assert primary.call_count == 0
        assert clock.sleeps == []
        assert resolver.is_provider_available("yahoo") is True
        assert isinstance(resolver.last_error(), InvalidRequest)

    def test_search_and_batch_reject_non_positive_timeout(self, clock):
        primary = FakeQuoteProvider("yahoo")
        resolver = make_resolver([primary], clock)
        with pytest.raises(InvalidRequest):
            resolver.search_symbols("aa", timeout=0)
        with pytest.raises(InvalidRequest):
            resolver.resolve_many(["AAPL"], timeout=0)
        assert primary.call_count == 0
        assert primary.search_count == 0


def test_requires_at_least_one_provider(clock):
    with pytest.raises(ValueError):
        QuoteResolver([], clock=clock)
