"""Tests for provider fallback and price history maintenance."""

from __future__ import annotations

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from portfolio_risk.core.clock import ManualClock
from portfolio_risk.core.exceptions import ProviderUnavailable
from portfolio_risk.domain.classification import AssetClass
from portfolio_risk.providers.base import (
    ProviderError,
    ProviderErrorKind,
    classify_error_message,
    ticker_variants,
)
from portfolio_risk.providers.budget import InMemoryCallBudget
from portfolio_risk.providers.failure_cache import FailureCache, FailureType
from portfolio_risk.providers.resolver import NotFound, PriceResolver, last_trading_day
from portfolio_risk.services.providers import build_price_resolver, get_failure_cache

from .conftest import FakeProvider, InMemoryPriceStore, make_series


START = date(2023, 1, 2)
END = date(2024, 1, 1)


def not_found(provider: str) -> ProviderError:
    return ProviderError(provider, ProviderErrorKind.NOT_FOUND, "symbol not found")


def network(provider: str) -> ProviderError:
    return ProviderError(provider, ProviderErrorKind.NETWORK, "connection reset")


def rate_limited(provider: str) -> ProviderError:
    return ProviderError(provider, ProviderErrorKind.RATE_LIMITED, "API rate limit reached")


@pytest.fixture
def failure_cache(clock: ManualClock) -> FailureCache:
    return FailureCache(clock=clock)


def make_resolver(providers, clock, failure_cache=None, limits=None, store=None) -> PriceResolver:
    return PriceResolver(
        providers,
        budget=InMemoryCallBudget(limits or {}, clock=clock),
        failure_cache=failure_cache if failure_cache is not None else FailureCache(clock=clock),
        store=store,
        clock=clock,
    )


class TestErrorClassification:
    """Tests for provider error message classification."""

    @pytest.mark.parametrize(
        "message,status_code,kind",
        [
            ("**symbol** not found", None, ProviderErrorKind.NOT_FOUND),
            ("This symbol is available starting with Grow plan", None, ProviderErrorKind.NOT_FOUND),
            ("You have run out of API credits for the current minute", None, ProviderErrorKind.RATE_LIMITED),
            ("anything", 429, ProviderErrorKind.RATE_LIMITED),
            ("anything", 404, ProviderErrorKind.NOT_FOUND),
            ("internal server error", 500, ProviderErrorKind.BAD_RESPONSE),
        ],
    )
    def test_classify(self, message, status_code, kind):
        assert classify_error_message(message, status_code) is kind

    def test_ticker_variants_in_order(self):
        """Suffixes are tried in configured order without duplicates."""
        provider = FakeProvider("yahoo", ticker_suffixes=[".TO", ".V", ""])
        assert ticker_variants(provider, "shop") == ["SHOP.TO", "SHOP.V", "SHOP"]
        assert ticker_variants(provider, "SHOP.TO") == ["SHOP.TO"]

    def test_ticker_variants_no_suffixes(self):
        provider = FakeProvider("twelvedata", ticker_suffixes=[])
        assert ticker_variants(provider, "aapl") == ["AAPL"]


class TestResolve:
    """Tests for ordered provider fallback."""

    @pytest.mark.asyncio
    async def test_first_provider_wins(self, clock):
        series = make_series("AAPL")
        primary = FakeProvider("twelvedata", {"AAPL": series})
        fallback = FakeProvider("yahoo", {"AAPL": series})
        resolver = make_resolver([primary, fallback], clock)

        result = await resolver.resolve("aapl", START, END)

        assert result.ticker == "AAPL"
        assert result.source == "twelvedata"
        assert fallback.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_falls_through_to_next_provider(self, clock):
        """A plan restriction on the primary moves on to the fallback."""
        series = make_series("RY")
        primary = FakeProvider("twelvedata", default=not_found("twelvedata"))
        fallback = FakeProvider("yahoo", {"RY.TO": series}, ticker_suffixes=[".TO", ".V", ""])
        resolver = make_resolver([primary, fallback], clock)

        result = await resolver.resolve("RY", START, END)

        assert result.source == "yahoo"
        assert result.resolved_symbol == "RY.TO"
        assert result.ticker == "RY"

    @pytest.mark.asyncio
    async def test_suffix_variants_tried_in_order(self, clock):
        """Empty answers move on to the next suffix."""
        series = make_series("XYZ")
        provider = FakeProvider("yahoo", {"XYZ": series}, ticker_suffixes=[".TO", ".V", ""])
        resolver = make_resolver([provider], clock)

        result = await resolver.resolve("XYZ", START, END)

        assert provider.calls == ["XYZ.TO", "XYZ.V", "XYZ"]
        assert result.resolved_symbol == "XYZ"

    @pytest.mark.asyncio
    async def test_all_unsupported_is_not_found(self, clock, failure_cache):
        """No coverage anywhere is a normal NotFound and is remembered."""
        resolver = make_resolver(
            [FakeProvider("twelvedata", default=not_found("twelvedata")), FakeProvider("yahoo")],
            clock,
            failure_cache=failure_cache,
        )

        result = await resolver.resolve("FID1234", START, END)

        assert isinstance(result, NotFound)
        assert result.attempted == ("twelvedata:FID1234", "yahoo:FID1234")
        assert failure_cache.get("FID1234").failure_type is FailureType.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cached_failure_skips_providers(self, clock, failure_cache):
        provider = FakeProvider("yahoo", {"GONE": make_series("GONE")})
        failure_cache.record_failure("GONE", FailureType.NOT_FOUND)
        resolver = make_resolver([provider], clock, failure_cache=failure_cache)

        result = await resolver.resolve("GONE", START, END)

        assert isinstance(result, NotFound)
        assert result.reason == "cached:not_found"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_provider_unavailable(self, clock, failure_cache):
        """A network failure is never reported as "no data"."""
        resolver = make_resolver(
            [FakeProvider("twelvedata", default=network("twelvedata")),
             FakeProvider("yahoo", default=not_found("yahoo"))],
            clock,
            failure_cache=failure_cache,
        )

        with pytest.raises(ProviderUnavailable) as exc_info:
            await resolver.resolve("AAPL", START, END)

        assert "twelvedata" in exc_info.value.details["providers"]
        assert failure_cache.get("AAPL") is None

    @pytest.mark.asyncio
    async def test_transient_failure_falls_back(self, clock):
        series = make_series("AAPL")
        resolver = make_resolver(
            [FakeProvider("twelvedata", default=network("twelvedata")),
             FakeProvider("yahoo", {"AAPL": series})],
            clock,
        )
        result = await resolver.resolve("AAPL", START, END)
        assert result.source == "yahoo"

    @pytest.mark.asyncio
    async def test_all_rate_limited_is_cached_briefly(self, clock, failure_cache):
        resolver = make_resolver(
            [FakeProvider("twelvedata", default=rate_limited("twelvedata")),
             FakeProvider("yahoo", default=rate_limited("yahoo"))],
            clock,
            failure_cache=failure_cache,
        )
        with pytest.raises(ProviderUnavailable):
            await resolver.resolve("AAPL", START, END)

        record = failure_cache.get("AAPL")
        assert record.failure_type is FailureType.RATE_LIMITED
        assert record.expires_at == clock.now() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_cached_rate_limit_stays_transient(self, clock, failure_cache):
        """An equity that was rate limited is unavailable, never "no data"."""
        twelvedata = FakeProvider("twelvedata", default=rate_limited("twelvedata"))
        yahoo = FakeProvider("yahoo", default=rate_limited("yahoo"))
        resolver = make_resolver([twelvedata, yahoo], clock, failure_cache=failure_cache)
        with pytest.raises(ProviderUnavailable):
            await resolver.resolve("AAPL", START, END)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await resolver.resolve("AAPL", START, END)

        assert "rate_limited" in exc_info.value.details["providers"]["cached"]
        assert len(twelvedata.calls) == 1
        assert len(yahoo.calls) == 1

    @pytest.mark.asyncio
    async def test_cached_api_error_stays_transient(self, clock, failure_cache):
        failure_cache.record_failure("AAPL", FailureType.API_ERROR, "bad gateway")
        resolver = make_resolver([FakeProvider("yahoo")], clock, failure_cache=failure_cache)

        with pytest.raises(ProviderUnavailable):
            await resolver.resolve("AAPL", START, END)

    @pytest.mark.asyncio
    async def test_rate_limit_spends_remaining_budget(self, clock):
        """Other tickers stop calling a provider that answered with a rate limit."""
        series = make_series("MSFT")
        primary = FakeProvider("twelvedata", default=rate_limited("twelvedata"))
        resolver = make_resolver(
            [primary, FakeProvider("yahoo", {"AAPL": series, "MSFT": series})],
            clock,
            limits={"twelvedata": 800},
        )
        await resolver.resolve("AAPL", START, END)

        assert await resolver.budget.remaining("twelvedata") == 0
        result = await resolver.resolve("MSFT", START, END)
        assert result.source == "yahoo"
        assert len(primary.calls) == 1

    def test_injected_empty_collaborators_are_kept(self, clock, failure_cache):
        """An empty shared cache or budget is still the one that gets used."""
        budget = InMemoryCallBudget({}, clock=clock)
        resolver = PriceResolver(
            [FakeProvider("yahoo")], budget=budget, failure_cache=failure_cache, clock=clock
        )
        assert resolver.failure_cache is failure_cache
        assert resolver.budget is budget

    @pytest.mark.asyncio
    async def test_exhausted_budget_skips_provider(self, clock):
        """A provider out of budget is not called at all."""
        series = make_series("AAPL")
        primary = FakeProvider("twelvedata", {"AAPL": series})
        fallback = FakeProvider("yahoo", {"AAPL": series})
        resolver = make_resolver([primary, fallback], clock, limits={"twelvedata": 0})

        result = await resolver.resolve("AAPL", START, END)

        assert primary.calls == []
        assert result.source == "yahoo"

    @pytest.mark.asyncio
    async def test_unsupported_asset_class_not_requested(self, clock):
        provider = FakeProvider("yahoo", default=make_series("FUND"))
        resolver = make_resolver([provider], clock)

        result = await resolver.resolve("RBF556", START, END, AssetClass.MUTUAL_FUND)

        assert isinstance(result, NotFound)
        assert result.reason == "asset_class:mutual_fund"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_successful_resolve_is_stored(self, clock):
        store = InMemoryPriceStore()
        resolver = make_resolver([FakeProvider("yahoo", {"AAPL": make_series("AAPL")})], clock, store=store)
        await resolver.resolve("AAPL", START, END)
        assert store.upserts == ["AAPL"]

    def test_needs_a_provider(self, clock):
        with pytest.raises(ValueError):
            PriceResolver([], clock=clock)


class TestEnsureHistory:
    """Tests for idempotent price history maintenance."""

    def test_last_trading_day_skips_weekend(self):
        assert last_trading_day(date(2024, 1, 8)) == date(2024, 1, 5)  # Monday -> Friday
        assert last_trading_day(date(2024, 1, 3)) == date(2024, 1, 2)

    @pytest.mark.asyncio
    async def test_covered_range_makes_no_call(self, clock):
        """Re-running for stored history up to the last close is a no-op."""
        store = InMemoryPriceStore({"AAPL": make_series("AAPL", n=300)})
        provider = FakeProvider("yahoo", {"AAPL": make_series("AAPL")})
        resolver = make_resolver([provider], clock, store=store)

        result = await resolver.ensure_history("AAPL", 365)

        assert provider.calls == []
        assert store.upserts == []
        assert result.end_date == date(2024, 1, 1)

    @pytest.mark.asyncio
    async def test_incremental_fetch_after_last_stored_close(self, clock):
        full = make_series("AAPL", n=300)
        stored = full.model_copy(update={"points": full.points[:-5]})
        store = InMemoryPriceStore({"AAPL": stored})
        provider = FakeProvider("yahoo", {"AAPL": full})
        resolver = make_resolver([provider], clock, store=store)

        result = await resolver.ensure_history("AAPL", 365)

        assert provider.calls == ["AAPL"]
        assert result.end_date == full.end_date
        assert len(result) == len([p for p in full.points if p.date >= date(2023, 1, 2)])

    @pytest.mark.asyncio
    async def test_empty_incremental_window_serves_stored(self, clock, failure_cache):
        """A holiday gap is not a coverage failure."""
        full = make_series("AAPL", n=300)
        stored = full.model_copy(update={"points": full.points[:-1]})
        store = InMemoryPriceStore({"AAPL": stored})
        provider = FakeProvider("yahoo", {"AAPL": stored})
        resolver = make_resolver([provider], clock, failure_cache=failure_cache, store=store)

        result = await resolver.ensure_history("AAPL", 365)

        assert not isinstance(result, NotFound)
        assert result.end_date == stored.end_date
        assert failure_cache.get("AAPL") is None

    @pytest.mark.asyncio
    async def test_providers_down_serves_stored(self, clock):
        full = make_series("AAPL", n=300)
        stored = full.model_copy(update={"points": full.points[:-3]})
        store = InMemoryPriceStore({"AAPL": stored})
        resolver = make_resolver([FakeProvider("yahoo", default=network("yahoo"))], clock, store=store)

        result = await resolver.ensure_history("AAPL", 365)

        assert result.end_date == stored.end_date

    @pytest.mark.asyncio
    async def test_providers_down_without_stored_history_raises(self, clock):
        resolver = make_resolver(
            [FakeProvider("yahoo", default=network("yahoo"))], clock, store=InMemoryPriceStore()
        )
        with pytest.raises(ProviderUnavailable):
            await resolver.ensure_history("AAPL", 365)


class TestWiring:
    @pytest.mark.asyncio
    async def test_resolvers_share_the_failure_cache(self, mocker):
        """Failures recorded by one resolver are seen by the next and by cleanup."""
        mocker.patch("portfolio_risk.services.providers.get_valkey_client", new_callable=AsyncMock)

        first = await build_price_resolver()
        first.failure_cache.record_failure("FID1234", FailureType.NOT_FOUND)
        second = await build_price_resolver()

        try:
            assert second.failure_cache is get_failure_cache()
            assert second.failure_cache.is_failed("FID1234")
        finally:
            get_failure_cache().clear("FID1234")
