"""Pytest configuration and fixtures."""

from __future__ import annotations

import gc
import warnings
from datetime import date
from typing import Generator, Sequence

import numpy as np
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from portfolio_risk.core.clock import ManualClock
from portfolio_risk.domain.classification import AssetClass, classify_instrument
from portfolio_risk.domain.price import PriceSeries
from portfolio_risk.providers.base import ProviderError
from portfolio_risk.providers.budget import InMemoryCallBudget
from portfolio_risk.providers.failure_cache import FailureCache
from portfolio_risk.providers.resolver import PriceResolver
from portfolio_risk.services.analytics import RiskAnalyticsService
from portfolio_risk.services.risk_cache import InMemoryCacheStorage, RiskCacheService


def _force_cleanup():
    """Force cleanup of pending async resources."""
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=ResourceWarning)
        gc.collect()


# =============================================================================
# Price data
# =============================================================================


def make_series(
    ticker: str,
    n: int = 300,
    seed: int = 42,
    end: date = date(2024, 1, 1),
    drift: float = 0.0005,
    vol: float = 0.015,
    start_price: float = 100.0,
) -> PriceSeries:
    """Business-day random walk ending on ``end``."""
    rng = np.random.default_rng(seed)
    returns = rng.normal(drift, vol, n - 1)
    closes = start_price * np.cumprod(np.concatenate([[1.0], 1.0 + returns]))
    dates = pd.bdate_range(end=pd.Timestamp(end), periods=n)
    return PriceSeries.from_pairs(ticker, [(d.date(), float(c)) for d, c in zip(dates, closes)])


def linked_series(
    ticker: str,
    benchmark: PriceSeries,
    beta: float,
    noise: float = 0.002,
    seed: int = 7,
) -> PriceSeries:
    """Series whose returns are ``beta`` times the benchmark's plus noise."""
    rng = np.random.default_rng(seed)
    closes = benchmark.closes()
    bench_returns = closes.pct_change().iloc[1:].to_numpy()
    returns = beta * bench_returns + rng.normal(0.0, noise, bench_returns.size)
    prices = 50.0 * np.cumprod(np.concatenate([[1.0], 1.0 + returns]))
    return PriceSeries.from_pairs(
        ticker, [(idx.date(), float(p)) for idx, p in zip(closes.index, prices)]
    )


class FakeProvider:
    """Provider answering from a symbol table; exceptions are raised as-is."""

    def __init__(
        self,
        name: str,
        responses: dict | None = None,
        ticker_suffixes: Sequence[str] = ("",),
        default: PriceSeries | ProviderError | None = None,
    ):
        self.name = name
        self.ticker_suffixes = list(ticker_suffixes)
        self.responses = responses or {}
        self.default = default
        self.calls: list[str] = []

    async def fetch(self, symbol: str, start: date, end: date) -> PriceSeries:
        self.calls.append(symbol)
        response = self.responses.get(symbol, self.default)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return PriceSeries(ticker=symbol)
        return response.model_copy(
            update={"points": [p for p in response.points if start <= p.date <= end]}
        )


class InMemoryPriceStore:
    def __init__(self, series: dict[str, PriceSeries] | None = None):
        self.series: dict[str, PriceSeries] = dict(series or {})
        self.upserts: list[str] = []

    async def get_series(self, ticker: str, start: date, end: date) -> PriceSeries:
        stored = self.series.get(ticker)
        if stored is None:
            return PriceSeries(ticker=ticker)
        return stored.model_copy(
            update={"points": [p for p in stored.points if start <= p.date <= end]}
        )

    async def upsert_series(self, ticker: str, series: PriceSeries) -> int:
        self.upserts.append(ticker)
        existing = self.series.get(ticker)
        points = (existing.points if existing else []) + series.points
        self.series[ticker] = PriceSeries(ticker=ticker, points=points, source=series.source)
        return len(series.points)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cache(clock: ManualClock) -> RiskCacheService:
    return RiskCacheService(InMemoryCacheStorage(), clock=clock)


@pytest.fixture
def market() -> dict[str, PriceSeries]:
    """Benchmark plus a few equities ending on the clock's last trading day."""
    end = date(2024, 1, 1)
    spy = make_series("SPY", seed=1, end=end, vol=0.01)
    return {
        "SPY": spy,
        "QQQ": linked_series("QQQ", spy, 1.2, seed=2),
        "IWM": linked_series("IWM", spy, 1.1, seed=3),
        "AAPL": linked_series("AAPL", spy, 1.3, noise=0.01, seed=4),
        "MSFT": linked_series("MSFT", spy, 0.9, noise=0.008, seed=5),
        "KO": make_series("KO", seed=6, end=end, vol=0.008),
    }


async def _classify(ticker: str, category: str | None = None) -> AssetClass:
    return classify_instrument(ticker, category=category)


async def _peek(ticker: str) -> AssetClass:
    return classify_instrument(ticker)


@pytest.fixture
def positions() -> dict[str, list[dict]]:
    return {
        "p1": [
            {"ticker": "AAPL", "quantity": 10, "market_value": 5000.0, "asset_category": "Stock"},
            {"ticker": "MSFT", "quantity": 5, "market_value": 3000.0, "asset_category": "Stock"},
            {"ticker": "KO", "quantity": 20, "market_value": 2000.0, "asset_category": "Stock"},
            {"ticker": "FID1234", "quantity": 100, "market_value": 1500.0,
             "asset_category": "Mutual Fund"},
        ],
    }


@pytest.fixture
def analytics(
    clock: ManualClock,
    cache: RiskCacheService,
    market: dict[str, PriceSeries],
    positions: dict[str, list[dict]],
) -> RiskAnalyticsService:
    """Analytics service over stored prices and in-memory cache, no network."""
    store = InMemoryPriceStore(market)
    provider = FakeProvider("yahoo", default=None)
    resolver = PriceResolver(
        [provider],
        budget=InMemoryCallBudget({}, clock=clock),
        failure_cache=FailureCache(clock=clock),
        store=store,
        clock=clock,
    )

    async def _positions(portfolio_id: str) -> list[dict]:
        return positions.get(portfolio_id, [])

    service = RiskAnalyticsService(
        resolver,
        cache,
        classify=_classify,
        peek_class=_peek,
        positions=_positions,
        clock=clock,
    )
    # Stored history covers this window, so no provider is asked
    service.history_days = 400
    return service


@pytest.fixture
def client(analytics: RiskAnalyticsService) -> Generator[TestClient, None, None]:
    """Test client for the API app with the analytics service overridden."""
    from portfolio_risk.api.app import create_api_app
    from portfolio_risk.api.dependencies import get_service

    app = create_api_app()
    app.dependency_overrides[get_service] = lambda: analytics
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    _force_cleanup()


@pytest.fixture
def sample_prices() -> list[float]:
    """Generate sample price data for testing."""
    np.random.seed(42)
    returns = np.random.normal(0.0005, 0.02, 252)
    prices = 100 * np.cumprod(1 + returns)
    return prices.tolist()
