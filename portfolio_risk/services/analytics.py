"""
Risk analytics service.

Glues the price resolver, the analytics engines and the risk cache:

- ``compute_*`` methods do the expensive work and return JSON payloads.
  They run in workers (or a forced refresh) and raise domain errors that
  the cache records on the entry.
- ``get_*`` methods are the read path. They only read the cache, scheduling
  a background refresh when an entry is missing or stale.

Usage:
    service = await get_analytics_service()
    entry = await service.get_ticker_risk("AAPL", days=90, benchmark="SPY")
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Awaitable, Callable, Sequence

from portfolio_risk.analytics.correlation import compute_correlation_matrix
from portfolio_risk.analytics.forecast import ForecastMethod, ForecastRun
from portfolio_risk.analytics.metrics import (
    InsufficientData,
    compute_risk_metrics,
    downside_risk,
    portfolio_returns,
    rolling_beta_analysis,
    simple_returns,
    value_at_risk,
    var_amount,
    window,
)
from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.config import settings
from portfolio_risk.core.exceptions import (
    CacheMiss,
    InsufficientHistory,
    NoDataForInstrument,
    NotFoundError,
    ProviderUnavailable,
    ValidationError,
)
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.cache import CacheEntry, CacheKey, CacheKind, CacheStatus
from portfolio_risk.domain.classification import (
    AssetClass,
    classify_instrument,
    looks_like_mutual_fund,
)
from portfolio_risk.domain.price import PriceSeries
from portfolio_risk.providers.resolver import NotFound, PriceResolver
from portfolio_risk.repositories import prices_orm as prices_repo
from portfolio_risk.services.providers import classify_ticker, stored_or_shape_class
from portfolio_risk.services.risk_cache import Compute, RiskCacheService


logger = get_logger("services.analytics")

Classifier = Callable[[str, str | None], Awaitable[AssetClass]]
PositionSource = Callable[[str], Awaitable[list[dict[str, Any]]]]

FORECAST_LOOKBACK_DAYS = 365
MIN_CORRELATION_WEIGHT = 0.01


# =============================================================================
# Cache keys
# =============================================================================


def ticker_risk_key(ticker: str, days: int, benchmark: str) -> CacheKey:
    return CacheKey.build(CacheKind.TICKER_RISK, ticker.upper(), days=days, benchmark=benchmark.upper())


def downside_risk_key(portfolio_id: str, days: int, benchmark: str) -> CacheKey:
    return CacheKey.build(
        CacheKind.DOWNSIDE_RISK, portfolio_id, portfolio_id=portfolio_id,
        days=days, benchmark=benchmark.upper(),
    )


def correlation_key(tickers: Sequence[str], days: int) -> CacheKey:
    return CacheKey.build(CacheKind.CORRELATION, ",".join(t.upper() for t in tickers), days=days)


def portfolio_correlation_key(portfolio_id: str, days: int) -> CacheKey:
    return CacheKey.build(CacheKind.CORRELATION, portfolio_id, portfolio_id=portfolio_id, days=days)


def beta_forecast_key(ticker: str, days: int, benchmark: str, method: ForecastMethod) -> CacheKey:
    return CacheKey.build(
        CacheKind.BETA_FORECAST, ticker.upper(),
        days=days, benchmark=benchmark.upper(), method=method.value,
    )


# =============================================================================
# Position helpers
# =============================================================================


def aggregate_positions(positions: Sequence[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Merge positions of the same ticker held in several accounts."""
    merged: dict[str, dict[str, Any]] = {}
    for position in positions:
        ticker = position["ticker"].upper()
        current = merged.setdefault(
            ticker,
            {"ticker": ticker, "quantity": 0.0, "market_value": None,
             "asset_category": position.get("asset_category")},
        )
        current["quantity"] += float(position.get("quantity") or 0)
        value = position.get("market_value")
        if value is not None:
            current["market_value"] = (current["market_value"] or 0.0) + float(value)
    return merged


def select_correlation_tickers(
    positions: Sequence[dict[str, Any]],
    max_tickers: int | None = None,
    min_weight: float = MIN_CORRELATION_WEIGHT,
) -> dict[str, float]:
    """
    Holdings worth correlating: at least ``min_weight`` of portfolio value,
    no mutual funds, the ``max_tickers`` largest by value.

    Returns:
        Market value by ticker, largest first
    """
    max_tickers = max_tickers or settings.correlation_max_tickers
    merged = aggregate_positions(positions)
    values = {t: p["market_value"] or 0.0 for t, p in merged.items()}
    total = sum(v for v in values.values() if v > 0)
    if total <= 0:
        return {}

    eligible = []
    for ticker, value in values.items():
        if value / total < min_weight:
            continue
        category = merged[ticker]["asset_category"]
        if looks_like_mutual_fund(ticker):
            continue
        if not classify_instrument(ticker, category=category).supports_price_history:
            continue
        eligible.append((ticker, value))

    eligible.sort(key=lambda item: item[1], reverse=True)
    return dict(eligible[:max_tickers])


# =============================================================================
# Service
# =============================================================================


class RiskAnalyticsService:
    def __init__(
        self,
        resolver: PriceResolver,
        cache: RiskCacheService,
        classify: Classifier | None = None,
        peek_class: Callable[[str], Awaitable[AssetClass]] | None = None,
        positions: PositionSource | None = None,
        clock: Clock | None = None,
    ):
        self.resolver = resolver
        self.cache = cache
        self.classify = classify or classify_ticker
        self.peek_class = peek_class or stored_or_shape_class
        self.positions = positions or prices_repo.get_positions
        self.clock = clock or cache.clock or SystemClock()
        self.history_days = settings.price_history_days

    # -------------------------------------------------------------------------
    # Price history
    # -------------------------------------------------------------------------

    async def _history(self, ticker: str, category: str | None = None) -> PriceSeries:
        """
        Raises:
            NoDataForInstrument: No provider covers the ticker
            ProviderUnavailable: Providers down and nothing stored
        """
        ticker = ticker.upper()
        asset_class = await self.classify(ticker, category)
        result = await self.resolver.ensure_history(ticker, self.history_days, asset_class)
        if isinstance(result, NotFound):
            raise NoDataForInstrument(ticker, asset_class.value)
        return result

    async def _benchmark_history(self, benchmark: str) -> PriceSeries:
        try:
            return await self._history(benchmark)
        except (NoDataForInstrument, ProviderUnavailable) as e:
            logger.warning(f"Benchmark {benchmark} unavailable: {e.message}")
            return PriceSeries(ticker=benchmark.upper())

    # -------------------------------------------------------------------------
    # Computations
    # -------------------------------------------------------------------------

    async def compute_ticker_risk(self, ticker: str, days: int, benchmark: str) -> dict[str, Any]:
        ticker, benchmark = ticker.upper(), benchmark.upper()
        series = await self._history(ticker)
        benchmarks = {}
        for name in dict.fromkeys([benchmark, *settings.risk_benchmarks]):
            benchmarks[name] = await self._benchmark_history(name)

        result = compute_risk_metrics(
            series,
            benchmarks,
            benchmark=benchmark,
            days=days,
            risk_free_rate=settings.risk_free_rate,
            min_observations=settings.min_observations,
            weights=settings.risk_score_weights,
        )
        if isinstance(result, InsufficientData):
            raise InsufficientHistory(ticker, result.required, result.available, what="risk metrics")
        return result.to_dict()

    async def compute_downside_risk(self, portfolio_id: str, days: int, benchmark: str) -> dict[str, Any]:
        positions = aggregate_positions(await self.positions(portfolio_id))
        if not positions:
            raise NotFoundError(
                f"Portfolio {portfolio_id} has no positions",
                details={"portfolio_id": portfolio_id},
            )

        rf = settings.risk_free_rate
        histories: dict[str, PriceSeries] = {}
        values: dict[str, float] = {}
        skipped: list[dict[str, Any]] = []

        for ticker, position in positions.items():
            try:
                series = window(await self._history(ticker, position["asset_category"]), days)
            except NoDataForInstrument as e:
                skipped.append({"ticker": ticker, "reason": "no_data", "badge": e.BADGE})
                continue
            except ProviderUnavailable:
                skipped.append({"ticker": ticker, "reason": "provider_unavailable"})
                continue
            if series.is_empty:
                skipped.append({"ticker": ticker, "reason": "no_data", "badge": NoDataForInstrument.BADGE})
                continue
            value = position["market_value"]
            if value is None:
                value = position["quantity"] * series.points[-1].close
            if value <= 0:
                skipped.append({"ticker": ticker, "reason": "no_value"})
                continue
            histories[ticker] = series
            values[ticker] = value

        position_risks: list[dict[str, Any]] = []
        usable: dict[str, PriceSeries] = {}
        for ticker, series in histories.items():
            returns = simple_returns([p.close for p in series.points])
            metrics = downside_risk(returns, rf, ticker, settings.min_observations)
            if isinstance(metrics, InsufficientData):
                skipped.append({
                    "ticker": ticker,
                    "reason": "insufficient_history",
                    "required": metrics.required,
                    "available": metrics.available,
                })
                continue
            usable[ticker] = series
            var95 = value_at_risk(returns, 0.95)
            position_risks.append({
                "ticker": ticker,
                "value": values[ticker],
                "value_at_risk": var95,
                "var_amount": var_amount(var95, values[ticker]),
                "downside_metrics": metrics.to_dict(),
            })

        total = sum(values[t] for t in usable)
        weights = {t: values[t] / total for t in usable} if total > 0 else {}
        for item in position_risks:
            item["weight"] = weights.get(item["ticker"], 0.0)
        position_risks.sort(key=lambda item: item["weight"], reverse=True)

        basket = portfolio_returns(usable, weights)
        portfolio = downside_risk(basket, rf, f"portfolio {portfolio_id}", settings.min_observations)
        if isinstance(portfolio, InsufficientData):
            raise InsufficientHistory(
                f"Portfolio {portfolio_id}", portfolio.required, portfolio.available, what="downside risk"
            )
        portfolio_var = value_at_risk(basket, 0.95)

        bench_series = window(await self._benchmark_history(benchmark), days)
        bench_metrics = downside_risk(
            simple_returns([p.close for p in bench_series.points]), rf, benchmark, settings.min_observations
        )

        return {
            "portfolio_id": portfolio_id,
            "days": days,
            "benchmark": benchmark.upper(),
            "total_value": total,
            "value_at_risk": portfolio_var,
            "var_amount": var_amount(portfolio_var, total),
            "portfolio_metrics": portfolio.to_dict(),
            "benchmark_metrics": None if isinstance(bench_metrics, InsufficientData) else bench_metrics.to_dict(),
            "position_downside_risks": position_risks,
            "skipped": skipped,
        }

    async def compute_correlation(
        self,
        tickers: Sequence[str],
        days: int,
        weights: dict[str, float] | None = None,
    ) -> dict[str, Any]:
        tickers = list(dict.fromkeys(t.upper() for t in tickers))
        if len(tickers) > settings.correlation_max_tickers:
            raise ValidationError(
                f"At most {settings.correlation_max_tickers} tickers can be correlated",
                details={"tickers": tickers},
            )

        series: dict[str, PriceSeries] = {}
        for ticker in tickers:
            try:
                series[ticker] = window(await self._history(ticker), days)
            except (NoDataForInstrument, ProviderUnavailable) as e:
                logger.info(f"Correlation excludes {ticker}: {e.message}")
                series[ticker] = PriceSeries(ticker=ticker)

        matrix = compute_correlation_matrix(
            series,
            weights=weights,
            max_tickers=settings.correlation_max_tickers,
            threshold=settings.high_correlation_threshold,
        )
        return {**matrix.to_dict(), "days": days}

    async def compute_portfolio_correlation(self, portfolio_id: str, days: int) -> dict[str, Any]:
        selected = select_correlation_tickers(await self.positions(portfolio_id))
        if not selected:
            raise NotFoundError(
                f"Portfolio {portfolio_id} has no holdings eligible for correlation",
                details={"portfolio_id": portfolio_id},
            )
        payload = await self.compute_correlation(list(selected), days, weights=selected)
        payload["portfolio_id"] = portfolio_id
        return payload

    async def compute_beta_forecast(
        self, ticker: str, days: int, benchmark: str, method: ForecastMethod
    ) -> dict[str, Any]:
        ticker, benchmark = ticker.upper(), benchmark.upper()
        asset = window(await self._history(ticker), FORECAST_LOOKBACK_DAYS)
        bench = window(await self._history(benchmark), FORECAST_LOOKBACK_DAYS)
        rolling = rolling_beta_analysis(asset, bench, benchmark)

        run = ForecastRun(
            ticker,
            benchmark,
            method=method,
            weights=settings.forecast_ensemble_weights,
            min_history=settings.forecast_min_history,
        )
        forecast = run.run(rolling.beta_90d, days_ahead=days, as_of=self.clock.now().date())
        latest = {
            "30d": rolling.beta_30d[-1:],
            "60d": rolling.beta_60d[-1:],
            "90d": rolling.beta_90d[-1:],
        }
        return {
            **forecast.to_dict(),
            "rolling_beta": {k: asdict(v[0]) if v else None for k, v in latest.items()},
        }

    def compute_for(self, spec: CacheKey) -> Compute:
        """Computation behind a cache key, used by workers to refresh any entry."""
        params = spec.params_dict
        days = int(params.get("days", settings.risk_default_days))
        benchmark = params.get("benchmark", settings.risk_default_benchmark)

        if spec.kind is CacheKind.TICKER_RISK:
            return lambda: self.compute_ticker_risk(spec.subject, days, benchmark)
        if spec.kind is CacheKind.DOWNSIDE_RISK:
            return lambda: self.compute_downside_risk(spec.portfolio_id or spec.subject, days, benchmark)
        if spec.kind is CacheKind.CORRELATION:
            if spec.portfolio_id:
                return lambda: self.compute_portfolio_correlation(spec.portfolio_id, days)
            return lambda: self.compute_correlation(spec.subject.split(","), days)
        if spec.kind is CacheKind.BETA_FORECAST:
            method = ForecastMethod.parse(params.get("method"))
            return lambda: self.compute_beta_forecast(spec.subject, days, benchmark, method)
        raise ValueError(f"Unknown cache kind: {spec.kind}")

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    async def _serve(
        self, spec: CacheKey, force: bool, actions: dict[str, str] | None = None
    ) -> CacheEntry:
        if force:
            entry = await self.cache.force_refresh(spec, self.compute_for(spec))
            if entry is None:
                raise CacheMiss(spec.key, actions)
        else:
            entry = await self.cache.read(spec, actions)
        self.cache.raise_for_error(entry)
        if entry.payload is None:
            raise CacheMiss(spec.key, actions)
        return entry

    async def _require_price_history(self, ticker: str) -> None:
        asset_class = await self.peek_class(ticker)
        if not asset_class.supports_price_history:
            raise NoDataForInstrument(ticker, asset_class.value)

    async def get_ticker_risk(
        self, ticker: str, days: int, benchmark: str, force: bool = False
    ) -> CacheEntry:
        """
        Raises:
            NoDataForInstrument: Fund or other instrument without coverage
            InsufficientHistory: Too few closes in the window
            CacheMiss: First request, calculation scheduled
        """
        ticker = ticker.upper()
        await self._require_price_history(ticker)
        spec = ticker_risk_key(ticker, days, benchmark)
        actions = {"refresh": f"/api/risk/{ticker}?days={days}&benchmark={benchmark.upper()}&force=true"}
        return await self._serve(spec, force, actions)

    async def get_downside_risk(
        self, portfolio_id: str, days: int, benchmark: str, force: bool = False
    ) -> dict[str, Any]:
        spec = downside_risk_key(portfolio_id, days, benchmark)
        actions = {
            "refresh": (
                f"/api/portfolio/{portfolio_id}/downside-risk"
                f"?days={days}&benchmark={benchmark.upper()}&force=true"
            ),
            "status": f"/api/portfolio/{portfolio_id}/cache-status",
        }
        entry = await self._serve(spec, force, actions)
        return {**entry.payload, "cache_status": self.cache_status(entry), "actions": actions}

    async def get_correlation(self, tickers: Sequence[str], days: int, force: bool = False) -> CacheEntry:
        tickers = list(dict.fromkeys(t.strip().upper() for t in tickers if t.strip()))
        if not tickers:
            raise ValidationError("At least one ticker is required")
        if len(tickers) > settings.correlation_max_tickers:
            raise ValidationError(
                f"At most {settings.correlation_max_tickers} tickers can be correlated",
                details={"tickers": tickers},
            )
        return await self._serve(correlation_key(tickers, days), force)

    async def get_portfolio_correlation(
        self, portfolio_id: str, days: int, force: bool = False
    ) -> dict[str, Any]:
        spec = portfolio_correlation_key(portfolio_id, days)
        actions = {
            "refresh": f"/api/portfolio/{portfolio_id}/correlation?days={days}&force=true",
            "status": f"/api/portfolio/{portfolio_id}/cache-status",
        }
        entry = await self._serve(spec, force, actions)
        return {**entry.payload, "cache_status": self.cache_status(entry), "actions": actions}

    async def get_beta_forecast(
        self,
        ticker: str,
        days: int,
        benchmark: str,
        method: ForecastMethod = ForecastMethod.ENSEMBLE,
        force: bool = False,
    ) -> CacheEntry:
        ticker = ticker.upper()
        await self._require_price_history(ticker)
        spec = beta_forecast_key(ticker, days, benchmark, method)
        actions = {
            "refresh": (
                f"/api/beta-forecast/{ticker}?days={days}&benchmark={benchmark.upper()}"
                f"&method={method.value}&force=true"
            )
        }
        return await self._serve(spec, force, actions)

    def cache_status(self, entry: CacheEntry) -> dict[str, Any]:
        return {
            "status": entry.status.value,
            "last_updated": entry.calculated_at.isoformat() if entry.calculated_at else None,
            "is_stale": entry.status is not CacheStatus.FRESH,
            "retry_count": entry.retry_count,
            "last_error": entry.last_error,
        }

    # -------------------------------------------------------------------------
    # Portfolio cache management
    # -------------------------------------------------------------------------

    async def refresh_portfolio(self, portfolio_id: str) -> dict[str, str]:
        """Recompute the default downside and correlation entries of a portfolio."""
        results = {}
        for spec in (
            downside_risk_key(portfolio_id, settings.risk_default_days, settings.risk_default_benchmark),
            portfolio_correlation_key(portfolio_id, settings.risk_default_days),
        ):
            outcome = await self.cache.refresh(spec, self.compute_for(spec))
            results[spec.kind.value] = outcome.result.value
        return results


# =============================================================================
# Factory
# =============================================================================


async def get_analytics_service() -> RiskAnalyticsService:
    """Service wired to Postgres, Valkey and the Celery refresh task."""
    from portfolio_risk.jobs.dispatch import enqueue_cache_refresh
    from portfolio_risk.repositories.risk_cache_orm import SqlCacheStorage
    from portfolio_risk.services.providers import build_price_resolver

    clock = SystemClock()
    cache = RiskCacheService(SqlCacheStorage(), clock=clock, scheduler=enqueue_cache_refresh)
    return RiskAnalyticsService(await build_price_resolver(clock), cache, clock=clock)
