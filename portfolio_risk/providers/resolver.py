"""
Price resolver: ordered provider fallback with budgets and a negative cache.

resolve(ticker) walks the provider list in order. For each provider it asks
every configured ticker variant until one returns a non-empty series:

- "unsupported" answers (404, plan restriction, empty) move on to the next
  variant, then the next provider
- transient failures (network, parse, rate limit) skip the rest of that
  provider and move on
- a provider whose daily budget is spent is skipped without a call

If every provider answered "unsupported" the result is ``NotFound``, a normal
outcome for funds and other uncovered instruments. If at least one provider
failed transiently and none succeeded, ``ProviderUnavailable`` is raised so
the caller retries later instead of caching a false "no data".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Protocol, Sequence

from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.exceptions import ProviderUnavailable
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.classification import AssetClass
from portfolio_risk.domain.price import PriceSeries

from .base import PriceProvider, ProviderError, ProviderErrorKind, ticker_variants
from .budget import CallBudget, InMemoryCallBudget
from .failure_cache import FailureCache, FailureType


logger = get_logger("providers.resolver")


@dataclass(frozen=True)
class NotFound:
    """No provider covers the ticker."""

    ticker: str
    reason: str = "no_provider_coverage"
    attempted: tuple[str, ...] = field(default_factory=tuple)


class PriceStore(Protocol):
    """Persistence used by the resolver, implemented by the prices repository."""

    async def get_series(self, ticker: str, start: date, end: date) -> PriceSeries: ...

    async def upsert_series(self, ticker: str, series: PriceSeries) -> int: ...


def last_trading_day(today: date) -> date:
    """Most recent weekday strictly before ``today`` (the latest published close)."""
    day = today - timedelta(days=1)
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day


class PriceResolver:
    def __init__(
        self,
        providers: Sequence[PriceProvider],
        budget: CallBudget | None = None,
        failure_cache: FailureCache | None = None,
        store: PriceStore | None = None,
        clock: Clock | None = None,
    ):
        if not providers:
            raise ValueError("PriceResolver needs at least one provider")
        self.providers = list(providers)
        self.clock = clock or SystemClock()
        self.budget = budget if budget is not None else InMemoryCallBudget(clock=self.clock)
        self.failure_cache = failure_cache if failure_cache is not None else FailureCache(clock=self.clock)
        self.store = store

    async def resolve(
        self,
        ticker: str,
        start: date,
        end: date,
        asset_class: AssetClass | None = None,
    ) -> PriceSeries | NotFound:
        """
        Fetch ``ticker`` closes between ``start`` and ``end`` from the first
        provider that has them and persist them when a store is attached.

        Raises:
            ProviderUnavailable: Every provider failed transiently, now or
                within the cached failure window
        """
        ticker = ticker.strip().upper()
        if asset_class is not None and not asset_class.supports_price_history:
            return NotFound(ticker, reason=f"asset_class:{asset_class.value}")

        cached = self.failure_cache.get(ticker)
        if cached is not None:
            logger.debug(f"Skipping {ticker}, cached {cached.failure_type.value} failure")
            if cached.failure_type is FailureType.NOT_FOUND:
                return NotFound(ticker, reason=f"cached:{cached.failure_type.value}")
            # Transient failures stay transient until the record expires
            raise ProviderUnavailable(ticker, {"cached": f"{cached.failure_type.value}: {cached.reason}"})

        attempted: list[str] = []
        transient: dict[str, str] = {}
        rate_limited = False

        for provider in self.providers:
            for symbol in ticker_variants(provider, ticker):
                if not await self.budget.reserve(provider.name):
                    transient[provider.name] = "daily budget exhausted"
                    logger.info(f"{provider.name} budget exhausted, escalating for {ticker}")
                    break

                attempted.append(f"{provider.name}:{symbol}")
                try:
                    series = await provider.fetch(symbol, start, end)
                except ProviderError as e:
                    if e.is_unsupported:
                        logger.debug(f"{provider.name} does not cover {symbol}: {e.message}")
                        continue
                    transient[provider.name] = str(e)
                    if e.kind is ProviderErrorKind.RATE_LIMITED:
                        rate_limited = True
                        await self.budget.exhaust(provider.name)
                    logger.warning(f"{provider.name} failed for {symbol}: {e}")
                    break

                if series.is_empty:
                    continue

                series = series.model_copy(
                    update={"ticker": ticker, "source": provider.name, "resolved_symbol": symbol}
                )
                self.failure_cache.clear(ticker)
                if self.store is not None:
                    await self.store.upsert_series(ticker, series)
                logger.info(
                    f"Resolved {ticker} via {provider.name} as {symbol}",
                    extra={"points": len(series)},
                )
                return series

        if transient:
            if rate_limited and len(transient) == len(self.providers):
                self.failure_cache.record_failure(ticker, FailureType.RATE_LIMITED, "all providers rate limited")
            raise ProviderUnavailable(ticker, transient)

        self.failure_cache.record_failure(ticker, FailureType.NOT_FOUND, ", ".join(attempted))
        return NotFound(ticker, attempted=tuple(attempted))

    async def ensure_history(
        self,
        ticker: str,
        days: int,
        asset_class: AssetClass | None = None,
    ) -> PriceSeries | NotFound:
        """
        Return stored history for the last ``days`` calendar days, fetching
        only when the store is missing the latest published close.

        Re-running for an already covered range is a no-op beyond the
        freshness check.
        """
        ticker = ticker.strip().upper()
        today = self.clock.now().date()
        start = today - timedelta(days=days)

        if self.store is None:
            return await self.resolve(ticker, start, today, asset_class)

        stored = await self.store.get_series(ticker, start, today)
        if not stored.is_empty and stored.end_date >= last_trading_day(today) and stored.start_date <= start + timedelta(days=7):
            return stored

        fetch_start = start
        if not stored.is_empty and stored.start_date <= start + timedelta(days=7):
            fetch_start = stored.end_date + timedelta(days=1)

        try:
            fetched = await self.resolve(ticker, fetch_start, today, asset_class)
        except ProviderUnavailable:
            if stored.is_empty:
                raise
            logger.warning(f"Serving stored prices for {ticker}, providers unavailable")
            return stored

        if isinstance(fetched, NotFound):
            if stored.is_empty:
                return fetched
            # An empty incremental window (holiday) is not a coverage gap
            self.failure_cache.clear(ticker)
            return stored
        return await self.store.get_series(ticker, start, today)
