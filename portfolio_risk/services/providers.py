"""Wiring of the price resolver and instrument classification.

Usage:
    from portfolio_risk.services.providers import build_price_resolver

    resolver = await build_price_resolver()
    series = await resolver.ensure_history("AAPL", days=730)
"""

from __future__ import annotations

from portfolio_risk.cache.client import get_valkey_client
from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.classification import (
    AssetClass,
    classify_from_info,
    classify_instrument,
    looks_like_mutual_fund,
)
from portfolio_risk.providers.base import PriceProvider
from portfolio_risk.providers.budget import ValkeyCallBudget
from portfolio_risk.providers.failure_cache import FailureCache
from portfolio_risk.providers.resolver import PriceResolver
from portfolio_risk.providers.twelvedata import TwelveDataProvider
from portfolio_risk.providers.yahoo import YahooProvider
from portfolio_risk.repositories import prices_orm as prices_repo
from portfolio_risk.repositories.prices_orm import SqlPriceStore


logger = get_logger("services.providers")

# Negative results are per process; the budget is what must be shared
_failure_cache: FailureCache | None = None


def get_failure_cache() -> FailureCache:
    global _failure_cache
    if _failure_cache is None:
        _failure_cache = FailureCache()
    return _failure_cache


def configured_providers() -> list[PriceProvider]:
    """TwelveData first when a key is configured, Yahoo as fallback."""
    providers: list[PriceProvider] = []
    if settings.twelvedata_api_key:
        providers.append(TwelveDataProvider())
    else:
        logger.debug("TwelveData API key not set, Yahoo is the only provider")
    providers.append(YahooProvider())
    return providers


async def build_price_resolver(clock: Clock | None = None) -> PriceResolver:
    """Resolver for the running event loop (the Valkey client is loop bound)."""
    clock = clock or SystemClock()
    return PriceResolver(
        providers=configured_providers(),
        budget=ValkeyCallBudget(await get_valkey_client(), clock=clock),
        failure_cache=get_failure_cache(),
        store=SqlPriceStore(),
        clock=clock,
    )


async def stored_or_shape_class(ticker: str) -> AssetClass:
    """Asset class without any provider call, for request paths."""
    stored = await prices_repo.get_asset_class(ticker)
    return stored if stored is not None else classify_instrument(ticker)


async def classify_ticker(ticker: str, category: str | None = None) -> AssetClass:
    """
    Resolve and persist the asset class of ``ticker`` once.

    Later calls read the stored value. Fund-shaped tickers are classified
    from their shape so no provider lookup is spent on them.
    """
    ticker = ticker.upper()
    stored = await prices_repo.get_asset_class(ticker)
    if stored is not None:
        return stored

    if looks_like_mutual_fund(ticker) or category:
        asset_class = classify_instrument(ticker, category=category)
        await prices_repo.upsert_instrument(ticker, asset_class, source="shape")
        return asset_class

    info = await YahooProvider().lookup_info(ticker)
    if not info.get("quote_type"):
        # Lookup failed; guess for now and classify again next time
        return classify_instrument(ticker)
    asset_class = classify_from_info(ticker, info)
    await prices_repo.upsert_instrument(
        ticker, asset_class, name=info.get("name"), source="yahoo"
    )
    logger.info(f"Classified {ticker} as {asset_class.value}")
    return asset_class
