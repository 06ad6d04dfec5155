"""Built-in job definitions for scheduled tasks.

Jobs:
- refresh_prices: Ensure price history for tracked tickers (Mon-Fri 10:30 PM UTC)
- recompute_stale: Refresh stale and expired cache entries (every 15 min)
- retry_errors: Retry failed entries past their backoff (every 10 min)
- refresh_downside_risk: Per-portfolio downside risk and correlation (hourly)
- refresh_correlations: Portfolio correlation matrices (Mon-Fri 11 PM UTC)
- evaluate_alerts: Live alert rule evaluation (every 30 min)
- cleanup_failure_cache: Drop expired negative results (hourly)
"""

from __future__ import annotations

import asyncio

from portfolio_risk.core.config import settings
from portfolio_risk.core.exceptions import ProviderUnavailable
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.cache import CacheEntry, CacheKey
from portfolio_risk.providers.resolver import NotFound
from portfolio_risk.repositories import alerts_orm as alerts_repo
from portfolio_risk.repositories import prices_orm as prices_repo
from portfolio_risk.services.alerts import (
    AlertEvaluator,
    EvaluationMode,
    snapshot_from_metrics,
)
from portfolio_risk.services.analytics import (
    downside_risk_key,
    get_analytics_service,
    portfolio_correlation_key,
    ticker_risk_key,
)
from portfolio_risk.services.providers import classify_ticker, get_failure_cache
from portfolio_risk.services.risk_cache import RefreshResult

from .executor import JobResult
from .registry import register_job


logger = get_logger("jobs.definitions")

SCAN_LIMIT = 200


async def _refresh_entries(entries: list[CacheEntry]) -> JobResult:
    """Refresh cache entries one by one; a failure never stops the batch."""
    service = await get_analytics_service()
    processed = failed = 0
    for entry in entries:
        spec = entry.cache_key
        try:
            outcome = await service.cache.refresh(spec, service.compute_for(spec))
        except Exception as e:
            logger.exception(f"Refresh crashed for {spec.key}: {e}")
            failed += 1
            continue
        if outcome.result is RefreshResult.COMPUTED:
            processed += 1
        elif outcome.result is RefreshResult.FAILED:
            failed += 1
    return JobResult(
        f"Refreshed {processed}/{len(entries)} entries, {failed} failed",
        items_processed=processed,
        items_failed=failed,
    )


# =============================================================================
# MARKET DATA
# =============================================================================


@register_job("refresh_prices")
async def refresh_prices_job() -> JobResult:
    """
    Fetch missing daily closes for every tracked ticker.

    Idempotent: tickers already covered up to the last trading day cost
    no provider call. Mutual funds and money market funds are skipped by
    classification, never by a failed lookup.
    """
    service = await get_analytics_service()
    tickers = await prices_repo.list_tracked_tickers()
    if not tickers:
        return JobResult("No tracked tickers")

    updated = unavailable = skipped = 0
    for ticker in tickers:
        asset_class = await classify_ticker(ticker)
        if not asset_class.supports_price_history:
            skipped += 1
            continue
        try:
            result = await service.resolver.ensure_history(
                ticker, settings.price_history_days, asset_class
            )
        except ProviderUnavailable:
            unavailable += 1
            continue
        if isinstance(result, NotFound):
            skipped += 1
        else:
            updated += 1

    return JobResult(
        f"Prices: {updated} current, {skipped} without coverage, {unavailable} unavailable",
        items_processed=updated,
        items_failed=unavailable,
    )


# =============================================================================
# CACHE MAINTENANCE
# =============================================================================


@register_job("recompute_stale")
async def recompute_stale_job() -> JobResult:
    """Recompute entries that were invalidated or outlived their TTL."""
    service = await get_analytics_service()
    entries = await service.cache.stale_entries(limit=SCAN_LIMIT)
    if not entries:
        return JobResult("No stale entries")
    return await _refresh_entries(entries)


@register_job("retry_errors")
async def retry_errors_job() -> JobResult:
    """Retry failed entries whose exponential backoff window has elapsed."""
    service = await get_analytics_service()
    entries = await service.cache.due_for_retry(limit=SCAN_LIMIT)
    if not entries:
        return JobResult("No entries due for retry")
    return await _refresh_entries(entries)


# =============================================================================
# PORTFOLIO ANALYTICS
# =============================================================================


@register_job("refresh_downside_risk")
async def refresh_downside_risk_job() -> JobResult:
    """
    Recompute the default downside risk and correlation of every portfolio.

    Portfolios run one at a time with a pause in between so provider calls
    stay within rate limits. A single portfolio is cut off after
    ``portfolio_refresh_timeout_seconds``.
    """
    service = await get_analytics_service()
    portfolio_ids = await prices_repo.list_portfolio_ids()
    processed = failed = 0

    for index, portfolio_id in enumerate(portfolio_ids):
        if index:
            await asyncio.sleep(settings.portfolio_refresh_delay_seconds)
        try:
            results = await asyncio.wait_for(
                service.refresh_portfolio(portfolio_id),
                timeout=settings.portfolio_refresh_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Portfolio {portfolio_id} refresh timed out")
            failed += 1
            continue
        except Exception as e:
            logger.exception(f"Portfolio {portfolio_id} refresh crashed: {e}")
            failed += 1
            continue

        if RefreshResult.FAILED.value in results.values():
            failed += 1
        else:
            processed += 1

    return JobResult(
        f"Refreshed {processed}/{len(portfolio_ids)} portfolios",
        items_processed=processed,
        items_failed=failed,
    )


@register_job("refresh_correlations")
async def refresh_correlations_job() -> JobResult:
    service = await get_analytics_service()
    specs: list[CacheKey] = [
        portfolio_correlation_key(pid, settings.risk_default_days)
        for pid in await prices_repo.list_portfolio_ids()
    ]
    processed = failed = 0
    for spec in specs:
        outcome = await service.cache.refresh(spec, service.compute_for(spec))
        if outcome.result is RefreshResult.COMPUTED:
            processed += 1
        elif outcome.result is RefreshResult.FAILED:
            failed += 1
    return JobResult(
        f"Correlations: {processed}/{len(specs)} computed",
        items_processed=processed,
        items_failed=failed,
    )


# =============================================================================
# ALERTS
# =============================================================================


@register_job("evaluate_alerts")
async def evaluate_alerts_job() -> JobResult:
    """
    Evaluate enabled alert rules in live mode.

    Metrics come from the cache only; a rule whose metrics are not cached
    yet is evaluated as "not available" and does not trigger.
    """
    service = await get_analytics_service()
    evaluator = AlertEvaluator(sink=alerts_repo.SqlAlertSink(), clock=service.clock)
    rules = await alerts_repo.list_enabled_rules()
    triggered = failed = 0

    for rule in rules:
        try:
            if rule.ticker:
                entry = await service.cache.get(
                    ticker_risk_key(rule.ticker, settings.risk_default_days, settings.risk_default_benchmark)
                )
                metrics = entry.payload if entry else None
                price_change = await prices_repo.get_price_change(rule.ticker)
            elif rule.portfolio_id:
                entry = await service.cache.get(
                    downside_risk_key(
                        rule.portfolio_id, settings.risk_default_days, settings.risk_default_benchmark
                    )
                )
                metrics = entry.payload.get("portfolio_metrics") if entry and entry.payload else None
                price_change = None
            else:
                continue

            evaluation = await evaluator.evaluate(
                rule, snapshot_from_metrics(metrics, price_change), EvaluationMode.LIVE
            )
            if evaluation.notified:
                triggered += 1
        except Exception as e:
            logger.exception(f"Alert rule {rule.id} evaluation failed: {e}")
            failed += 1

    return JobResult(
        f"Evaluated {len(rules)} rules, {triggered} triggered",
        items_processed=len(rules) - failed,
        items_failed=failed,
    )


# =============================================================================
# CLEANUP
# =============================================================================


@register_job("cleanup_failure_cache")
async def cleanup_failure_cache_job() -> JobResult:
    removed = get_failure_cache().cleanup_expired()
    return JobResult(f"Removed {removed} expired failure records", items_processed=removed)
