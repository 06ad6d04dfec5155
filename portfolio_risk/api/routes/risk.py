"""Ticker risk, correlation and beta forecast endpoints.

All reads are served from the risk cache. A first request answers 404
``CACHE_MISS`` and schedules the calculation; ``force=true`` computes
synchronously (or waits on a calculation that is already running).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Path, Query

from portfolio_risk.analytics.forecast import ForecastMethod
from portfolio_risk.core.config import settings
from portfolio_risk.core.exceptions import ValidationError
from portfolio_risk.schemas.common import ErrorResponse
from portfolio_risk.services.analytics import RiskAnalyticsService

from ..dependencies import get_service


router = APIRouter()

_TICKER = Path(..., min_length=1, max_length=20, pattern=r"^[A-Za-z0-9.\-^=]+$")


@router.get(
    "/risk/{ticker}",
    summary="Ticker risk metrics",
    responses={
        404: {"model": ErrorResponse, "description": "No data for instrument, or not calculated yet"},
        422: {"model": ErrorResponse, "description": "Insufficient history"},
    },
)
async def get_ticker_risk(
    ticker: str = _TICKER,
    days: int = Query(settings.risk_default_days, ge=20, le=3650),
    benchmark: str = Query(settings.risk_default_benchmark, max_length=20),
    force: bool = Query(False, description="Recalculate now instead of serving the cache"),
    service: RiskAnalyticsService = Depends(get_service),
) -> dict[str, Any]:
    entry = await service.get_ticker_risk(ticker, days, benchmark, force=force)
    return {**entry.payload, "cache_status": service.cache_status(entry)}


@router.get(
    "/correlation",
    summary="Correlation matrix",
    description="Pairwise correlation of daily returns for up to ten tickers.",
)
async def get_correlation(
    tickers: str = Query(..., min_length=1, description="Comma separated tickers"),
    days: int = Query(settings.risk_default_days, ge=20, le=3650),
    force: bool = Query(False),
    service: RiskAnalyticsService = Depends(get_service),
) -> dict[str, Any]:
    entry = await service.get_correlation(tickers.split(","), days, force=force)
    return {**entry.payload, "cache_status": service.cache_status(entry)}


@router.get(
    "/beta-forecast/{ticker}",
    summary="Beta forecast",
    responses={
        404: {"model": ErrorResponse, "description": "No data for instrument, or not calculated yet"},
        422: {"model": ErrorResponse, "description": "Insufficient history"},
    },
)
async def get_beta_forecast(
    ticker: str = _TICKER,
    days: int = Query(30, ge=1, le=90, description="Days ahead to forecast"),
    benchmark: str = Query(settings.risk_default_benchmark, max_length=20),
    method: str = Query(ForecastMethod.ENSEMBLE.value),
    force: bool = Query(False),
    service: RiskAnalyticsService = Depends(get_service),
) -> dict[str, Any]:
    try:
        forecast_method = ForecastMethod.parse(method)
    except ValueError:
        raise ValidationError(
            f"Unknown forecast method: {method}",
            details={"allowed": [m.value for m in ForecastMethod]},
        )
    entry = await service.get_beta_forecast(ticker, days, benchmark, forecast_method, force=force)
    return {**entry.payload, "cache_status": service.cache_status(entry)}
