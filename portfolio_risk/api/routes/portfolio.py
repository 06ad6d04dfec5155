"""Portfolio risk endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Path, Query

from portfolio_risk.core.config import settings
from portfolio_risk.schemas.common import ErrorResponse
from portfolio_risk.schemas.risk import (
    CacheEntryStatus,
    InvalidateResponse,
    PortfolioCacheStatusResponse,
)
from portfolio_risk.services.analytics import RiskAnalyticsService

from ..dependencies import get_service


router = APIRouter(prefix="/portfolio")

_PORTFOLIO_ID = Path(..., min_length=1, max_length=64)


@router.get(
    "/{portfolio_id}/downside-risk",
    summary="Portfolio downside risk",
    responses={404: {"model": ErrorResponse, "description": "Not calculated yet"}},
)
async def get_downside_risk(
    portfolio_id: str = _PORTFOLIO_ID,
    days: int = Query(settings.risk_default_days, ge=20, le=3650),
    benchmark: str = Query(settings.risk_default_benchmark, max_length=20),
    force: bool = Query(False),
    service: RiskAnalyticsService = Depends(get_service),
) -> dict[str, Any]:
    return await service.get_downside_risk(portfolio_id, days, benchmark, force=force)


@router.get(
    "/{portfolio_id}/correlation",
    summary="Portfolio correlation",
    description="Correlation of the largest holdings above one percent of portfolio value.",
)
async def get_portfolio_correlation(
    portfolio_id: str = _PORTFOLIO_ID,
    days: int = Query(settings.risk_default_days, ge=20, le=3650),
    force: bool = Query(False),
    service: RiskAnalyticsService = Depends(get_service),
) -> dict[str, Any]:
    return await service.get_portfolio_correlation(portfolio_id, days, force=force)


@router.get(
    "/{portfolio_id}/cache-status",
    response_model=PortfolioCacheStatusResponse,
    summary="Cache status of a portfolio's risk entries",
)
async def get_cache_status(
    portfolio_id: str = _PORTFOLIO_ID,
    service: RiskAnalyticsService = Depends(get_service),
) -> PortfolioCacheStatusResponse:
    entries = await service.cache.portfolio_status(portfolio_id)
    return PortfolioCacheStatusResponse(
        portfolio_id=portfolio_id,
        entries=[CacheEntryStatus(**e) for e in entries],
    )


@router.post(
    "/{portfolio_id}/invalidate",
    response_model=InvalidateResponse,
    summary="Mark a portfolio's risk entries stale",
    description="Call after holdings change. Entries are recalculated by the next scan.",
)
async def invalidate_portfolio(
    portfolio_id: str = _PORTFOLIO_ID,
    service: RiskAnalyticsService = Depends(get_service),
) -> InvalidateResponse:
    count = await service.cache.invalidate_portfolio(portfolio_id)
    return InvalidateResponse(
        portfolio_id=portfolio_id,
        invalidated=count,
        message=f"Marked {count} entries stale",
    )
