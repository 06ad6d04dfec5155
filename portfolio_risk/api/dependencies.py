"""API dependencies."""

from __future__ import annotations

from portfolio_risk.services.analytics import RiskAnalyticsService, get_analytics_service


async def get_service() -> RiskAnalyticsService:
    """Analytics service bound to the request's event loop."""
    return await get_analytics_service()
