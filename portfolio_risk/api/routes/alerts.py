"""Alert rule evaluation endpoint (test mode)."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from portfolio_risk.repositories import prices_orm as prices_repo
from portfolio_risk.schemas.alerts import AlertEvaluationResponse, AlertRuleRequest
from portfolio_risk.services.alerts import (
    AlertEvaluator,
    AlertRule,
    EvaluationMode,
    snapshot_from_metrics,
)
from portfolio_risk.services.analytics import RiskAnalyticsService

from ..dependencies import get_service


router = APIRouter(prefix="/alerts")


@router.post(
    "/evaluate",
    response_model=AlertEvaluationResponse,
    summary="Evaluate an alert rule",
    description=(
        "Evaluate a rule against the current cached metrics without recording "
        "or notifying. Scheduled live evaluation uses the same comparison."
    ),
)
async def evaluate_alert(
    request: AlertRuleRequest,
    service: RiskAnalyticsService = Depends(get_service),
) -> AlertEvaluationResponse:
    rule = AlertRule(
        metric=request.metric,
        comparator=request.comparator,
        threshold=request.threshold,
        severity=request.severity,
        ticker=request.ticker.upper() if request.ticker else None,
        portfolio_id=request.portfolio_id,
    )

    if request.metrics is not None:
        snapshot = dict(request.metrics)
    elif rule.ticker:
        entry = await service.get_ticker_risk(rule.ticker, request.days, request.benchmark)
        snapshot = snapshot_from_metrics(entry.payload, await prices_repo.get_price_change(rule.ticker))
    else:
        payload = await service.get_downside_risk(rule.portfolio_id, request.days, request.benchmark)
        snapshot = snapshot_from_metrics(payload.get("portfolio_metrics"))

    evaluation = await AlertEvaluator(clock=service.clock).evaluate(rule, snapshot, EvaluationMode.TEST)
    return AlertEvaluationResponse(**evaluation.to_dict())
