"""Alert evaluation schemas."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from portfolio_risk.services.alerts import AlertMetric, Comparator


class AlertRuleRequest(BaseModel):
    """Ad-hoc rule evaluated in test mode. Nothing is stored."""

    metric: AlertMetric
    comparator: Comparator
    threshold: float
    ticker: Optional[str] = Field(None, max_length=20)
    portfolio_id: Optional[str] = Field(None, max_length=64)
    severity: str = Field("medium", pattern="^(low|medium|high)$")
    days: int = Field(90, ge=20, le=3650)
    benchmark: str = Field("SPY", max_length=20)
    metrics: Optional[Dict[str, Optional[float]]] = Field(
        None,
        description="Metric snapshot to evaluate against instead of cached metrics",
    )

    @model_validator(mode="after")
    def _needs_subject(self) -> "AlertRuleRequest":
        if self.metrics is None and not (self.ticker or self.portfolio_id):
            raise ValueError("ticker, portfolio_id or metrics is required")
        return self


class AlertEvaluationResponse(BaseModel):
    would_trigger: bool
    actual_value: Optional[float] = None
    message: str
    rule_id: Optional[int] = None
    severity: Optional[str] = None
    mode: str
    notified: bool = False
    in_cooldown: bool = False
