"""Threshold alert evaluation.

Test and live evaluation share ``evaluate_rule``; live mode only adds the
cooldown check and hands triggered results to an ``AlertSink``. A rule that
would trigger in test mode therefore triggers identically live.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, Mapping, Protocol

from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.logging import get_logger


logger = get_logger("services.alerts")


class AlertMetric(StrEnum):
    VOLATILITY = "volatility"
    MAX_DRAWDOWN = "max_drawdown"
    BETA = "beta"
    SHARPE_RATIO = "sharpe_ratio"
    SORTINO_RATIO = "sortino_ratio"
    VALUE_AT_RISK = "value_at_risk"
    RISK_SCORE = "risk_score"
    PRICE_CHANGE = "price_change"


class Comparator(StrEnum):
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    EQ = "eq"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]


_SYMBOLS = {
    Comparator.GT: ">",
    Comparator.LT: "<",
    Comparator.GTE: ">=",
    Comparator.LTE: "<=",
    Comparator.EQ: "=",
}

_UNITS = {
    AlertMetric.VOLATILITY: "%",
    AlertMetric.MAX_DRAWDOWN: "%",
    AlertMetric.VALUE_AT_RISK: "%",
    AlertMetric.PRICE_CHANGE: "%",
}


class EvaluationMode(StrEnum):
    TEST = "test"
    LIVE = "live"


@dataclass
class AlertRule:
    metric: AlertMetric
    comparator: Comparator
    threshold: float
    severity: str = "medium"
    enabled: bool = True
    id: int | None = None
    name: str | None = None
    ticker: str | None = None
    portfolio_id: str | None = None
    cooldown_hours: int = 24
    last_triggered_at: datetime | None = None


@dataclass
class AlertEvaluation:
    would_trigger: bool
    actual_value: float | None
    message: str
    rule_id: int | None = None
    severity: str | None = None
    mode: EvaluationMode = EvaluationMode.TEST
    notified: bool = False
    in_cooldown: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


class AlertSink(Protocol):
    """Receives live triggers; persistence and notification live behind it."""

    async def record(self, rule: AlertRule, evaluation: AlertEvaluation, at: datetime) -> None: ...


# =============================================================================
# Pure evaluation
# =============================================================================


def compare_values(
    actual: Decimal | float | int | None,
    threshold: Decimal | float | int | None,
    comparator: Comparator | str,
) -> bool:
    """Compare as Decimals built from each value's shortest repr."""
    if actual is None or threshold is None:
        return False
    actual_d = Decimal(str(actual))
    threshold_d = Decimal(str(threshold))
    op = Comparator(str(comparator).lower())

    if op is Comparator.GT:
        return actual_d > threshold_d
    if op is Comparator.LT:
        return actual_d < threshold_d
    if op is Comparator.GTE:
        return actual_d >= threshold_d
    if op is Comparator.LTE:
        return actual_d <= threshold_d
    return actual_d == threshold_d


def evaluate_rule(rule: AlertRule, snapshot: Mapping[str, float | None]) -> AlertEvaluation:
    """Evaluate one rule against a metrics snapshot. No side effects."""
    if not rule.enabled:
        return AlertEvaluation(False, None, "Rule is disabled", rule.id, rule.severity)

    actual = snapshot.get(rule.metric.value)
    if actual is None:
        return AlertEvaluation(
            False, None, f"{rule.metric.value} not available", rule.id, rule.severity
        )

    triggered = compare_values(actual, rule.threshold, rule.comparator)
    unit = _UNITS.get(rule.metric, "")
    subject = rule.ticker or (f"portfolio {rule.portfolio_id}" if rule.portfolio_id else "")
    message = (
        f"{subject + ' ' if subject else ''}{rule.metric.value} is {actual:.2f}{unit} "
        f"({'meets' if triggered else 'does not meet'} {rule.comparator.symbol} "
        f"{rule.threshold:.2f}{unit})"
    )
    return AlertEvaluation(triggered, float(actual), message, rule.id, rule.severity)


def is_in_cooldown(rule: AlertRule, now: datetime) -> bool:
    if rule.last_triggered_at is None:
        return False
    return now < rule.last_triggered_at + timedelta(hours=rule.cooldown_hours)


def snapshot_from_metrics(
    metrics: Mapping[str, Any] | None, price_change: float | None = None
) -> dict[str, float | None]:
    """Flatten a cached risk payload (ticker or downside) into alert metrics."""
    metrics = metrics or {}
    snapshot = {metric.value: metrics.get(metric.value) for metric in AlertMetric}
    snapshot[AlertMetric.PRICE_CHANGE.value] = price_change
    return snapshot


# =============================================================================
# Evaluator
# =============================================================================


class AlertEvaluator:
    def __init__(self, sink: AlertSink | None = None, clock: Clock | None = None):
        self.sink = sink
        self.clock = clock or SystemClock()

    async def evaluate(
        self,
        rule: AlertRule,
        snapshot: Mapping[str, float | None],
        mode: EvaluationMode = EvaluationMode.TEST,
    ) -> AlertEvaluation:
        evaluation = evaluate_rule(rule, snapshot)
        evaluation.mode = mode
        if mode is EvaluationMode.TEST or not evaluation.would_trigger:
            return evaluation

        now = self.clock.now()
        if is_in_cooldown(rule, now):
            evaluation.in_cooldown = True
            logger.debug(f"Alert rule {rule.id} triggered during cooldown")
            return evaluation

        if self.sink is not None:
            await self.sink.record(rule, evaluation, now)
            evaluation.notified = True
            rule.last_triggered_at = now
            logger.info(
                f"Alert rule {rule.id} triggered: {evaluation.message}",
                extra={"rule_id": rule.id, "severity": rule.severity},
            )
        return evaluation
