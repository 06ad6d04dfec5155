"""Alert rules and trigger events - SQLAlchemy ORM version."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update

from portfolio_risk.database.connection import get_session
from portfolio_risk.database.orm import AlertEvent
from portfolio_risk.database.orm import AlertRule as AlertRuleORM
from portfolio_risk.services.alerts import AlertEvaluation, AlertMetric, AlertRule, Comparator


def _to_rule(row: AlertRuleORM) -> AlertRule:
    return AlertRule(
        id=row.id,
        name=row.name,
        ticker=row.ticker,
        portfolio_id=row.portfolio_id,
        metric=AlertMetric(row.metric),
        comparator=Comparator(row.comparator),
        threshold=float(row.threshold),
        severity=row.severity,
        enabled=row.enabled,
        cooldown_hours=row.cooldown_hours or 0,
        last_triggered_at=row.last_triggered_at,
    )


async def list_enabled_rules() -> list[AlertRule]:
    async with get_session() as session:
        result = await session.execute(
            select(AlertRuleORM).where(AlertRuleORM.enabled == True).order_by(AlertRuleORM.id)  # noqa: E712
        )
        return [_to_rule(r) for r in result.scalars().all()]


class SqlAlertSink:
    """Stores the trigger as an ``alert_events`` row for the notification transport."""

    async def record(self, rule: AlertRule, evaluation: AlertEvaluation, at: datetime) -> None:
        async with get_session() as session:
            session.add(
                AlertEvent(
                    rule_id=rule.id,
                    actual_value=(
                        Decimal(str(evaluation.actual_value))
                        if evaluation.actual_value is not None
                        else None
                    ),
                    message=evaluation.message,
                    severity=rule.severity,
                    triggered_at=at,
                )
            )
            await session.execute(
                update(AlertRuleORM)
                .where(AlertRuleORM.id == rule.id)
                .values(last_triggered_at=at)
            )
            await session.commit()
