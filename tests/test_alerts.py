"""Tests for alert rule evaluation."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from portfolio_risk.services.alerts import (
    AlertEvaluator,
    AlertMetric,
    AlertRule,
    Comparator,
    EvaluationMode,
    compare_values,
    evaluate_rule,
    is_in_cooldown,
    snapshot_from_metrics,
)


def volatility_rule(**kwargs) -> AlertRule:
    defaults = dict(
        id=1,
        ticker="AAPL",
        metric=AlertMetric.VOLATILITY,
        comparator=Comparator.GT,
        threshold=30.0,
        severity="high",
    )
    defaults.update(kwargs)
    return AlertRule(**defaults)


class TestCompareValues:
    """Tests for threshold comparison."""

    @pytest.mark.parametrize(
        "actual,threshold,comparator,expected",
        [
            (31.0, 30.0, "gt", True),
            (30.0, 30.0, "gt", False),
            (30.0, 30.0, "gte", True),
            (29.9, 30.0, "lt", True),
            (30.0, 30.0, "lte", True),
            (0.3, 0.3, "eq", True),
            (None, 30.0, "gt", False),
        ],
    )
    def test_comparisons(self, actual, threshold, comparator, expected):
        assert compare_values(actual, threshold, comparator) is expected

    def test_comparator_case_insensitive(self):
        assert compare_values(5, 1, "GT") is True


class TestEvaluateRule:
    """Tests for pure rule evaluation."""

    def test_triggered(self):
        result = evaluate_rule(volatility_rule(), {"volatility": 35.5})
        assert result.would_trigger is True
        assert result.actual_value == 35.5
        assert "AAPL volatility is 35.50%" in result.message

    def test_not_triggered(self):
        result = evaluate_rule(volatility_rule(), {"volatility": 20.0})
        assert result.would_trigger is False
        assert "does not meet" in result.message

    def test_missing_metric_never_triggers(self):
        result = evaluate_rule(volatility_rule(), {"volatility": None})
        assert result.would_trigger is False
        assert result.message == "volatility not available"

    def test_disabled_rule(self):
        result = evaluate_rule(volatility_rule(enabled=False), {"volatility": 99.0})
        assert result.would_trigger is False
        assert result.message == "Rule is disabled"


class TestSnapshot:
    def test_snapshot_from_cached_payload(self):
        snapshot = snapshot_from_metrics({"volatility": 25.0, "beta": 1.2, "ticker": "AAPL"}, 3.5)
        assert snapshot["volatility"] == 25.0
        assert snapshot["beta"] == 1.2
        assert snapshot["price_change"] == 3.5
        assert snapshot["sharpe_ratio"] is None
        assert "ticker" not in snapshot

    def test_snapshot_without_metrics(self):
        snapshot = snapshot_from_metrics(None)
        assert all(value is None for value in snapshot.values())


class TestEvaluator:
    """Tests for test and live evaluation modes."""

    @pytest.mark.asyncio
    async def test_test_and_live_agree(self, clock):
        """A rule that triggers in test mode triggers identically live."""
        sink = AsyncMock()
        evaluator = AlertEvaluator(sink=sink, clock=clock)
        snapshot = {"volatility": 41.0}

        test_result = await evaluator.evaluate(volatility_rule(), snapshot, EvaluationMode.TEST)
        live_result = await evaluator.evaluate(volatility_rule(), snapshot, EvaluationMode.LIVE)

        assert test_result.would_trigger == live_result.would_trigger
        assert test_result.actual_value == live_result.actual_value
        assert test_result.message == live_result.message
        assert test_result.notified is False
        assert live_result.notified is True

    @pytest.mark.asyncio
    async def test_test_mode_never_records(self, clock):
        sink = AsyncMock()
        evaluator = AlertEvaluator(sink=sink, clock=clock)
        await evaluator.evaluate(volatility_rule(), {"volatility": 41.0}, EvaluationMode.TEST)
        sink.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_live_records_trigger(self, clock):
        sink = AsyncMock()
        rule = volatility_rule()
        result = await AlertEvaluator(sink=sink, clock=clock).evaluate(
            rule, {"volatility": 41.0}, EvaluationMode.LIVE
        )

        sink.record.assert_awaited_once()
        assert sink.record.await_args.args[2] == clock.now()
        assert rule.last_triggered_at == clock.now()
        assert result.mode is EvaluationMode.LIVE

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_notification(self, clock):
        sink = AsyncMock()
        rule = volatility_rule(cooldown_hours=24, last_triggered_at=clock.now() - timedelta(hours=1))

        result = await AlertEvaluator(sink=sink, clock=clock).evaluate(
            rule, {"volatility": 41.0}, EvaluationMode.LIVE
        )

        assert result.would_trigger is True
        assert result.in_cooldown is True
        assert result.notified is False
        sink.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_triggered_live_is_quiet(self, clock):
        sink = AsyncMock()
        result = await AlertEvaluator(sink=sink, clock=clock).evaluate(
            volatility_rule(), {"volatility": 10.0}, EvaluationMode.LIVE
        )
        assert result.notified is False
        sink.record.assert_not_awaited()

    def test_cooldown_window(self, clock):
        rule = volatility_rule(cooldown_hours=2, last_triggered_at=clock.now())
        assert is_in_cooldown(rule, clock.now() + timedelta(hours=1))
        assert not is_in_cooldown(rule, clock.now() + timedelta(hours=2))
        assert not is_in_cooldown(volatility_rule(), clock.now())

    def test_to_dict(self):
        data = evaluate_rule(volatility_rule(), {"volatility": 35.0}).to_dict()
        assert data["mode"] == "test"
        assert data["would_trigger"] is True
