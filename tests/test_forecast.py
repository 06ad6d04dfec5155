"""Tests for the beta forecast engine."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from portfolio_risk.analytics.forecast import (
    BETA_CAP,
    BETA_FLOOR,
    ForecastMethod,
    ForecastRun,
    ForecastState,
    classify_regime,
    detect_regime_changes,
    ensemble_forecast,
    mean_reversion_forecast,
)
from portfolio_risk.analytics.metrics import BetaPoint
from portfolio_risk.core.exceptions import InsufficientHistory


AS_OF = date(2024, 6, 3)


def beta_history(values: list[float], start: date = date(2024, 1, 1)) -> list[BetaPoint]:
    return [
        BetaPoint(date=(start + timedelta(days=i)).isoformat(), beta=v, r_squared=0.5, alpha=0.0)
        for i, v in enumerate(values)
    ]


def wobbly(n: int, center: float = 1.2, amplitude: float = 0.05) -> list[float]:
    return [center + (amplitude if i % 2 else -amplitude) for i in range(n)]


class TestForecastMethod:
    """Tests for method parsing."""

    def test_default_is_ensemble(self):
        assert ForecastMethod.parse(None) is ForecastMethod.ENSEMBLE

    def test_moving_average_alias(self):
        assert ForecastMethod.parse("moving_average") is ForecastMethod.MEAN_REVERSION

    def test_case_insensitive(self):
        assert ForecastMethod.parse(" Linear_Regression ") is ForecastMethod.LINEAR_REGRESSION

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            ForecastMethod.parse("arima")


class TestModels:
    """Tests for the individual forecast models."""

    def test_mean_reversion_moves_toward_one(self):
        """Predictions decay from the current beta toward the market beta."""
        points = mean_reversion_forecast(1.8, 0.1, 30, AS_OF)
        assert len(points) == 30
        assert points[0].predicted_beta < 1.8
        assert points[-1].predicted_beta < points[0].predicted_beta
        assert all(p.predicted_beta > 1.0 for p in points)

    def test_bands_widen_with_horizon(self):
        points = mean_reversion_forecast(1.0, 0.2, 60, AS_OF)
        first = points[0].upper_bound - points[0].lower_bound
        last = points[-1].upper_bound - points[-1].lower_bound
        assert last > first

    def test_dates_start_after_as_of(self):
        points = mean_reversion_forecast(1.0, 0.1, 3, AS_OF)
        assert [p.date for p in points] == ["2024-06-04", "2024-06-05", "2024-06-06"]

    def test_ensemble_is_clamped(self):
        """Forecasts stay within the allowed beta range."""
        history = [0.5 + 0.05 * i for i in range(80)]
        points = ensemble_forecast(history, history[-1], 0.3, 90, AS_OF)
        assert len(points) == 90
        for p in points:
            assert BETA_FLOOR <= p.lower_bound <= p.predicted_beta <= p.upper_bound <= BETA_CAP


class TestRegimes:
    """Tests for regime change detection."""

    def test_stable_history_has_no_regime_change(self):
        assert detect_regime_changes(beta_history(wobbly(120))) == []

    def test_level_shift_is_detected(self):
        values = wobbly(60, center=0.8) + wobbly(60, center=1.6)
        changes = detect_regime_changes(beta_history(values))
        assert changes
        assert all(c.beta_after > c.beta_before for c in changes)

    def test_short_history_skipped(self):
        assert detect_regime_changes(beta_history(wobbly(50))) == []

    @pytest.mark.parametrize(
        "before,after,std,expected",
        [
            (1.0, 1.1, 0.4, "high_volatility"),
            (0.8, 1.5, 0.1, "structural_break"),
            (1.5, 1.1, 0.1, "mean_reversion"),
            (1.0, 1.2, 0.1, "increasing_beta"),
            (1.2, 1.0, 0.1, "decreasing_beta"),
        ],
    )
    def test_classify_regime(self, before, after, std, expected):
        assert classify_regime(before, after, std) == expected


class TestForecastRun:
    """Tests for the forecast run lifecycle."""

    def test_successful_run(self):
        run = ForecastRun("AAPL", "SPY")
        forecast = run.run(beta_history(wobbly(120)), days_ahead=30, as_of=AS_OF)

        assert run.state is ForecastState.FORECASTED
        assert forecast.ticker == "AAPL"
        assert forecast.methodology is ForecastMethod.ENSEMBLE
        assert len(forecast.forecast_points) == 30
        assert forecast.current_beta == pytest.approx(1.25)
        assert forecast.history_points == 120

    def test_insufficient_history(self):
        """Fewer than 60 rolling betas cannot be forecast."""
        run = ForecastRun("NEW", "SPY")
        with pytest.raises(InsufficientHistory) as exc_info:
            run.run(beta_history(wobbly(59)), days_ahead=30, as_of=AS_OF)

        assert run.state is ForecastState.FAILED
        assert exc_info.value.details["required"] == 60
        assert exc_info.value.details["available"] == 59

    def test_limited_history_warning(self):
        forecast = ForecastRun("AAPL", "SPY").run(beta_history(wobbly(70)), 10, AS_OF)
        assert any("Limited historical data" in w for w in forecast.warnings)

    def test_horizon_out_of_range(self):
        with pytest.raises(ValueError):
            ForecastRun("AAPL", "SPY").run(beta_history(wobbly(120)), days_ahead=91, as_of=AS_OF)

    def test_run_is_single_use(self):
        run = ForecastRun("AAPL", "SPY", method=ForecastMethod.MEAN_REVERSION)
        run.run(beta_history(wobbly(120)), 5, AS_OF)
        with pytest.raises(ValueError):
            run.run(beta_history(wobbly(120)), 5, AS_OF)

    def test_to_dict(self):
        forecast = ForecastRun("AAPL", "SPY", method=ForecastMethod.LINEAR_REGRESSION).run(
            beta_history(wobbly(120)), 5, AS_OF
        )
        data = forecast.to_dict()
        assert data["methodology"] == "linear_regression"
        assert len(data["forecast_points"]) == 5
