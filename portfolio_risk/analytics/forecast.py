"""
Beta Forecast Engine.

Projects a rolling-beta series forward with three independently fit models:

- Mean reversion: beta decays toward the market beta of 1.0
- Exponential smoothing (Holt): level + trend from the most recent points
- Linear trend: OLS on the last 30 points

The ensemble blends them (default 60/30/10). Confidence bands come from the
historical beta volatility scaled by sqrt(horizon / 30) so they widen the
further out the forecast goes. Regime changes are flagged where the mean of
the next 30 points deviates from the previous 30 by more than two standard
deviations.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from enum import StrEnum
from typing import Any, Sequence

import numpy as np
from scipy import stats

from portfolio_risk.analytics.metrics import BetaPoint
from portfolio_risk.core.exceptions import InsufficientHistory

logger = logging.getLogger(__name__)

CONFIDENCE_LEVEL = 0.95
Z_95 = 1.96
BETA_FLOOR = 0.0
BETA_CAP = 3.0
MARKET_BETA = 1.0
DECAY_RATE = 0.005  # half-life ~140 days
SMOOTHING_ALPHA = 0.3
SMOOTHING_BETA = 0.1
SMOOTHING_LOOKBACK = 10
LINEAR_LOOKBACK = 30
REGIME_WINDOW = 30
REGIME_Z_THRESHOLD = 2.0
MIN_HISTORY = 60
LIMITED_HISTORY = 90
MAX_DAYS_AHEAD = 90
DEFAULT_ENSEMBLE_WEIGHTS = (0.6, 0.3, 0.1)


class ForecastMethod(StrEnum):
    ENSEMBLE = "ensemble"
    MEAN_REVERSION = "mean_reversion"
    EXPONENTIAL_SMOOTHING = "exponential_smoothing"
    LINEAR_REGRESSION = "linear_regression"

    @classmethod
    def parse(cls, value: str | None) -> ForecastMethod:
        if not value:
            return cls.ENSEMBLE
        normalized = value.strip().lower()
        if normalized == "moving_average":
            return cls.MEAN_REVERSION
        return cls(normalized)


class ForecastState(StrEnum):
    IDLE = "idle"
    FITTING = "fitting"
    FORECASTED = "forecasted"
    FAILED = "failed"


@dataclass
class ForecastPoint:
    date: str
    predicted_beta: float
    lower_bound: float
    upper_bound: float
    confidence_level: float = CONFIDENCE_LEVEL


@dataclass
class RegimeChange:
    date: str
    beta_before: float
    beta_after: float
    z_score: float
    regime_type: str


@dataclass
class BetaForecast:
    ticker: str
    benchmark: str
    current_beta: float
    beta_volatility: float
    forecast_points: list[ForecastPoint]
    methodology: ForecastMethod
    confidence_level: float
    regime_changes: list[RegimeChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    history_points: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["methodology"] = self.methodology.value
        return data


# =============================================================================
# Models
# =============================================================================


def _band(predicted: float, beta_volatility: float, day: int, multiplier: float) -> tuple[float, float]:
    std = beta_volatility * math.sqrt(day / 30.0) * multiplier
    half_width = Z_95 * std
    return _clamp(predicted - half_width), _clamp(predicted + half_width)


def _clamp(value: float) -> float:
    return min(max(value, BETA_FLOOR), BETA_CAP)


def _dates(start: date, days_ahead: int) -> list[str]:
    return [(start + timedelta(days=d)).isoformat() for d in range(1, days_ahead + 1)]


def mean_reversion_forecast(
    current_beta: float, beta_volatility: float, days_ahead: int, start: date
) -> list[ForecastPoint]:
    points = []
    for day, label in enumerate(_dates(start, days_ahead), start=1):
        weight = math.exp(-DECAY_RATE * day)
        predicted = weight * current_beta + (1.0 - weight) * MARKET_BETA
        lower, upper = _band(predicted, beta_volatility, day, 1.0)
        points.append(ForecastPoint(label, _clamp(predicted), lower, upper))
    return points


def exponential_smoothing_forecast(
    history: Sequence[float], beta_volatility: float, days_ahead: int, start: date
) -> list[ForecastPoint]:
    """Holt's linear smoothing seeded from the last two observations."""
    if not history:
        return []
    level = history[-1]
    trend = history[-1] - history[-2] if len(history) > 1 else 0.0

    # Walk back over the most recent observations
    stop = max(len(history) - 1 - SMOOTHING_LOOKBACK, 0)
    for k in range(len(history) - 1, stop, -1):
        observed = history[k]
        prev_level = level
        level = SMOOTHING_ALPHA * observed + (1.0 - SMOOTHING_ALPHA) * (level + trend)
        trend = SMOOTHING_BETA * (level - prev_level) + (1.0 - SMOOTHING_BETA) * trend

    points = []
    for day, label in enumerate(_dates(start, days_ahead), start=1):
        predicted = level + trend * day
        lower, upper = _band(predicted, beta_volatility, day, 1.2)
        points.append(ForecastPoint(label, _clamp(predicted), lower, upper))
    return points


def linear_regression_forecast(
    history: Sequence[float], beta_volatility: float, days_ahead: int, start: date
) -> list[ForecastPoint]:
    if len(history) < 2:
        return []
    recent = np.asarray(history[-LINEAR_LOOKBACK:], dtype=float)
    x = np.arange(1, recent.size + 1, dtype=float)
    fit = stats.linregress(x, recent)

    points = []
    for day, label in enumerate(_dates(start, days_ahead), start=1):
        predicted = fit.intercept + fit.slope * (recent.size + day)
        lower, upper = _band(predicted, beta_volatility, day, 1.3)
        points.append(ForecastPoint(label, _clamp(predicted), lower, upper))
    return points


def ensemble_forecast(
    history: Sequence[float],
    current_beta: float,
    beta_volatility: float,
    days_ahead: int,
    start: date,
    weights: Sequence[float] = DEFAULT_ENSEMBLE_WEIGHTS,
) -> list[ForecastPoint]:
    w_mr, w_es, w_lin = weights
    total = w_mr + w_es + w_lin
    w_mr, w_es, w_lin = w_mr / total, w_es / total, w_lin / total

    mean_rev = mean_reversion_forecast(current_beta, beta_volatility, days_ahead, start)
    smooth = exponential_smoothing_forecast(history, beta_volatility, days_ahead, start)
    linear = linear_regression_forecast(history, beta_volatility, days_ahead, start)

    points = []
    for mr, es, lin in zip(mean_rev, smooth, linear):
        predicted = w_mr * mr.predicted_beta + w_es * es.predicted_beta + w_lin * lin.predicted_beta
        lower = w_mr * mr.lower_bound + w_es * es.lower_bound + w_lin * lin.lower_bound
        upper = w_mr * mr.upper_bound + w_es * es.upper_bound + w_lin * lin.upper_bound
        points.append(
            ForecastPoint(mr.date, _clamp(predicted), max(lower, BETA_FLOOR), min(upper, BETA_CAP))
        )
    return points


# =============================================================================
# Regime Detection
# =============================================================================


def classify_regime(mean_before: float, mean_after: float, std_dev: float) -> str:
    change = mean_after - mean_before
    if std_dev > 0.3:
        return "high_volatility"
    if abs(change) > 0.5:
        return "structural_break"
    if abs(mean_before - MARKET_BETA) > 0.3 and abs(mean_after - MARKET_BETA) < 0.2:
        return "mean_reversion"
    if change > 0:
        return "increasing_beta"
    return "decreasing_beta"


def detect_regime_changes(
    points: Sequence[BetaPoint], window: int = REGIME_WINDOW
) -> list[RegimeChange]:
    """Flag points where the next window's mean departs from the previous one."""
    changes: list[RegimeChange] = []
    if len(points) < window * 2:
        return changes

    betas = np.array([p.beta for p in points], dtype=float)
    for i in range(window, len(points) - window):
        before = betas[i - window:i]
        after = betas[i:i + window]
        mean_before = float(before.mean())
        mean_after = float(after.mean())
        std_before = float(before.std())
        if std_before < 0.01:
            continue
        z_score = abs(mean_after - mean_before) / std_before
        if z_score > REGIME_Z_THRESHOLD:
            changes.append(
                RegimeChange(
                    date=points[i].date,
                    beta_before=mean_before,
                    beta_after=mean_after,
                    z_score=z_score,
                    regime_type=classify_regime(mean_before, mean_after, std_before),
                )
            )
    return changes


# =============================================================================
# Forecast Run
# =============================================================================


class ForecastRun:
    """
    One forecast attempt over a rolling-beta series.

    State moves idle -> fitting -> forecasted, or -> failed when the history
    is too short or a model blows up. A run is single-use.
    """

    def __init__(
        self,
        ticker: str,
        benchmark: str,
        method: ForecastMethod = ForecastMethod.ENSEMBLE,
        weights: Sequence[float] = DEFAULT_ENSEMBLE_WEIGHTS,
        min_history: int = MIN_HISTORY,
    ):
        self.ticker = ticker
        self.benchmark = benchmark
        self.method = method
        self.weights = tuple(weights)
        self.min_history = min_history
        self.state = ForecastState.IDLE
        self.result: BetaForecast | None = None
        self.error: Exception | None = None

    def run(
        self,
        history: Sequence[BetaPoint],
        days_ahead: int,
        as_of: date,
        beta_volatility: float | None = None,
    ) -> BetaForecast:
        """
        Fit the models and produce the forecast.

        Args:
            history: 90-day rolling beta points, oldest first
            days_ahead: Horizon in calendar days (1-90)
            as_of: Date the forecast starts from
            beta_volatility: Override for the band width, defaults to the
                sample std of ``history``

        Raises:
            InsufficientHistory: Fewer than ``min_history`` points
            ValueError: Horizon outside 1-90 or run already used
        """
        if self.state is not ForecastState.IDLE:
            raise ValueError(f"Forecast run already {self.state.value}")
        if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
            raise ValueError(f"days_ahead must be between 1 and {MAX_DAYS_AHEAD}")

        self.state = ForecastState.FITTING
        try:
            if len(history) < self.min_history:
                raise InsufficientHistory(
                    f"{self.ticker} rolling beta vs {self.benchmark}",
                    required=self.min_history,
                    available=len(history),
                    what="beta forecasting",
                )
            self.result = self._fit(history, days_ahead, as_of, beta_volatility)
        except Exception as exc:
            self.state = ForecastState.FAILED
            self.error = exc
            logger.info("Beta forecast failed for %s: %s", self.ticker, exc)
            raise
        self.state = ForecastState.FORECASTED
        return self.result

    def _fit(
        self,
        history: Sequence[BetaPoint],
        days_ahead: int,
        as_of: date,
        beta_volatility: float | None,
    ) -> BetaForecast:
        betas = [p.beta for p in history]
        current = betas[-1]
        if beta_volatility is None:
            beta_volatility = float(np.std(betas, ddof=1)) if len(betas) > 1 else 0.0

        if self.method is ForecastMethod.MEAN_REVERSION:
            points = mean_reversion_forecast(current, beta_volatility, days_ahead, as_of)
        elif self.method is ForecastMethod.EXPONENTIAL_SMOOTHING:
            points = exponential_smoothing_forecast(betas, beta_volatility, days_ahead, as_of)
        elif self.method is ForecastMethod.LINEAR_REGRESSION:
            points = linear_regression_forecast(betas, beta_volatility, days_ahead, as_of)
        else:
            points = ensemble_forecast(
                betas, current, beta_volatility, days_ahead, as_of, self.weights
            )

        regime_changes = detect_regime_changes(history)
        warnings: list[str] = []
        if beta_volatility > 0.5:
            warnings.append("High beta volatility detected. Forecast confidence may be lower.")
        recent_cutoff = as_of - timedelta(days=30)
        if any(date.fromisoformat(rc.date) > recent_cutoff for rc in regime_changes):
            warnings.append(
                "Recent regime change detected (within last 30 days). "
                "Forecast may not reflect the new regime."
            )
        if len(history) < LIMITED_HISTORY:
            warnings.append(
                f"Limited historical data ({len(history)} days). "
                "Forecast confidence may be lower."
            )

        return BetaForecast(
            ticker=self.ticker,
            benchmark=self.benchmark,
            current_beta=current,
            beta_volatility=beta_volatility,
            forecast_points=points,
            methodology=self.method,
            confidence_level=CONFIDENCE_LEVEL,
            regime_changes=regime_changes,
            warnings=warnings,
            history_points=len(history),
        )
