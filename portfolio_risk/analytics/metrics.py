"""
Risk Metrics Engine.

Pure functions over daily close series:
- Volatility, drawdown, annualized return
- Beta and correlation against benchmarks (SPY, QQQ, IWM)
- Sharpe, Sortino, downside deviation
- Historical VaR and expected shortfall
- Composite risk score and systematic / idiosyncratic decomposition

Every ratio is annualized with 252 trading days. Percentages are expressed
as percent (12.5 means 12.5%). Below the minimum sample size the engine
returns an ``InsufficientData`` marker instead of numbers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Sequence

import numpy as np
import pandas as pd

from portfolio_risk.domain.price import PriceSeries

logger = logging.getLogger(__name__)

TRADING_DAYS = 252
EPS = 1e-12
MIN_OBSERVATIONS = 20
DEFAULT_RISK_WEIGHTS = (40.0, 30.0, 20.0, 10.0)

# Reference ceilings for the risk score sub-scores
VOLATILITY_CEILING = 50.0  # % annualized
DRAWDOWN_CEILING = 50.0  # % peak to trough
BETA_CEILING = 2.0
VAR_CEILING = 10.0  # % daily loss


# =============================================================================
# Data Classes
# =============================================================================


class RiskLevel(StrEnum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"

    @classmethod
    def from_score(cls, score: float) -> RiskLevel:
        if score < 40:
            return cls.LOW
        if score <= 60:
            return cls.MODERATE
        return cls.HIGH


@dataclass(frozen=True)
class InsufficientData:
    """Marker returned instead of metrics when the sample is too small."""

    subject: str
    required: int
    available: int
    reason: str = "insufficient_data"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.reason,
            "subject": self.subject,
            "required": self.required,
            "available": self.available,
        }


@dataclass
class RiskDecomposition:
    systematic_risk: float
    idiosyncratic_risk: float
    r_squared: float
    total_risk: float


@dataclass
class RiskMetrics:
    """Risk metrics for one ticker over one window."""

    ticker: str
    days: int
    benchmark: str
    observations: int
    volatility: float
    max_drawdown: float
    annualized_return: float
    beta: float | None
    betas: dict[str, float | None]
    sharpe_ratio: float | None
    sortino_ratio: float | None
    downside_deviation: float | None
    value_at_risk: float
    var_99: float
    expected_shortfall_95: float
    expected_shortfall_99: float
    risk_score: float
    risk_level: RiskLevel
    risk_decomposition: RiskDecomposition | None
    var_amount: float | None = None
    start_date: str | None = None
    end_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data


@dataclass
class BetaPoint:
    date: str
    beta: float
    r_squared: float
    alpha: float


@dataclass
class RollingBetaAnalysis:
    ticker: str
    benchmark: str
    beta_30d: list[BetaPoint] = field(default_factory=list)
    beta_60d: list[BetaPoint] = field(default_factory=list)
    beta_90d: list[BetaPoint] = field(default_factory=list)
    current_beta: float = 0.0
    beta_volatility: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DownsideInterpretation:
    downside_risk_level: str
    sortino_rating: str
    sortino_vs_sharpe: str
    summary: str


@dataclass
class DownsideRiskMetrics:
    downside_deviation: float
    sortino_ratio: float | None
    mar: float
    sharpe_ratio: float | None
    interpretation: DownsideInterpretation

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Return Series
# =============================================================================


def simple_returns(prices: Sequence[float] | np.ndarray) -> np.ndarray:
    """Daily simple returns, skipping non-positive previous closes."""
    arr = np.asarray(prices, dtype=float)
    if arr.size < 2:
        return np.array([], dtype=float)
    prev = arr[:-1]
    cur = arr[1:]
    mask = prev > 0
    return (cur[mask] - prev[mask]) / prev[mask]


def aligned_returns(
    asset: pd.Series, benchmark: pd.Series
) -> tuple[np.ndarray, np.ndarray, pd.DatetimeIndex]:
    """
    Align two close series on matching dates and return their simple returns.

    Only dates present in both series are used, so holidays on one exchange
    do not shift the pairing.
    """
    joined = pd.concat([asset, benchmark], axis=1, join="inner").dropna()
    joined = joined[(joined.iloc[:, 0] > 0) & (joined.iloc[:, 1] > 0)]
    if len(joined) < 2:
        empty = np.array([], dtype=float)
        return empty, empty, pd.DatetimeIndex([])
    rets = joined.pct_change().iloc[1:]
    return rets.iloc[:, 0].to_numpy(), rets.iloc[:, 1].to_numpy(), rets.index


def window(series: PriceSeries, days: int) -> PriceSeries:
    """Keep the last ``days`` calendar days of a series."""
    if series.is_empty:
        return series
    cutoff = pd.Timestamp(series.end_date) - pd.Timedelta(days=days)
    return series.model_copy(
        update={"points": [p for p in series.points if pd.Timestamp(p.date) >= cutoff]}
    )


# =============================================================================
# Single Metrics
# =============================================================================


def volatility(returns: np.ndarray) -> float | None:
    """Annualized sample standard deviation in percent."""
    if returns.size < 2:
        return None
    return float(np.std(returns, ddof=1) * math.sqrt(TRADING_DAYS) * 100)


def max_drawdown(prices: Sequence[float] | np.ndarray) -> float:
    """Largest peak-to-trough decline in percent (always <= 0)."""
    arr = np.asarray(prices, dtype=float)
    arr = arr[arr > 0]
    if arr.size == 0:
        return 0.0
    running_max = np.maximum.accumulate(arr)
    drawdowns = arr / running_max - 1.0
    return float(min(drawdowns.min(), 0.0) * 100)


def annualized_return(returns: np.ndarray) -> float:
    if returns.size == 0:
        return 0.0
    return float(returns.mean() * TRADING_DAYS * 100)


def beta(asset_returns: np.ndarray, benchmark_returns: np.ndarray) -> float | None:
    """Cov(asset, benchmark) / Var(benchmark) over aligned returns."""
    if asset_returns.size != benchmark_returns.size or asset_returns.size < 2:
        return None
    var_b = np.var(benchmark_returns, ddof=1)
    if var_b < EPS:
        return None
    cov = np.cov(asset_returns, benchmark_returns, ddof=1)[0, 1]
    return float(cov / var_b)


def correlation(a: np.ndarray, b: np.ndarray) -> float | None:
    """Pearson correlation, None when undefined."""
    if a.size != b.size or a.size < 2:
        return None
    if np.std(a) < EPS or np.std(b) < EPS:
        return None
    value = float(np.corrcoef(a, b)[0, 1])
    if math.isnan(value):
        return None
    return max(-1.0, min(1.0, value))


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float) -> float | None:
    if returns.size < 2:
        return None
    std = np.std(returns, ddof=1)
    if std < EPS:
        return None
    rf_daily = risk_free_rate / TRADING_DAYS
    return float(((returns.mean() - rf_daily) * TRADING_DAYS) / (std * math.sqrt(TRADING_DAYS)))


def downside_deviation(returns: np.ndarray, mar_daily: float) -> float | None:
    """Annualized semi-deviation below the MAR, as a fraction.

    Only sub-MAR observations participate, both in the sum and in the count.
    """
    downside = returns[returns < mar_daily]
    if downside.size < 2:
        return None
    variance = float(np.sum((downside - mar_daily) ** 2) / (downside.size - 1))
    return math.sqrt(variance) * math.sqrt(TRADING_DAYS)


def sortino_ratio(returns: np.ndarray, risk_free_rate: float) -> float | None:
    if returns.size < 2:
        return None
    mar_daily = risk_free_rate / TRADING_DAYS
    dd = downside_deviation(returns, mar_daily)
    if dd is None or dd < EPS:
        return None
    return float(((returns.mean() - mar_daily) * TRADING_DAYS) / dd)


def value_at_risk(returns: np.ndarray, confidence: float = 0.95) -> float:
    """Historical VaR in percent (negative number for a loss)."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    # Rounded so 100 * (1 - 0.95) counts as 5, not 5.000000000000004
    idx = int(math.floor(round(ordered.size * (1.0 - confidence), 9)))
    idx = min(idx, ordered.size - 1)
    return float(ordered[idx] * 100)


def expected_shortfall(returns: np.ndarray, confidence: float = 0.95) -> float:
    """Average of the worst (1 - confidence) share of returns, in percent."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    tail = max(1, int(math.ceil(round(ordered.size * (1.0 - confidence), 9))))
    return float(ordered[:tail].mean() * 100)


def var_amount(var_pct: float, notional: float) -> float:
    """Scale a percentage VaR to a money amount for the given notional."""
    return abs(var_pct) / 100.0 * notional


def risk_decomposition(vol_pct: float, corr: float | None) -> RiskDecomposition | None:
    """Split total volatility into market-driven and stock-specific parts."""
    if corr is None:
        return None
    r_squared = min(max(corr * corr, 0.0), 1.0)
    total_variance = (vol_pct / 100.0) ** 2
    return RiskDecomposition(
        systematic_risk=math.sqrt(r_squared * total_variance) * 100,
        idiosyncratic_risk=math.sqrt((1.0 - r_squared) * total_variance) * 100,
        r_squared=r_squared,
        total_risk=vol_pct,
    )


def score_risk(
    vol_pct: float,
    drawdown_pct: float,
    beta_value: float | None,
    var_pct: float,
    weights: Sequence[float] = DEFAULT_RISK_WEIGHTS,
) -> float:
    """
    Composite 0-100 risk score.

    Each component is scaled linearly against its ceiling, clamped to [0, 1]
    and multiplied by its weight (volatility, drawdown, beta, VaR).
    """
    w_vol, w_dd, w_beta, w_var = weights
    vol_part = min(max(vol_pct, 0.0) / VOLATILITY_CEILING, 1.0) * w_vol
    dd_part = min(abs(min(drawdown_pct, 0.0)) / DRAWDOWN_CEILING, 1.0) * w_dd
    beta_part = min(abs(beta_value or 0.0), BETA_CEILING) / BETA_CEILING * w_beta
    var_part = min(abs(var_pct), VAR_CEILING) / VAR_CEILING * w_var
    total = vol_part + dd_part + beta_part + var_part
    return float(min(max(total, 0.0), 100.0))


# =============================================================================
# Aggregate Metrics
# =============================================================================


def compute_risk_metrics(
    asset: PriceSeries,
    benchmarks: dict[str, PriceSeries],
    benchmark: str = "SPY",
    days: int = 90,
    risk_free_rate: float = 0.045,
    min_observations: int = MIN_OBSERVATIONS,
    weights: Sequence[float] = DEFAULT_RISK_WEIGHTS,
    notional: float | None = None,
) -> RiskMetrics | InsufficientData:
    """
    Compute the full risk metric set for one ticker.

    Args:
        asset: Price history of the instrument
        benchmarks: Benchmark histories keyed by ticker (SPY, QQQ, IWM ...)
        benchmark: Benchmark used for the headline beta and decomposition
        days: Calendar-day window ending at the last available close
        risk_free_rate: Annual risk-free rate
        min_observations: Returns required before numbers are meaningful
        weights: Risk score weights
        notional: Optional position value to express VaR as an amount

    Returns:
        RiskMetrics, or InsufficientData when the window is too short
    """
    windowed = window(asset, days)
    closes = np.array([p.close for p in windowed.points], dtype=float)
    returns = simple_returns(closes)

    if returns.size < min_observations:
        logger.debug(
            "Insufficient data for %s: %d returns < %d",
            asset.ticker, returns.size, min_observations,
        )
        return InsufficientData(asset.ticker, min_observations, int(returns.size))

    asset_closes = windowed.closes()
    betas: dict[str, float | None] = {}
    headline_corr: float | None = None
    for name, series in benchmarks.items():
        if series.is_empty:
            betas[name] = None
            continue
        a_ret, b_ret, _ = aligned_returns(asset_closes, window(series, days).closes())
        if a_ret.size < min_observations:
            betas[name] = None
            continue
        betas[name] = beta(a_ret, b_ret)
        if name == benchmark:
            headline_corr = correlation(a_ret, b_ret)

    vol = volatility(returns) or 0.0
    dd = max_drawdown(closes)
    var95 = value_at_risk(returns, 0.95)
    headline_beta = betas.get(benchmark)
    score = score_risk(vol, dd, headline_beta, var95, weights)
    mar_daily = risk_free_rate / TRADING_DAYS
    downside = downside_deviation(returns, mar_daily)

    return RiskMetrics(
        ticker=asset.ticker,
        days=days,
        benchmark=benchmark,
        observations=int(returns.size),
        volatility=vol,
        max_drawdown=dd,
        annualized_return=annualized_return(returns),
        beta=headline_beta,
        betas=betas,
        sharpe_ratio=sharpe_ratio(returns, risk_free_rate),
        sortino_ratio=sortino_ratio(returns, risk_free_rate),
        downside_deviation=downside * 100 if downside is not None else None,
        value_at_risk=var95,
        var_99=value_at_risk(returns, 0.99),
        expected_shortfall_95=expected_shortfall(returns, 0.95),
        expected_shortfall_99=expected_shortfall(returns, 0.99),
        risk_score=score,
        risk_level=RiskLevel.from_score(score),
        risk_decomposition=risk_decomposition(vol, headline_corr),
        var_amount=var_amount(var95, notional) if notional else None,
        start_date=windowed.start_date.isoformat() if windowed.start_date else None,
        end_date=windowed.end_date.isoformat() if windowed.end_date else None,
    )


# =============================================================================
# Rolling Beta
# =============================================================================


def rolling_beta(
    asset: PriceSeries, benchmark: PriceSeries, window_size: int
) -> list[BetaPoint]:
    """Beta, r² and daily alpha over each trailing window of aligned returns."""
    a_ret, b_ret, index = aligned_returns(asset.closes(), benchmark.closes())
    points: list[BetaPoint] = []
    if a_ret.size < window_size:
        return points
    for end in range(window_size, a_ret.size + 1):
        a = a_ret[end - window_size:end]
        b = b_ret[end - window_size:end]
        value = beta(a, b)
        if value is None:
            continue
        corr = correlation(a, b) or 0.0
        alpha = float(a.mean() - value * b.mean())
        points.append(
            BetaPoint(
                date=index[end - 1].date().isoformat(),
                beta=value,
                r_squared=corr * corr,
                alpha=alpha,
            )
        )
    return points


def rolling_beta_analysis(
    asset: PriceSeries, benchmark: PriceSeries, benchmark_name: str
) -> RollingBetaAnalysis:
    beta_90 = rolling_beta(asset, benchmark, 90)
    values = np.array([p.beta for p in beta_90], dtype=float)
    return RollingBetaAnalysis(
        ticker=asset.ticker,
        benchmark=benchmark_name,
        beta_30d=rolling_beta(asset, benchmark, 30),
        beta_60d=rolling_beta(asset, benchmark, 60),
        beta_90d=beta_90,
        current_beta=float(values[-1]) if values.size else 0.0,
        beta_volatility=float(np.std(values, ddof=1)) if values.size > 1 else 0.0,
    )


# =============================================================================
# Downside Risk
# =============================================================================


def interpret_downside(
    downside_pct: float, sortino: float | None, sharpe: float | None
) -> DownsideInterpretation:
    if downside_pct < 10:
        level = "Low"
    elif downside_pct < 20:
        level = "Moderate"
    else:
        level = "High"

    if sortino is None:
        rating = "N/A"
    elif sortino > 2:
        rating = "Excellent"
    elif sortino > 1:
        rating = "Good"
    elif sortino > 0:
        rating = "Fair"
    else:
        rating = "Poor"

    if sortino is None or sharpe is None:
        comparison = "Not enough data to compare Sortino and Sharpe"
    elif sortino > sharpe * 1.2:
        comparison = "Volatility is skewed to the upside"
    elif sortino < sharpe * 0.8:
        comparison = "Losses drive a large part of the volatility"
    else:
        comparison = "Upside and downside volatility are balanced"

    summary = f"{level} downside risk ({downside_pct:.1f}% annualized)"
    if sortino is not None:
        summary += f", {rating.lower()} risk-adjusted return (Sortino {sortino:.2f})"
    return DownsideInterpretation(level, rating, comparison, summary)


def downside_risk(
    returns: np.ndarray,
    risk_free_rate: float,
    subject: str = "portfolio",
    min_observations: int = MIN_OBSERVATIONS,
) -> DownsideRiskMetrics | InsufficientData:
    """Downside deviation, Sortino and Sharpe with interpretation."""
    if returns.size < min_observations:
        return InsufficientData(subject, min_observations, int(returns.size))
    mar_daily = risk_free_rate / TRADING_DAYS
    dd = downside_deviation(returns, mar_daily)
    dd_pct = dd * 100 if dd is not None else 0.0
    sortino = sortino_ratio(returns, risk_free_rate)
    sharpe = sharpe_ratio(returns, risk_free_rate)
    return DownsideRiskMetrics(
        downside_deviation=dd_pct,
        sortino_ratio=sortino,
        mar=risk_free_rate * 100,
        sharpe_ratio=sharpe,
        interpretation=interpret_downside(dd_pct, sortino, sharpe),
    )


def portfolio_returns(
    series: dict[str, PriceSeries], weights: dict[str, float]
) -> np.ndarray:
    """
    Weighted daily returns of a basket.

    Returns are computed per ticker and aligned on common dates; weights are
    renormalized over the tickers that have data.
    """
    frames = {
        t: s.closes().pct_change().iloc[1:]
        for t, s in series.items()
        if t in weights and len(s) >= 2
    }
    if not frames:
        return np.array([], dtype=float)
    rets = pd.DataFrame(frames).dropna()
    if rets.empty:
        return np.array([], dtype=float)
    w = np.array([weights[t] for t in rets.columns], dtype=float)
    total = w.sum()
    if total <= 0:
        return np.array([], dtype=float)
    return rets.to_numpy() @ (w / total)
