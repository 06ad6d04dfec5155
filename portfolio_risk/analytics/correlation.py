"""
Correlation Engine.

Pairwise Pearson correlation over date-aligned daily returns for a basket
of at most ``MAX_TICKERS`` tickers, plus diversification statistics.

Tickers without usable history only remove their own pairs; the matrix is
still produced for the rest of the basket.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from portfolio_risk.analytics.metrics import aligned_returns, correlation
from portfolio_risk.domain.price import PriceSeries

logger = logging.getLogger(__name__)

MAX_TICKERS = 10
HIGH_CORRELATION_THRESHOLD = 0.70
# Floor of the Herfindahl index with 20 equal positions
MIN_HHI = 0.05
# Average |correlation| assumed when no pair could be computed
NEUTRAL_CORRELATION = 0.5


@dataclass
class CorrelationPair:
    ticker1: str
    ticker2: str
    correlation: float


@dataclass
class CorrelationStatistics:
    average_correlation: float | None
    max_correlation: float | None
    min_correlation: float | None
    correlation_std_dev: float | None
    high_correlation_pairs: list[CorrelationPair]
    high_correlation_count: int
    pair_count: int
    diversification_score: float
    adjusted_diversification_score: float


@dataclass
class CorrelationMatrix:
    tickers: list[str]
    matrix: list[list[float | None]]
    statistics: CorrelationStatistics
    excluded_tickers: list[str] = field(default_factory=list)
    observations: dict[str, int] = field(default_factory=dict)

    def get(self, a: str, b: str) -> float | None:
        return self.matrix[self.tickers.index(a)][self.tickers.index(b)]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Diversification
# =============================================================================


def herfindahl(weights: list[float]) -> float:
    """Herfindahl-Hirschman index of normalized weights (1 = single position)."""
    w = np.asarray(weights, dtype=float)
    w = w[w > 0]
    if w.size == 0 or w.sum() <= 0:
        return 1.0
    w = w / w.sum()
    return float(np.sum(w**2))


def concentration_score(weights: list[float]) -> float:
    """0-6 points, 6 for a perfectly spread book of 20+ positions."""
    hhi = herfindahl(weights)
    return max((1.0 - hhi) / (1.0 - MIN_HHI) * 6.0, 0.0)


def diversification_score(weights: list[float]) -> float:
    """
    0-10 score from position count and concentration.

    position_score = min(n / 5, 4) rewards breadth up to 20 positions,
    concentration_score adds up to 6 for an even spread.
    """
    n = sum(1 for w in weights if w > 0)
    position_score = min(n / 5.0, 4.0)
    return min(position_score + concentration_score(weights), 10.0)


def adjusted_diversification_score(
    weights: list[float], average_abs_correlation: float | None
) -> float:
    """Concentration plus up to 4 points for low average |correlation|."""
    avg = NEUTRAL_CORRELATION if average_abs_correlation is None else average_abs_correlation
    correlation_score = (1.0 - min(max(avg, 0.0), 1.0)) * 4.0
    return min(concentration_score(weights) + correlation_score, 10.0)


# =============================================================================
# Matrix
# =============================================================================


def correlation_statistics(
    tickers: list[str],
    matrix: list[list[float | None]],
    weights: list[float],
    threshold: float = HIGH_CORRELATION_THRESHOLD,
) -> CorrelationStatistics:
    values: list[float] = []
    high_pairs: list[CorrelationPair] = []
    n = len(tickers)
    for i in range(n):
        for j in range(i + 1, n):
            value = matrix[i][j]
            if value is None:
                continue
            values.append(value)
            if value > threshold:
                high_pairs.append(CorrelationPair(tickers[i], tickers[j], value))

    high_pairs.sort(key=lambda p: p.correlation, reverse=True)
    arr = np.asarray(values, dtype=float)
    avg_abs = float(np.abs(arr).mean()) if arr.size else None

    return CorrelationStatistics(
        average_correlation=float(arr.mean()) if arr.size else None,
        max_correlation=float(arr.max()) if arr.size else None,
        min_correlation=float(arr.min()) if arr.size else None,
        correlation_std_dev=float(arr.std()) if arr.size else None,
        high_correlation_pairs=high_pairs,
        high_correlation_count=len(high_pairs),
        pair_count=int(arr.size),
        diversification_score=diversification_score(weights),
        adjusted_diversification_score=adjusted_diversification_score(weights, avg_abs),
    )


def compute_correlation_matrix(
    series: dict[str, PriceSeries],
    weights: dict[str, float] | None = None,
    max_tickers: int = MAX_TICKERS,
    threshold: float = HIGH_CORRELATION_THRESHOLD,
    min_overlap: int = 2,
) -> CorrelationMatrix:
    """
    Build the symmetric correlation matrix of a basket.

    Args:
        series: Price histories keyed by ticker, in display order
        weights: Optional position weights for diversification scoring
            (equal weights when omitted)
        max_tickers: Basket size limit
        threshold: Correlation above which a pair counts as highly correlated
        min_overlap: Minimum aligned returns needed to correlate a pair

    Returns:
        CorrelationMatrix with None for pairs that could not be computed

    Raises:
        ValueError: If the basket exceeds ``max_tickers``
    """
    tickers = list(series)
    if len(tickers) > max_tickers:
        raise ValueError(f"At most {max_tickers} tickers can be correlated, got {len(tickers)}")

    n = len(tickers)
    matrix: list[list[float | None]] = [[None] * n for _ in range(n)]
    closes = {t: s.closes() for t, s in series.items()}
    excluded = [t for t in tickers if len(series[t]) < 2]

    for i in range(n):
        matrix[i][i] = 1.0
        for j in range(i + 1, n):
            a, b = tickers[i], tickers[j]
            if a in excluded or b in excluded:
                continue
            a_ret, b_ret, _ = aligned_returns(closes[a], closes[b])
            value = correlation(a_ret, b_ret) if a_ret.size >= min_overlap else None
            matrix[i][j] = value
            matrix[j][i] = value

    if excluded:
        logger.info("Correlation pairs excluded for tickers without history: %s", excluded)

    if weights:
        w = [float(weights.get(t, 0.0)) for t in tickers]
    else:
        w = [1.0] * n

    return CorrelationMatrix(
        tickers=tickers,
        matrix=matrix,
        statistics=correlation_statistics(tickers, matrix, w, threshold),
        excluded_tickers=excluded,
        observations={t: len(s) for t, s in series.items()},
    )
