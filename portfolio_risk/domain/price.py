"""Price domain models.

A ``PriceSeries`` is the ordered (date, close) history of one ticker. It is
owned by the price store and only referenced by the analytics engines.
"""

from __future__ import annotations

from datetime import date as DateType
from typing import Iterator

import pandas as pd
from pydantic import BaseModel, Field, field_validator


class PricePoint(BaseModel):
    """Single daily close."""

    date: DateType = Field(..., description="Trading date")
    close: float = Field(..., gt=0, description="Closing price")

    model_config = {"from_attributes": True, "frozen": True}


class PriceSeries(BaseModel):
    """Chronological closes for one ticker."""

    ticker: str = Field(..., description="Ticker symbol as requested")
    points: list[PricePoint] = Field(default_factory=list)
    source: str | None = Field(None, description="Provider that served the data")
    resolved_symbol: str | None = Field(
        None, description="Provider symbol actually used, e.g. with exchange suffix"
    )

    @field_validator("points")
    @classmethod
    def sort_and_dedupe(cls, v: list[PricePoint]) -> list[PricePoint]:
        by_date = {p.date: p for p in v}
        return [by_date[d] for d in sorted(by_date)]

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[PricePoint]:  # type: ignore[override]
        return iter(self.points)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def start_date(self) -> DateType | None:
        return self.points[0].date if self.points else None

    @property
    def end_date(self) -> DateType | None:
        return self.points[-1].date if self.points else None

    def closes(self) -> pd.Series:
        """Close prices indexed by date."""
        if not self.points:
            return pd.Series(dtype=float, name=self.ticker)
        return pd.Series(
            [p.close for p in self.points],
            index=pd.DatetimeIndex([p.date for p in self.points]),
            name=self.ticker,
        )

    def tail(self, n: int) -> PriceSeries:
        return self.model_copy(update={"points": self.points[-n:] if n > 0 else []})

    @classmethod
    def from_pairs(
        cls, ticker: str, pairs: list[tuple[DateType, float]], source: str | None = None
    ) -> PriceSeries:
        return cls(
            ticker=ticker,
            points=[PricePoint(date=d, close=c) for d, c in pairs if c and c > 0],
            source=source,
        )

    @classmethod
    def from_series(cls, ticker: str, closes: pd.Series, source: str | None = None) -> PriceSeries:
        closes = closes.dropna()
        pairs = [(pd.Timestamp(idx).date(), float(val)) for idx, val in closes.items()]
        return cls.from_pairs(ticker, pairs, source=source)
