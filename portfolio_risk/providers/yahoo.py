"""Yahoo Finance fallback provider via yfinance."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Any, Optional, Sequence

import pandas as pd
import yfinance as yf

from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.price import PriceSeries

from .base import ProviderError, ProviderErrorKind, classify_error_message


logger = get_logger("providers.yahoo")

# yfinance is blocking; keep it off the event loop
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="yfinance")


class YahooProvider:
    """Daily closes from Yahoo Finance, tried with exchange suffixes."""

    name = "yahoo"

    def __init__(
        self,
        ticker_suffixes: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ):
        self.ticker_suffixes = list(
            ticker_suffixes if ticker_suffixes is not None else settings.yahoo_ticker_suffixes
        )
        self.timeout = float(timeout or settings.external_api_timeout)

    def _download_sync(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        df = yf.download(
            symbol,
            start=start.isoformat(),
            # yfinance treats end as exclusive
            end=(end + timedelta(days=1)).isoformat(),
            interval="1d",
            auto_adjust=True,
            progress=False,
            timeout=self.timeout,
        )
        if df is None:
            return pd.DataFrame()

        # Newer yfinance returns (field, ticker) MultiIndex columns
        if isinstance(df.columns, pd.MultiIndex):
            if symbol.upper() in df.columns.get_level_values(1):
                df = df.xs(symbol.upper(), axis=1, level=1)
            else:
                df.columns = df.columns.droplevel(1)
        return df

    async def fetch(self, symbol: str, start: date, end: date) -> PriceSeries:
        loop = asyncio.get_running_loop()
        try:
            df = await loop.run_in_executor(_executor, self._download_sync, symbol, start, end)
        except Exception as e:
            kind = classify_error_message(str(e))
            if kind is ProviderErrorKind.BAD_RESPONSE:
                kind = ProviderErrorKind.NETWORK
            raise ProviderError(self.name, kind, str(e)) from e

        if df.empty or "Close" not in df.columns:
            raise ProviderError(self.name, ProviderErrorKind.NOT_FOUND, f"no data for {symbol}")

        series = PriceSeries.from_series(symbol, df["Close"], source=self.name)
        if series.is_empty:
            raise ProviderError(self.name, ProviderErrorKind.NOT_FOUND, f"no closes for {symbol}")
        return series.model_copy(update={"resolved_symbol": symbol})

    def _quote_type_sync(self, symbol: str) -> dict[str, Any]:
        info = yf.Ticker(symbol).info or {}
        return {
            "quote_type": info.get("quoteType"),
            "category": info.get("category") or info.get("industry"),
            "name": info.get("shortName") or info.get("longName"),
        }

    async def lookup_info(self, symbol: str) -> dict[str, Any]:
        """Quote type and name used to classify an instrument at ingestion."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(_executor, self._quote_type_sync, symbol)
        except Exception as e:
            logger.warning(f"yfinance info lookup failed for {symbol}: {e}")
            return {}
