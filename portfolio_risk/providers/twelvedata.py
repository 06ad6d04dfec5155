"""TwelveData time-series client (primary provider)."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional, Sequence

import httpx

from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.price import PriceSeries

from .base import ProviderError, ProviderErrorKind, classify_error_message


logger = get_logger("providers.twelvedata")


class TwelveDataProvider:
    """
    Daily closes from the TwelveData ``/time_series`` endpoint.

    TwelveData answers with HTTP 200 even for errors; the body carries
    ``{"status": "error", "code": ..., "message": ...}``. Values arrive
    newest first.
    """

    name = "twelvedata"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        ticker_suffixes: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.twelvedata_api_key
        self.base_url = (base_url or settings.twelvedata_base_url).rstrip("/")
        self.ticker_suffixes = list(
            ticker_suffixes if ticker_suffixes is not None else settings.twelvedata_ticker_suffixes
        )
        self.timeout = float(timeout or settings.external_api_timeout)
        self._transport = transport

    async def fetch(self, symbol: str, start: date, end: date) -> PriceSeries:
        params = {
            "symbol": symbol,
            "interval": "1day",
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "outputsize": 5000,
            "apikey": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/time_series", params=params)
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, ProviderErrorKind.NETWORK, f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, ProviderErrorKind.NETWORK, str(e)) from e

        if response.status_code != 200:
            kind = classify_error_message(response.text[:200], response.status_code)
            raise ProviderError(self.name, kind, f"HTTP {response.status_code} for {symbol}")

        try:
            body: dict[str, Any] = response.json()
        except ValueError as e:
            raise ProviderError(self.name, ProviderErrorKind.PARSE, f"invalid JSON for {symbol}") from e

        if body.get("status") == "error":
            message = str(body.get("message", "unknown error"))
            code = body.get("code")
            kind = classify_error_message(message, code if isinstance(code, int) else None)
            raise ProviderError(self.name, kind, f"{code}: {message}")

        series = self._parse_values(symbol, body.get("values") or [])
        logger.debug(f"TwelveData returned {len(series)} closes for {symbol}")
        return series

    def _parse_values(self, symbol: str, values: list[dict[str, Any]]) -> PriceSeries:
        pairs: list[tuple[date, float]] = []
        for row in reversed(values):
            try:
                day = date.fromisoformat(str(row["datetime"])[:10])
                close = float(row["close"])
            except (KeyError, TypeError, ValueError) as e:
                raise ProviderError(
                    self.name, ProviderErrorKind.PARSE, f"malformed row for {symbol}: {row!r}"
                ) from e
            pairs.append((day, close))
        series = PriceSeries.from_pairs(symbol, pairs, source=self.name)
        return series.model_copy(update={"resolved_symbol": symbol})
