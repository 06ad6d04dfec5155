"""Instrument classification, resolved once when an instrument is ingested.

The classification drives whether price history is requested at all and
which badge the UI shows, so it is stored with the instrument instead of
being re-derived from category strings on every render.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class AssetClass(StrEnum):
    EQUITY = "equity"
    ETF = "etf"
    INDEX = "index"
    MUTUAL_FUND = "mutual_fund"
    MONEY_MARKET = "money_market"
    CRYPTO = "crypto"
    UNKNOWN = "unknown"

    @property
    def supports_price_history(self) -> bool:
        """Whether market-data providers can be expected to cover this class."""
        return self not in (AssetClass.MUTUAL_FUND, AssetClass.MONEY_MARKET)

    @property
    def badge(self) -> str | None:
        """UI badge for instruments without analytics."""
        return None if self.supports_price_history else "N/A"


# Fund-company prefixes whose tickers are mutual funds rather than listings
MUTUAL_FUND_PREFIXES = ("FID", "RBF", "LYZ", "BIP", "DYN", "EDG")

_QUOTE_TYPES = {
    "EQUITY": AssetClass.EQUITY,
    "ETF": AssetClass.ETF,
    "INDEX": AssetClass.INDEX,
    "MUTUALFUND": AssetClass.MUTUAL_FUND,
    "MONEYMARKET": AssetClass.MONEY_MARKET,
    "CRYPTOCURRENCY": AssetClass.CRYPTO,
}

_CATEGORY_KEYWORDS = (
    ("money market", AssetClass.MONEY_MARKET),
    ("mutual fund", AssetClass.MUTUAL_FUND),
    ("etf", AssetClass.ETF),
    ("crypto", AssetClass.CRYPTO),
    ("index", AssetClass.INDEX),
    ("stock", AssetClass.EQUITY),
    ("equity", AssetClass.EQUITY),
)


def looks_like_mutual_fund(ticker: str) -> bool:
    """Fund codes such as FID1234 or RBF556: long or from a known fund family."""
    symbol = ticker.upper()
    base = symbol.split(".", 1)[0]
    if len(base) > 5 and not symbol.startswith("^"):
        return True
    return base.startswith(MUTUAL_FUND_PREFIXES) and any(ch.isdigit() for ch in base)


def classify_instrument(
    ticker: str,
    quote_type: str | None = None,
    category: str | None = None,
) -> AssetClass:
    """
    Resolve the asset class of an instrument.

    Precedence: provider quote type, then free-text category from the
    portfolio import, then ticker shape.

    Args:
        ticker: Ticker symbol
        quote_type: Provider quote type (e.g. yfinance ``quoteType``)
        category: Free-text asset category or industry from the portfolio

    Returns:
        The resolved AssetClass
    """
    if quote_type:
        resolved = _QUOTE_TYPES.get(quote_type.upper().replace("_", ""))
        if resolved is not None:
            return resolved

    if category:
        lowered = category.lower()
        for keyword, asset_class in _CATEGORY_KEYWORDS:
            if keyword in lowered:
                return asset_class

    if ticker.startswith("^"):
        return AssetClass.INDEX
    if ticker.upper().endswith("-USD"):
        return AssetClass.CRYPTO
    if looks_like_mutual_fund(ticker):
        return AssetClass.MUTUAL_FUND
    return AssetClass.EQUITY


def classify_from_info(ticker: str, info: dict[str, Any]) -> AssetClass:
    """Classify from a provider info payload."""
    quote_type = info.get("quote_type") or info.get("quoteType")
    category = info.get("category") or info.get("industry")
    return classify_instrument(ticker, quote_type=quote_type, category=category)
