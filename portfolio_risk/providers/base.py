"""Price provider capability interface and error classification."""

from __future__ import annotations

from datetime import date
from enum import StrEnum
from typing import Protocol, Sequence, runtime_checkable

from portfolio_risk.domain.price import PriceSeries


class ProviderErrorKind(StrEnum):
    NETWORK = "network"
    BAD_RESPONSE = "bad_response"
    PARSE = "parse"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"


class ProviderError(Exception):
    """Failure of one provider call for one symbol."""

    def __init__(self, provider: str, kind: ProviderErrorKind, message: str):
        self.provider = provider
        self.kind = kind
        self.message = message
        super().__init__(f"{provider} {kind.value}: {message}")

    @property
    def is_unsupported(self) -> bool:
        """The provider definitively does not cover this symbol."""
        return self.kind is ProviderErrorKind.NOT_FOUND

    @property
    def is_transient(self) -> bool:
        return not self.is_unsupported


# Substrings that mark a response as "this symbol is not available to us"
UNSUPPORTED_MARKERS = ("404", "not found", "pro plan", "grow plan", "available starting with")
RATE_LIMIT_MARKERS = ("api rate limit", "credits", "too many requests", "429")


def classify_error_message(message: str, status_code: int | None = None) -> ProviderErrorKind:
    """Map a provider error message / HTTP status onto an error kind."""
    lowered = message.lower()
    if status_code == 429 or any(m in lowered for m in RATE_LIMIT_MARKERS):
        return ProviderErrorKind.RATE_LIMITED
    if status_code == 404 or any(m in lowered for m in UNSUPPORTED_MARKERS):
        return ProviderErrorKind.NOT_FOUND
    return ProviderErrorKind.BAD_RESPONSE


@runtime_checkable
class PriceProvider(Protocol):
    """
    One upstream market-data source.

    ``ticker_suffixes`` is configuration data: the resolver asks the provider
    for each ``ticker + suffix`` in order, an empty suffix meaning the bare
    ticker.
    """

    name: str
    ticker_suffixes: Sequence[str]

    async def fetch(self, symbol: str, start: date, end: date) -> PriceSeries:
        """Fetch daily closes for ``symbol``, raising ProviderError on failure."""
        ...


def ticker_variants(provider: PriceProvider, ticker: str) -> list[str]:
    """Expand a ticker into the provider's ordered, de-duplicated variant list."""
    base = ticker.strip().upper()
    suffixes = [s.upper() for s in provider.ticker_suffixes or ("",)]
    # Already exchange-qualified, ask for it as given
    if any(s and base.endswith(s) for s in suffixes):
        return [base]
    variants: list[str] = []
    for suffix in suffixes:
        candidate = f"{base}{suffix}"
        if candidate not in variants:
            variants.append(candidate)
    return variants
