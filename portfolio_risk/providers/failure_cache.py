"""Negative cache for tickers that recently failed to resolve."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.logging import get_logger


logger = get_logger("providers.failure_cache")


class FailureType(StrEnum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"

    @property
    def ttl(self) -> timedelta:
        return _TTLS[self]


_TTLS = {
    FailureType.NOT_FOUND: timedelta(hours=24),
    FailureType.RATE_LIMITED: timedelta(hours=1),
    FailureType.API_ERROR: timedelta(hours=6),
}


@dataclass
class FailureRecord:
    ticker: str
    failure_type: FailureType
    reason: str
    failed_at: datetime
    expires_at: datetime


class FailureCache:
    """
    Remembers resolve failures so a ticker no provider covers is not
    re-requested on every page load.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._records: dict[str, FailureRecord] = {}

    def is_failed(self, ticker: str) -> bool:
        record = self._records.get(ticker.upper())
        if record is None:
            return False
        if record.expires_at <= self.clock.now():
            del self._records[ticker.upper()]
            return False
        return True

    def get(self, ticker: str) -> FailureRecord | None:
        return self._records.get(ticker.upper()) if self.is_failed(ticker) else None

    def record_failure(self, ticker: str, failure_type: FailureType, reason: str = "") -> FailureRecord:
        now = self.clock.now()
        record = FailureRecord(
            ticker=ticker.upper(),
            failure_type=failure_type,
            reason=reason,
            failed_at=now,
            expires_at=now + failure_type.ttl,
        )
        self._records[record.ticker] = record
        logger.info(
            f"Recorded {failure_type.value} failure for {record.ticker}",
            extra={"expires_at": record.expires_at.isoformat()},
        )
        return record

    def clear(self, ticker: str) -> None:
        self._records.pop(ticker.upper(), None)

    def cleanup_expired(self) -> int:
        now = self.clock.now()
        expired = [t for t, r in self._records.items() if r.expires_at <= now]
        for ticker in expired:
            del self._records[ticker]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
