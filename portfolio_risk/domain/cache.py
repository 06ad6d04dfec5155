"""Cache entry domain models.

Status machine of an entry::

    (missing) -> stale -> calculating -> fresh | error
    fresh | error -> stale        on expiry or explicit invalidation
    error -> calculating          only after the backoff window, below the retry ceiling
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class CacheStatus(StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    CALCULATING = "calculating"
    ERROR = "error"


class CacheKind(StrEnum):
    TICKER_RISK = "ticker_risk"
    DOWNSIDE_RISK = "downside_risk"
    CORRELATION = "correlation"
    BETA_FORECAST = "beta_forecast"


@dataclass(frozen=True)
class CacheKey:
    """Subject plus parameter set. ``key`` is the stable storage identifier."""

    kind: CacheKind
    subject: str
    params: tuple[tuple[str, Any], ...] = ()
    portfolio_id: str | None = None

    @classmethod
    def build(
        cls,
        kind: CacheKind,
        subject: str,
        portfolio_id: str | None = None,
        **params: Any,
    ) -> CacheKey:
        return cls(
            kind=kind,
            subject=subject,
            params=tuple(sorted((k, v) for k, v in params.items() if v is not None)),
            portfolio_id=portfolio_id,
        )

    @property
    def key(self) -> str:
        parts = [self.kind.value, self.subject]
        parts.extend(f"{k}={v}" for k, v in self.params)
        return ":".join(parts)

    @property
    def params_dict(self) -> dict[str, Any]:
        return dict(self.params)

    def __str__(self) -> str:
        return self.key


@dataclass
class CacheEntry:
    key: str
    kind: CacheKind
    subject: str
    status: CacheStatus
    updated_at: datetime
    params: dict[str, Any] = field(default_factory=dict)
    portfolio_id: str | None = None
    payload: dict[str, Any] | None = None
    retry_count: int = 0
    last_error: str | None = None
    error_details: dict[str, Any] | None = None
    calculated_at: datetime | None = None
    calculating_since: datetime | None = None
    expires_at: datetime | None = None

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey.build(self.kind, self.subject, self.portfolio_id, **self.params)

    @property
    def is_stale(self) -> bool:
        return self.status is CacheStatus.STALE

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def age_seconds(self, now: datetime) -> float | None:
        if self.calculated_at is None:
            return None
        return (now - self.calculated_at).total_seconds()
