"""Risk analytics response schemas.

Metric payloads are served as computed and stored; these models cover
the cache bookkeeping around them.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CacheEntryStatus(BaseModel):
    cache_key: str
    kind: str
    status: str
    age_seconds: Optional[float] = None
    last_calculated: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    retries_exhausted: bool = False


class PortfolioCacheStatusResponse(BaseModel):
    portfolio_id: str
    entries: List[CacheEntryStatus]


class InvalidateResponse(BaseModel):
    portfolio_id: str
    invalidated: int
    message: str


class CacheHealthResponse(BaseModel):
    """Entry counts by status; ``exhausted`` counts errors at the retry ceiling."""

    fresh: int = 0
    stale: int = 0
    calculating: int = 0
    error: int = 0
    exhausted: int = 0
    total: int = 0
