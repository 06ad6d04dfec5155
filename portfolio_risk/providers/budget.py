"""
Per-provider daily call budget.

Every provider call reserves one unit first. Reservation is atomic so
concurrent resolves for different tickers can never push a provider past its
daily allowance. Budgets reset at UTC midnight.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Mapping, Protocol

from redis.asyncio import Redis

from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger


logger = get_logger("providers.budget")

BUDGET_PREFIX = "portfolio_risk:budget"


def default_limits() -> dict[str, int]:
    return {
        "twelvedata": settings.twelvedata_daily_budget,
        "yahoo": settings.yahoo_daily_budget,
    }


def _day_key(now: datetime) -> str:
    return now.strftime("%Y%m%d")


def _next_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


class CallBudget(Protocol):
    async def reserve(self, provider: str) -> bool:
        """Take one call from today's budget. False if exhausted."""
        ...

    async def remaining(self, provider: str) -> int: ...

    async def exhaust(self, provider: str) -> None:
        """Mark the provider as used up for the rest of the day."""
        ...


class InMemoryCallBudget:
    """Process-local budget, used in tests and single-process deployments."""

    def __init__(self, limits: Mapping[str, int] | None = None, clock: Clock | None = None):
        self.limits = dict(limits if limits is not None else default_limits())
        self.clock = clock or SystemClock()
        self._used: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    def _key(self, provider: str) -> tuple[str, str]:
        return provider, _day_key(self.clock.now())

    async def reserve(self, provider: str) -> bool:
        limit = self.limits.get(provider)
        if limit is None:
            return True
        async with self._lock:
            key = self._key(provider)
            used = self._used.get(key, 0)
            if used >= limit:
                return False
            self._used[key] = used + 1
            return True

    async def remaining(self, provider: str) -> int:
        limit = self.limits.get(provider)
        if limit is None:
            return -1
        return max(limit - self._used.get(self._key(provider), 0), 0)

    async def exhaust(self, provider: str) -> None:
        limit = self.limits.get(provider)
        if limit is None:
            return
        async with self._lock:
            self._used[self._key(provider)] = limit


class ValkeyCallBudget:
    """Budget shared by every API process and worker through Valkey counters."""

    def __init__(
        self,
        client: Redis,
        limits: Mapping[str, int] | None = None,
        clock: Clock | None = None,
    ):
        self.client = client
        self.limits = dict(limits if limits is not None else default_limits())
        self.clock = clock or SystemClock()

    def _key(self, provider: str) -> str:
        return f"{BUDGET_PREFIX}:{provider}:{_day_key(self.clock.now())}"

    async def reserve(self, provider: str) -> bool:
        limit = self.limits.get(provider)
        if limit is None:
            return True
        key = self._key(provider)
        expire_at = int(_next_midnight(self.clock.now()).timestamp()) + 3600
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expireat(key, expire_at)
            used, _ = await pipe.execute()
        if int(used) > limit:
            # Give the unit back so remaining() stays accurate
            await self.client.decr(key)
            logger.info(f"Daily budget exhausted for {provider}", extra={"limit": limit})
            return False
        return True

    async def remaining(self, provider: str) -> int:
        limit = self.limits.get(provider)
        if limit is None:
            return -1
        used = await self.client.get(self._key(provider))
        return max(limit - int(used or 0), 0)

    async def exhaust(self, provider: str) -> None:
        limit = self.limits.get(provider)
        if limit is None:
            return
        expire_at = int(_next_midnight(self.clock.now()).timestamp()) + 3600
        await self.client.set(self._key(provider), limit, exat=expire_at)
