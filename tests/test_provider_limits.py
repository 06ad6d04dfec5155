"""Tests for provider call budgets and the failure cache."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from portfolio_risk.core.clock import ManualClock
from portfolio_risk.providers.budget import InMemoryCallBudget
from portfolio_risk.providers.failure_cache import FailureCache, FailureType


class TestCallBudget:
    """Tests for the in-memory daily budget."""

    @pytest.mark.asyncio
    async def test_reserve_until_exhausted(self, clock):
        budget = InMemoryCallBudget({"twelvedata": 2}, clock=clock)
        assert await budget.reserve("twelvedata") is True
        assert await budget.reserve("twelvedata") is True
        assert await budget.reserve("twelvedata") is False
        assert await budget.remaining("twelvedata") == 0

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_limit(self, clock):
        budget = InMemoryCallBudget({"twelvedata": 5}, clock=clock)
        results = await asyncio.gather(*(budget.reserve("twelvedata") for _ in range(20)))
        assert sum(results) == 5

    @pytest.mark.asyncio
    async def test_resets_at_utc_midnight(self):
        clock = ManualClock(datetime(2024, 1, 2, 23, 59, tzinfo=UTC))
        budget = InMemoryCallBudget({"twelvedata": 1}, clock=clock)
        assert await budget.reserve("twelvedata") is True
        assert await budget.reserve("twelvedata") is False

        clock.advance(minutes=2)
        assert await budget.reserve("twelvedata") is True

    @pytest.mark.asyncio
    async def test_unlimited_provider(self, clock):
        budget = InMemoryCallBudget({}, clock=clock)
        assert await budget.reserve("yahoo") is True
        assert await budget.remaining("yahoo") == -1

    @pytest.mark.asyncio
    async def test_exhaust(self, clock):
        budget = InMemoryCallBudget({"twelvedata": 800}, clock=clock)
        await budget.exhaust("twelvedata")
        assert await budget.reserve("twelvedata") is False


class TestFailureCache:
    """Tests for the negative ticker cache."""

    def test_records_by_uppercase_ticker(self, clock):
        cache = FailureCache(clock=clock)
        cache.record_failure("fid1234", FailureType.NOT_FOUND, "no coverage")
        assert cache.is_failed("FID1234")
        assert cache.get("fid1234").reason == "no coverage"

    @pytest.mark.parametrize(
        "failure_type,hours",
        [(FailureType.NOT_FOUND, 24), (FailureType.RATE_LIMITED, 1), (FailureType.API_ERROR, 6)],
    )
    def test_expiry_per_type(self, clock, failure_type, hours):
        cache = FailureCache(clock=clock)
        cache.record_failure("AAPL", failure_type)

        clock.advance(hours=hours, seconds=-1)
        assert cache.is_failed("AAPL")
        clock.advance(seconds=1)
        assert not cache.is_failed("AAPL")

    def test_clear(self, clock):
        cache = FailureCache(clock=clock)
        cache.record_failure("AAPL", FailureType.API_ERROR)
        cache.clear("aapl")
        assert cache.get("AAPL") is None

    def test_cleanup_expired(self, clock):
        cache = FailureCache(clock=clock)
        cache.record_failure("A", FailureType.RATE_LIMITED)
        cache.record_failure("B", FailureType.NOT_FOUND)
        clock.advance(hours=2)

        assert cache.cleanup_expired() == 1
        assert len(cache) == 1
        assert cache.is_failed("B")
