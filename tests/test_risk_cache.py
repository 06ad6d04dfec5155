"""Tests for the risk cache service: status machine, single flight and retries."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from portfolio_risk.core.exceptions import (
    AppException,
    CacheMiss,
    CalculationFailed,
    InsufficientHistory,
    RetryExhausted,
)
from portfolio_risk.domain.cache import CacheKey, CacheKind, CacheStatus
from portfolio_risk.services.risk_cache import (
    CachePolicy,
    InMemoryCacheStorage,
    RefreshResult,
    RiskCacheService,
)


POLICY = CachePolicy(
    ttl=timedelta(hours=4),
    max_retries=3,
    retry_base=timedelta(seconds=300),
    retry_max=timedelta(seconds=3600),
    lock_timeout=timedelta(seconds=300),
    force_wait=timedelta(seconds=30),
)

AAPL_RISK = CacheKey.build(CacheKind.TICKER_RISK, "AAPL", days=90, benchmark="SPY")


@pytest.fixture
def storage() -> InMemoryCacheStorage:
    return InMemoryCacheStorage()


@pytest.fixture
def scheduler() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(storage, clock, scheduler) -> RiskCacheService:
    return RiskCacheService(
        storage,
        clock=clock,
        scheduler=scheduler,
        policies={kind: POLICY for kind in CacheKind},
    )


class Counter:
    """Compute function that counts calls and optionally yields or fails."""

    def __init__(self, payload=None, error: Exception | None = None, yields: int = 0):
        self.payload = payload if payload is not None else {"risk_score": 42.0}
        self.error = error
        self.yields = yields
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        for _ in range(self.yields):
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.payload


async def fail_times(service: RiskCacheService, clock, n: int, error: Exception | None = None):
    """Drive an entry through ``n`` failed refreshes, waiting out each backoff."""
    compute = Counter(error=error or RuntimeError("boom"))
    for _ in range(n):
        await service.refresh(AAPL_RISK, compute)
        clock.advance(seconds=POLICY.retry_max.total_seconds())
    return compute


class TestCacheKey:
    """Tests for cache key construction."""

    def test_key_is_stable_across_param_order(self):
        a = CacheKey.build(CacheKind.TICKER_RISK, "AAPL", days=90, benchmark="SPY")
        b = CacheKey.build(CacheKind.TICKER_RISK, "AAPL", benchmark="SPY", days=90)
        assert a.key == b.key == "ticker_risk:AAPL:benchmark=SPY:days=90"

    def test_different_params_are_different_entries(self):
        a = CacheKey.build(CacheKind.TICKER_RISK, "AAPL", days=90)
        b = CacheKey.build(CacheKind.TICKER_RISK, "AAPL", days=30)
        assert a.key != b.key


class TestRead:
    """Tests for the read path, which never computes."""

    @pytest.mark.asyncio
    async def test_miss_creates_placeholder_and_schedules(self, service, storage, scheduler):
        with pytest.raises(CacheMiss) as exc_info:
            await service.read(AAPL_RISK, actions={"refresh": "/api/risk/AAPL?force=true"})

        assert exc_info.value.details["actions"]["refresh"].endswith("force=true")
        entry = await storage.get(AAPL_RISK.key)
        assert entry.status is CacheStatus.STALE
        scheduler.assert_awaited_once_with(AAPL_RISK)

    @pytest.mark.asyncio
    async def test_fresh_entry_served(self, service, scheduler):
        await service.refresh(AAPL_RISK, Counter())
        entry = await service.read(AAPL_RISK)
        assert entry.status is CacheStatus.FRESH
        assert entry.payload == {"risk_score": 42.0}
        scheduler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_entry_is_marked_stale_lazily(self, service, clock, scheduler):
        """Expiry is applied on read; the stale payload is still served."""
        await service.refresh(AAPL_RISK, Counter())
        clock.advance(hours=4)

        entry = await service.read(AAPL_RISK)

        assert entry.status is CacheStatus.STALE
        assert entry.payload == {"risk_score": 42.0}
        scheduler.assert_awaited_once_with(AAPL_RISK)

    @pytest.mark.asyncio
    async def test_scheduler_failure_does_not_break_read(self, service, scheduler):
        scheduler.side_effect = ConnectionError("broker down")
        with pytest.raises(CacheMiss):
            await service.read(AAPL_RISK)


class TestSingleFlight:
    """Tests for at most one computation per key."""

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_compute_once(self, service):
        compute = Counter(yields=3)
        outcomes = await asyncio.gather(*(service.refresh(AAPL_RISK, compute) for _ in range(5)))

        results = [o.result for o in outcomes]
        assert compute.calls == 1
        assert results.count(RefreshResult.COMPUTED) == 1
        assert results.count(RefreshResult.IN_PROGRESS) == 4

    @pytest.mark.asyncio
    async def test_queued_refreshes_after_completion_are_skipped(self, service, clock):
        """Refresh tasks queued by several stale reads compute once."""
        compute = Counter()
        first = await service.refresh(AAPL_RISK, compute)
        clock.advance(seconds=1)
        second = await service.refresh(AAPL_RISK, compute)

        assert first.result is RefreshResult.COMPUTED
        assert second.result is RefreshResult.NOT_DUE
        assert second.entry.status is CacheStatus.FRESH
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_recomputed(self, service, clock):
        compute = Counter()
        await service.refresh(AAPL_RISK, compute)
        clock.advance(hours=4)

        outcome = await service.refresh(AAPL_RISK, compute)

        assert outcome.result is RefreshResult.COMPUTED
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_force_refresh_waits_for_running_calculation(self, service):
        """Force refresh reads the running calculation's result instead of starting another."""
        running = Counter(payload={"risk_score": 10.0}, yields=5)
        task = asyncio.create_task(service.refresh(AAPL_RISK, running))
        await asyncio.sleep(0)

        forced = Counter(payload={"risk_score": 99.0})
        entry = await service.force_refresh(AAPL_RISK, forced)
        await task

        assert forced.calls == 0
        assert entry.status is CacheStatus.FRESH
        assert entry.payload == {"risk_score": 10.0}

    @pytest.mark.asyncio
    async def test_force_refresh_gives_up_after_wait(self, service):
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return {"risk_score": 1.0}

        task = asyncio.create_task(service.refresh(AAPL_RISK, blocked))
        await asyncio.sleep(0)

        entry = await service.force_refresh(AAPL_RISK, Counter())
        assert entry.status is CacheStatus.CALCULATING

        release.set()
        outcome = await task
        assert outcome.result is RefreshResult.COMPUTED

    @pytest.mark.asyncio
    async def test_force_refresh_recomputes_fresh_entry(self, service):
        await service.refresh(AAPL_RISK, Counter())
        entry = await service.force_refresh(AAPL_RISK, Counter(payload={"risk_score": 7.0}))
        assert entry.payload == {"risk_score": 7.0}

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over(self, service, storage, clock):
        """A claim older than the lock timeout no longer blocks refreshes."""
        now = clock.now()
        stuck = await storage.try_claim(AAPL_RISK, None, now, now - POLICY.lock_timeout)

        outcome = await service.refresh(AAPL_RISK, Counter())
        assert outcome.result is RefreshResult.IN_PROGRESS

        clock.advance(seconds=301)
        outcome = await service.refresh(AAPL_RISK, Counter())
        assert outcome.result is RefreshResult.COMPUTED

        # The crashed worker's late result is discarded
        late = await storage.complete(
            AAPL_RISK.key, stuck.calculating_since, {"late": True}, clock.now(), clock.now()
        )
        assert late is None
        assert (await storage.get(AAPL_RISK.key)).payload == {"risk_score": 42.0}


class TestRetries:
    """Tests for failure bookkeeping and exponential backoff."""

    def test_backoff_grows_and_caps(self, service):
        delays = [service.backoff_delay(CacheKind.TICKER_RISK, n) for n in range(0, 6)]
        assert delays == [
            timedelta(0),
            timedelta(seconds=300),
            timedelta(seconds=600),
            timedelta(seconds=1200),
            timedelta(seconds=2400),
            timedelta(seconds=3600),
        ]

    @pytest.mark.asyncio
    async def test_failure_records_error(self, service, storage):
        outcome = await service.refresh(AAPL_RISK, Counter(error=RuntimeError("provider exploded")))

        assert outcome.result is RefreshResult.FAILED
        entry = await storage.get(AAPL_RISK.key)
        assert entry.status is CacheStatus.ERROR
        assert entry.retry_count == 1
        assert "provider exploded" in entry.last_error
        assert entry.calculating_since is None

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, service, clock):
        await service.refresh(AAPL_RISK, Counter(error=RuntimeError("boom")))

        compute = Counter()
        outcome = await service.refresh(AAPL_RISK, compute)
        assert outcome.result is RefreshResult.NOT_DUE
        assert compute.calls == 0

        clock.advance(seconds=300)
        outcome = await service.refresh(AAPL_RISK, compute)
        assert outcome.result is RefreshResult.COMPUTED
        assert outcome.entry.retry_count == 0
        assert outcome.entry.last_error is None

    @pytest.mark.asyncio
    async def test_retry_ceiling(self, service, clock):
        """At the ceiling the entry stays in error and is never retried."""
        await fail_times(service, clock, 3)

        compute = Counter()
        outcome = await service.refresh(AAPL_RISK, compute)
        assert outcome.result is RefreshResult.EXHAUSTED
        assert compute.calls == 0
        assert outcome.entry.retry_count == 3
        assert await service.due_for_retry() == []

    @pytest.mark.asyncio
    async def test_exhausted_entry_not_staled_by_expiry(self, service, clock):
        await fail_times(service, clock, 3)
        clock.advance(hours=24)

        entry = await service.get(AAPL_RISK)
        assert entry.status is CacheStatus.ERROR
        assert await service.stale_entries() == []

    @pytest.mark.asyncio
    async def test_due_for_retry_lists_elapsed_errors(self, service, clock):
        await service.refresh(AAPL_RISK, Counter(error=RuntimeError("boom")))
        assert await service.due_for_retry() == []

        clock.advance(seconds=300)
        due = await service.due_for_retry()
        assert [e.key for e in due] == [AAPL_RISK.key]


class TestErrorSurfacing:
    """Tests for turning error entries into API errors."""

    @pytest.mark.asyncio
    async def test_domain_error_is_reraised_as_recorded(self, service):
        await service.refresh(AAPL_RISK, Counter(error=InsufficientHistory("AAPL", 20, 5)))
        entry = await service.read(AAPL_RISK)

        with pytest.raises(AppException) as exc_info:
            service.raise_for_error(entry)

        assert exc_info.value.error_code == "INSUFFICIENT_HISTORY"
        assert exc_info.value.status_code == 422
        assert exc_info.value.details["available"] == 5

    @pytest.mark.asyncio
    async def test_unexpected_error_is_calculation_failed(self, service):
        await service.refresh(AAPL_RISK, Counter(error=RuntimeError("boom")))
        entry = await service.read(AAPL_RISK)

        with pytest.raises(CalculationFailed) as exc_info:
            service.raise_for_error(entry)
        assert exc_info.value.details["retry_count"] == 1
        assert exc_info.value.details["next_retry_at"] is not None

    @pytest.mark.asyncio
    async def test_exhausted_error_is_retry_exhausted(self, service, clock):
        await fail_times(service, clock, 3)
        entry = await service.get(AAPL_RISK)

        with pytest.raises(RetryExhausted):
            service.raise_for_error(entry)

    @pytest.mark.asyncio
    async def test_exhausted_domain_error_is_retry_exhausted(self, service, clock):
        """A recorded domain error stops being re-raised once retries run out."""
        await fail_times(service, clock, 2, error=InsufficientHistory("AAPL", 20, 5))
        with pytest.raises(AppException) as exc_info:
            service.raise_for_error(await service.get(AAPL_RISK))
        assert exc_info.value.error_code == "INSUFFICIENT_HISTORY"

        await fail_times(service, clock, 1, error=InsufficientHistory("AAPL", 20, 5))
        with pytest.raises(RetryExhausted) as exc_info:
            service.raise_for_error(await service.get(AAPL_RISK))
        assert exc_info.value.details["retry_count"] == 3
        assert exc_info.value.details["last_error_code"] == "INSUFFICIENT_HISTORY"

    @pytest.mark.asyncio
    async def test_error_with_previous_payload_serves_it(self, service, clock):
        """A failed recompute keeps the last good payload visible."""
        await service.refresh(AAPL_RISK, Counter())
        clock.advance(hours=4)
        await service.refresh(AAPL_RISK, Counter(error=RuntimeError("boom")))

        entry = await service.get(AAPL_RISK)
        assert entry.status is CacheStatus.ERROR
        assert entry.payload == {"risk_score": 42.0}
        service.raise_for_error(entry)

    @pytest.mark.asyncio
    async def test_force_refresh_raises_compute_error(self, service, storage):
        with pytest.raises(InsufficientHistory):
            await service.force_refresh(AAPL_RISK, Counter(error=InsufficientHistory("AAPL", 20, 5)))
        assert (await storage.get(AAPL_RISK.key)).status is CacheStatus.ERROR


class TestInvalidation:
    """Tests for invalidation and admin operations."""

    @pytest.mark.asyncio
    async def test_invalidate_marks_stale_and_keeps_payload(self, service):
        await service.refresh(AAPL_RISK, Counter())
        entry = await service.invalidate(AAPL_RISK)
        assert entry.status is CacheStatus.STALE
        assert entry.payload == {"risk_score": 42.0}

    @pytest.mark.asyncio
    async def test_invalidate_revives_exhausted_entry(self, service, clock):
        await fail_times(service, clock, 3)
        entry = await service.invalidate(AAPL_RISK)
        assert entry.status is CacheStatus.STALE

    @pytest.mark.asyncio
    async def test_invalidate_portfolio(self, service):
        downside = CacheKey.build(CacheKind.DOWNSIDE_RISK, "p1", portfolio_id="p1", days=90)
        correlation = CacheKey.build(CacheKind.CORRELATION, "p1", portfolio_id="p1", days=90)
        other = CacheKey.build(CacheKind.DOWNSIDE_RISK, "p2", portfolio_id="p2", days=90)
        for spec in (downside, correlation, other):
            await service.refresh(spec, Counter())

        assert await service.invalidate_portfolio("p1") == 2
        statuses = {e["kind"]: e["status"] for e in await service.portfolio_status("p1")}
        assert statuses == {"downside_risk": "stale", "correlation": "stale"}
        assert (await service.get(other)).status is CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_reset_deletes(self, service):
        await service.refresh(AAPL_RISK, Counter())
        assert await service.reset(AAPL_RISK.key) is True
        assert await service.reset(AAPL_RISK.key) is False
        assert await service.get(AAPL_RISK) is None

    @pytest.mark.asyncio
    async def test_health_counts(self, service, clock):
        await service.refresh(AAPL_RISK, Counter())
        other = CacheKey.build(CacheKind.TICKER_RISK, "MSFT", days=90)
        await service.refresh(other, Counter(error=RuntimeError("boom")))

        counts = await service.health()
        assert counts["fresh"] == 1
        assert counts["error"] == 1
        assert counts["total"] == 2
