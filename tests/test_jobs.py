"""Tests for the job registry, schedules, executor and job definitions."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from portfolio_risk.core.exceptions import JobError, NoDataForInstrument
from portfolio_risk.jobs import definitions
from portfolio_risk.jobs.celery_scheduler import cron_to_crontab
from portfolio_risk.jobs.executor import JobResult, execute_job, run_recorded_job
from portfolio_risk.jobs.job_defaults import (
    DEFAULT_SCHEDULES,
    get_job_priority,
    get_job_schedule,
    next_runs,
    validate_cron,
)
from portfolio_risk.jobs.registry import _registry, get_job, list_job_names, register_job
from portfolio_risk.services.analytics import ticker_risk_key


@pytest.fixture
def temp_jobs():
    """Register throwaway jobs and remove them afterwards."""
    names: list[str] = []

    def add(name, func):
        register_job(name)(func)
        names.append(name)
        return func

    yield add
    for name in names:
        _registry.pop(name, None)


@pytest.fixture
def jobs_repo(mocker):
    repo = mocker.patch("portfolio_risk.jobs.executor.jobs_repo")
    repo.start_run = AsyncMock(return_value=11)
    repo.finish_run = AsyncMock()
    repo.update_job_stats = AsyncMock()
    return repo


class TestRegistry:
    def test_builtin_jobs_registered(self):
        assert set(DEFAULT_SCHEDULES) <= set(list_job_names())

    def test_register_and_lookup(self, temp_jobs):
        async def job():
            return JobResult("ok")

        temp_jobs("test_lookup", job)
        assert get_job("test_lookup") is job
        assert get_job("missing") is None


class TestSchedules:
    """Tests for cron validation and default schedules."""

    def test_validate_strips(self):
        assert validate_cron("  */15 * * * * ") == "*/15 * * * *"

    @pytest.mark.parametrize("expr", ["* * * *", "* * * * * *", "61 * * * *", "every hour"])
    def test_validate_rejects(self, expr):
        with pytest.raises(ValueError):
            validate_cron(expr)

    def test_defaults_are_valid(self):
        for cron, _ in DEFAULT_SCHEDULES.values():
            assert validate_cron(cron) == cron

    def test_next_runs(self):
        now = datetime(2024, 1, 2, 12, 7, tzinfo=UTC)
        runs = next_runs("*/15 * * * *", now, count=3)
        assert [r.minute for r in runs] == [15, 30, 45]

    def test_unknown_job_defaults(self):
        assert get_job_schedule("nope") == ("0 * * * *", "Job: nope")
        assert get_job_priority("nope") == {"queue": "default", "priority": 5}
        assert get_job_priority("refresh_prices")["queue"] == "high"

    def test_cron_to_crontab(self):
        schedule = cron_to_crontab("30 22 * * 1-5")
        assert schedule.minute == {30}
        assert schedule.hour == {22}
        assert schedule.day_of_week == {1, 2, 3, 4, 5}


class TestExecuteJob:
    """Tests for job execution."""

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(JobError) as exc_info:
            await execute_job("does_not_exist")
        assert exc_info.value.error_code == "UNKNOWN_JOB"

    @pytest.mark.asyncio
    async def test_failing_job_is_wrapped(self, temp_jobs):
        async def boom():
            raise RuntimeError("provider down")

        temp_jobs("test_boom", boom)

        with pytest.raises(JobError) as exc_info:
            await execute_job("test_boom")
        assert exc_info.value.error_code == "JOB_EXECUTION_FAILED"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_plain_return_is_wrapped(self, temp_jobs):
        temp_jobs("test_sync", lambda: "done")
        result = await execute_job("test_sync")
        assert result.message == "done"
        assert result.items_processed == 0


class TestRunRecordedJob:
    """Tests for job run bookkeeping."""

    @pytest.mark.asyncio
    async def test_success_recorded(self, temp_jobs, jobs_repo):
        async def job():
            return JobResult("3 refreshed", items_processed=3, items_failed=1)

        temp_jobs("test_ok", job)
        result = await run_recorded_job("test_ok", trigger="manual")

        assert result.items_processed == 3
        jobs_repo.start_run.assert_awaited_once_with("test_ok", "manual")
        args, kwargs = jobs_repo.finish_run.await_args
        assert args == (11, "success")
        assert kwargs["items_failed"] == 1
        assert jobs_repo.update_job_stats.await_args.args[:2] == ("test_ok", "success")

    @pytest.mark.asyncio
    async def test_only_failures_is_failed_run(self, temp_jobs, jobs_repo):
        async def job():
            return JobResult("0 refreshed", items_failed=2)

        temp_jobs("test_all_failed", job)
        await run_recorded_job("test_all_failed")

        assert jobs_repo.finish_run.await_args.args == (11, "failed")

    @pytest.mark.asyncio
    async def test_job_error_recorded_and_raised(self, temp_jobs, jobs_repo):
        async def boom():
            raise RuntimeError("provider down")

        temp_jobs("test_raise", boom)

        with pytest.raises(JobError):
            await run_recorded_job("test_raise")
        assert jobs_repo.finish_run.await_args.kwargs["error"] == "provider down"

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_never_masks_result(self, temp_jobs, jobs_repo):
        jobs_repo.start_run.side_effect = RuntimeError("db down")
        jobs_repo.update_job_stats.side_effect = RuntimeError("db down")
        temp_jobs("test_no_db", lambda: JobResult("fine", items_processed=1))

        result = await run_recorded_job("test_no_db")

        assert result.message == "fine"
        jobs_repo.finish_run.assert_not_awaited()


class TestCacheJobs:
    """Tests for the cache maintenance jobs against the in-memory cache."""

    @pytest.fixture
    def service(self, mocker, analytics):
        mocker.patch(
            "portfolio_risk.jobs.definitions.get_analytics_service",
            new_callable=AsyncMock,
            return_value=analytics,
        )
        return analytics

    @pytest.mark.asyncio
    async def test_nothing_stale(self, service):
        result = await definitions.recompute_stale_job()
        assert result.message == "No stale entries"

    @pytest.mark.asyncio
    async def test_recompute_stale(self, service):
        spec = ticker_risk_key("AAPL", 90, "SPY")
        await service.get_ticker_risk("AAPL", 90, "SPY", force=True)
        await service.cache.invalidate(spec)

        result = await definitions.recompute_stale_job()

        assert result.items_processed == 1
        assert result.items_failed == 0
        entry = await service.cache.get(spec)
        assert entry.status.value == "fresh"

    @pytest.mark.asyncio
    async def test_retry_counts_failures(self, service, clock):
        spec = ticker_risk_key("ZZZZ", 90, "SPY")
        with pytest.raises(NoDataForInstrument):
            await service.get_ticker_risk("ZZZZ", 90, "SPY", force=True)

        assert await definitions.retry_errors_job() == JobResult("No entries due for retry")

        clock.advance(minutes=10)
        result = await definitions.retry_errors_job()

        assert result.items_failed == 1
        assert (await service.cache.get(spec)).retry_count == 2

    @pytest.mark.asyncio
    async def test_nothing_due_for_retry(self, service):
        result = await definitions.retry_errors_job()
        assert result.message == "No entries due for retry"
