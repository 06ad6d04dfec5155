"""Celery tasks for background jobs."""

from __future__ import annotations

import asyncio
from typing import Any

import portfolio_risk.jobs.definitions  # noqa: F401 - register jobs
from portfolio_risk.celery_app import celery_app
from portfolio_risk.core.logging import get_logger
from portfolio_risk.jobs.executor import run_recorded_job
from portfolio_risk.repositories import jobs_orm as jobs_repo


logger = get_logger("jobs.celery_tasks")

# Per-worker event loop for Celery prefork pool
_worker_loop: asyncio.AbstractEventLoop | None = None


def _get_worker_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the worker process."""
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop


def _run_async(coro: Any) -> Any:
    """Run async coroutine in the worker's event loop.

    A persistent loop keeps the loop-bound Valkey and database pools usable
    across tasks.
    """
    loop = _get_worker_loop()
    return loop.run_until_complete(coro)


async def _execute_job_locked(job_name: str, trigger: str) -> str:
    from portfolio_risk.cache.distributed_lock import DistributedLock

    lock = DistributedLock(f"job:{job_name}", timeout=60 * 30, blocking=False)
    acquired = await lock.acquire()
    if not acquired:
        try:
            await jobs_repo.update_job_stats(job_name, "skipped", 0, "Already running")
        except Exception as stats_exc:
            logger.warning(f"Failed to update job stats for {job_name}: {stats_exc}")
        return f"Skipped {job_name}: already running"

    try:
        result = await run_recorded_job(job_name, trigger)
        return result.message
    except Exception:
        logger.exception("Job failed", extra={"job": job_name})
        raise
    finally:
        await lock.release()


def _run_job(job_name: str, trigger: str = "schedule") -> str:
    return _run_async(_execute_job_locked(job_name, trigger))


@celery_app.task(name="jobs.refresh_prices")
def refresh_prices_task(trigger: str = "schedule") -> str:
    return _run_job("refresh_prices", trigger)


@celery_app.task(name="jobs.recompute_stale")
def recompute_stale_task(trigger: str = "schedule") -> str:
    return _run_job("recompute_stale", trigger)


@celery_app.task(name="jobs.retry_errors")
def retry_errors_task(trigger: str = "schedule") -> str:
    return _run_job("retry_errors", trigger)


@celery_app.task(name="jobs.refresh_downside_risk")
def refresh_downside_risk_task(trigger: str = "schedule") -> str:
    """Recompute downside risk for every portfolio, one at a time."""
    return _run_job("refresh_downside_risk", trigger)


@celery_app.task(name="jobs.refresh_correlations")
def refresh_correlations_task(trigger: str = "schedule") -> str:
    return _run_job("refresh_correlations", trigger)


@celery_app.task(name="jobs.evaluate_alerts")
def evaluate_alerts_task(trigger: str = "schedule") -> str:
    """Evaluate enabled alert rules in live mode."""
    return _run_job("evaluate_alerts", trigger)


@celery_app.task(name="jobs.cleanup_failure_cache")
def cleanup_failure_cache_task(trigger: str = "schedule") -> str:
    return _run_job("cleanup_failure_cache", trigger)


# =============================================================================
# Read-path refreshes
# =============================================================================


async def _refresh_entry(key: str) -> str:
    from portfolio_risk.services.analytics import get_analytics_service

    service = await get_analytics_service()
    entry = await service.cache.storage.get(key)
    if entry is None:
        return f"Skipped {key}: entry no longer exists"
    spec = entry.cache_key
    outcome = await service.cache.refresh(spec, service.compute_for(spec))
    return f"{key}: {outcome.result.value}"


@celery_app.task(name="cache.refresh_entry")
def refresh_entry_task(key: str) -> str:
    """Recompute one cache entry scheduled by the API read path."""
    return _run_async(_refresh_entry(key))
