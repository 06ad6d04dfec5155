"""Celery job dispatch utilities."""

from __future__ import annotations

from typing import Any

from celery.result import AsyncResult

from portfolio_risk.celery_app import celery_app
from portfolio_risk.core.exceptions import JobError
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.cache import CacheKey
from portfolio_risk.jobs.registry import get_job


logger = get_logger("jobs.dispatch")

REFRESH_ENTRY_TASK = "cache.refresh_entry"


def enqueue_job(name: str, trigger: str = "manual") -> str:
    """Submit a registered job to Celery and return the task id."""
    if get_job(name) is None:
        raise JobError(message=f"Unknown job: {name}", error_code="UNKNOWN_JOB")

    result = celery_app.send_task(f"jobs.{name}", kwargs={"trigger": trigger})
    return result.id


async def enqueue_cache_refresh(spec: CacheKey) -> None:
    """Ask a worker to recompute one cache entry. Used by the read path."""
    result = celery_app.send_task(REFRESH_ENTRY_TASK, args=[spec.key], queue="default")
    logger.debug(f"Scheduled refresh of {spec.key}", extra={"task_id": result.id})


def get_task_status(task_id: str) -> dict[str, Any]:
    """Fetch Celery task status from the result backend."""
    result = AsyncResult(task_id, app=celery_app)
    payload: dict[str, Any] = {
        "task_id": task_id,
        "status": result.status,
    }

    if result.successful():
        payload["result"] = result.result
    elif result.failed():
        payload["error"] = str(result.result)

    if result.traceback:
        payload["traceback"] = result.traceback

    return payload
