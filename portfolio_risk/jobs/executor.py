"""Job execution with run recording and error handling."""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass

from portfolio_risk.core.exceptions import JobError
from portfolio_risk.core.logging import get_logger, job_name_var
from portfolio_risk.repositories import jobs_orm as jobs_repo

from .registry import get_job


logger = get_logger("jobs.executor")


@dataclass
class JobResult:
    message: str
    items_processed: int = 0
    items_failed: int = 0

    def __str__(self) -> str:
        return self.message


async def execute_job(name: str) -> JobResult:
    """
    Execute a job by name.

    Raises:
        JobError: Unknown job or the job raised
    """
    job_func = get_job(name)
    if job_func is None:
        raise JobError(message=f"Unknown job: {name}", error_code="UNKNOWN_JOB")

    start = time.monotonic()
    token = job_name_var.set(name)
    try:
        result = await job_func() if inspect.iscoroutinefunction(job_func) else job_func()
    except Exception as e:
        duration = time.monotonic() - start
        logger.exception(f"Job {name} failed after {duration:.2f}s")
        raise JobError(
            message=f"Job execution failed: {e!s}",
            error_code="JOB_EXECUTION_FAILED",
            details={"job_name": name, "duration_seconds": duration},
        ) from e
    finally:
        job_name_var.reset(token)

    if not isinstance(result, JobResult):
        result = JobResult(str(result) if result else "Completed")
    logger.info(
        f"Job {name} executed in {time.monotonic() - start:.2f}s: {result.message}",
        extra={"items_processed": result.items_processed, "items_failed": result.items_failed},
    )
    return result


async def run_recorded_job(name: str, trigger: str = "schedule") -> JobResult:
    """
    Execute under a ``job_runs`` row and update the cronjob aggregates.

    Bookkeeping failures are logged and never mask the job outcome.
    """
    run_id: int | None = None
    try:
        run_id = await jobs_repo.start_run(name, trigger)
    except Exception as e:
        logger.warning(f"Failed to record start of {name}: {e}")

    start = time.monotonic()
    try:
        result = await execute_job(name)
    except JobError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        await _record(name, run_id, "failed", duration_ms, error=str(e.__cause__ or e))
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    status = "failed" if result.items_failed and not result.items_processed else "success"
    await _record(name, run_id, status, duration_ms, result=result)
    return result


async def _record(
    name: str,
    run_id: int | None,
    status: str,
    duration_ms: int,
    result: JobResult | None = None,
    error: str | None = None,
) -> None:
    try:
        if run_id is not None:
            await jobs_repo.finish_run(
                run_id,
                status,
                duration_ms=duration_ms,
                items_processed=result.items_processed if result else 0,
                items_failed=result.items_failed if result else 0,
                message=result.message if result else None,
                error=error,
            )
        await jobs_repo.update_job_stats(name, status, duration_ms, error)
    except Exception as e:
        logger.warning(f"Failed to update job stats for {name}: {e}")
