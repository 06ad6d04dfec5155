"""Schedules and queue routing for the risk jobs.

Job categories:
    1. MARKET DATA (after US close, Mon-Fri)
       - refresh_prices: ensure history for every tracked ticker
    2. CACHE MAINTENANCE
       - recompute_stale: refresh stale and expired entries (every 15 min)
       - retry_errors: retry failed entries past their backoff (every 10 min)
    3. PORTFOLIO ANALYTICS
       - refresh_downside_risk: downside risk for every portfolio (hourly)
       - refresh_correlations: portfolio correlation matrices (daily)
    4. ALERTS
       - evaluate_alerts: live evaluation of enabled rules (every 30 min)
    5. CLEANUP
       - cleanup_failure_cache: drop expired negative results (hourly)
"""

from __future__ import annotations

from datetime import datetime

from croniter import CroniterBadCronError, croniter


# job_name -> (cron_expression, description)
DEFAULT_SCHEDULES: dict[str, tuple[str, str]] = {
    "refresh_prices": (
        "30 22 * * 1-5",
        "Fetch missing daily closes for every held or stored ticker. "
        "Idempotent: covered tickers cost no provider call.",
    ),
    "recompute_stale": (
        "*/15 * * * *",
        "Recompute stale and expired risk cache entries.",
    ),
    "retry_errors": (
        "*/10 * * * *",
        "Retry failed cache entries whose backoff window elapsed, below the retry ceiling.",
    ),
    "refresh_downside_risk": (
        "0 * * * *",
        "Recompute downside risk and correlation for every portfolio, one at a time.",
    ),
    "refresh_correlations": (
        "0 23 * * 1-5",
        "Recompute portfolio correlation matrices after the daily price refresh.",
    ),
    "evaluate_alerts": (
        "*/30 * * * *",
        "Evaluate enabled alert rules against fresh metrics and record triggers.",
    ),
    "cleanup_failure_cache": (
        "5 * * * *",
        "Remove expired entries from the ticker failure cache.",
    ),
}

JOB_PRIORITIES: dict[str, dict[str, int | str]] = {
    "refresh_prices": {"queue": "high", "priority": 9},
    "retry_errors": {"queue": "default", "priority": 6},
    "recompute_stale": {"queue": "default", "priority": 6},
    "refresh_downside_risk": {"queue": "batch", "priority": 5},
    "refresh_correlations": {"queue": "batch", "priority": 5},
    "evaluate_alerts": {"queue": "default", "priority": 4},
    "cleanup_failure_cache": {"queue": "low", "priority": 2},
}


def get_job_schedule(name: str) -> tuple[str, str]:
    return DEFAULT_SCHEDULES.get(name, ("0 * * * *", f"Job: {name}"))


def get_job_priority(name: str) -> dict[str, int | str]:
    return JOB_PRIORITIES.get(name, {"queue": "default", "priority": 5})


def validate_cron(expr: str) -> str:
    """
    Raises:
        ValueError: Not a 5-field cron expression
    """
    expr = expr.strip()
    if len(expr.split()) != 5:
        raise ValueError(f"Invalid cron expression: {expr}")
    try:
        croniter(expr)
    except (CroniterBadCronError, ValueError) as e:
        raise ValueError(f"Invalid cron expression: {e}") from e
    return expr


def next_runs(expr: str, now: datetime, count: int = 1) -> list[datetime]:
    itr = croniter(expr, now)
    return [itr.get_next(datetime) for _ in range(count)]
