"""Job registry mapping job names to functions."""

from __future__ import annotations

from collections.abc import Callable

from portfolio_risk.core.logging import get_logger


logger = get_logger("jobs.registry")

_registry: dict[str, Callable] = {}


def register_job(name: str) -> Callable:
    """
    Decorator to register a job function.

    Usage:
        @register_job("recompute_stale")
        async def recompute_stale_job() -> JobResult:
            ...
    """

    def decorator(func: Callable) -> Callable:
        _registry[name] = func
        logger.debug(f"Registered job: {name}")
        return func

    return decorator


def get_job(name: str) -> Callable | None:
    return _registry.get(name)


def list_job_names() -> list[str]:
    return sorted(_registry)
