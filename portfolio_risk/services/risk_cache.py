"""
Risk cache service.

Serves computed risk payloads with explicit status, guarantees at most one
in-flight computation per cache key and keeps retry bookkeeping for failed
entries.

Single flight
-------------
Every transition into ``calculating`` goes through ``storage.try_claim``, a
compare-and-swap against the entry version the caller last read (its
``updated_at``). Of N concurrent refreshes for one key exactly one claim
succeeds; the rest observe the existing entry. The claim timestamp
(``calculating_since``) doubles as the owner token: completion and failure
writes only land while it is unchanged. A claim older than
``lock_timeout`` is treated as abandoned and may be taken over.

Force refresh
-------------
``force_refresh`` ignores freshness, backoff and the retry ceiling but not
the claim. When another computation holds the key it waits for that run to
finish and returns its result ("wait and read existing"); it never starts a
second computation for the same key. If the running claim outlives
``force_wait`` the current (still calculating) entry is returned.

Staleness
---------
Entries are marked stale lazily on read once ``expires_at`` has passed.
Error entries at the retry ceiling are left in error so they stay visible
to operators and are never picked up again by the scanners.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Awaitable, Callable, Protocol

from portfolio_risk.core.clock import Clock, SystemClock
from portfolio_risk.core.config import settings
from portfolio_risk.core.exceptions import (
    AppException,
    CacheMiss,
    CalculationFailed,
    RetryExhausted,
)
from portfolio_risk.core.logging import get_logger
from portfolio_risk.domain.cache import CacheEntry, CacheKey, CacheKind, CacheStatus


logger = get_logger("services.risk_cache")

Compute = Callable[[], Awaitable[dict[str, Any]]]
Scheduler = Callable[[CacheKey], Awaitable[None]]

ERROR_MESSAGE_LIMIT = 1000


class CacheStorage(Protocol):
    """Persistence for cache entries. All writes are atomic per key."""

    async def get(self, key: str) -> CacheEntry | None: ...

    async def ensure(self, spec: CacheKey, now: datetime) -> CacheEntry:
        """Create a stale placeholder if the key does not exist yet."""
        ...

    async def try_claim(
        self,
        spec: CacheKey,
        expected: CacheEntry | None,
        now: datetime,
        abandoned_before: datetime,
    ) -> CacheEntry | None:
        """
        Move the entry to ``calculating`` if it is still the version the
        caller read (``expected``; None meaning "does not exist"), or if it
        is a calculating claim started before ``abandoned_before``.
        Returns the claimed entry, or None when someone else got there first.
        """
        ...

    async def complete(
        self, key: str, claimed_at: datetime, payload: dict[str, Any], now: datetime, expires_at: datetime
    ) -> CacheEntry | None: ...

    async def fail(
        self,
        key: str,
        claimed_at: datetime,
        error: str,
        now: datetime,
        expires_at: datetime,
        max_retries: int,
        details: dict[str, Any] | None = None,
    ) -> CacheEntry | None: ...

    async def mark_stale(self, key: str, now: datetime, include_exhausted: bool, max_retries: int) -> CacheEntry | None: ...

    async def delete(self, key: str) -> bool: ...

    async def list_for_portfolio(self, portfolio_id: str) -> list[CacheEntry]: ...

    async def list_errors(self, max_retries: int, updated_before: datetime, limit: int) -> list[CacheEntry]: ...

    async def list_stale(self, now: datetime, limit: int) -> list[CacheEntry]: ...

    async def count_by_status(self, max_retries: int) -> dict[str, int]: ...


class RefreshResult(StrEnum):
    COMPUTED = "computed"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    NOT_DUE = "not_due"
    EXHAUSTED = "exhausted"


@dataclass
class RefreshOutcome:
    result: RefreshResult
    entry: CacheEntry | None
    error: Exception | None = None

    @property
    def computed(self) -> bool:
        return self.result is RefreshResult.COMPUTED


@dataclass(frozen=True)
class CachePolicy:
    ttl: timedelta
    max_retries: int
    retry_base: timedelta
    retry_max: timedelta
    lock_timeout: timedelta
    force_wait: timedelta
    poll_interval: float = 0.5

    @classmethod
    def for_kind(cls, kind: CacheKind) -> CachePolicy:
        hours = {
            CacheKind.TICKER_RISK: settings.risk_cache_ttl_hours,
            CacheKind.DOWNSIDE_RISK: settings.downside_cache_ttl_hours,
            CacheKind.CORRELATION: settings.correlation_cache_ttl_hours,
            CacheKind.BETA_FORECAST: settings.forecast_cache_ttl_hours,
        }[kind]
        return cls(
            ttl=timedelta(hours=hours),
            max_retries=settings.cache_max_retries,
            retry_base=timedelta(seconds=settings.cache_retry_base_seconds),
            retry_max=timedelta(seconds=settings.cache_retry_max_seconds),
            lock_timeout=timedelta(seconds=settings.cache_lock_timeout_seconds),
            force_wait=timedelta(seconds=settings.force_refresh_wait_seconds),
        )


# =============================================================================
# In-memory storage
# =============================================================================


class InMemoryCacheStorage:
    """Dict-backed storage for tests and single-process use.

    An asyncio lock makes each operation atomic within one event loop.
    Entries are copied in and out so callers never mutate stored state.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(entry: CacheEntry | None) -> CacheEntry | None:
        if entry is None:
            return None
        return replace(entry, params=dict(entry.params), payload=entry.payload)

    async def get(self, key: str) -> CacheEntry | None:
        return self._copy(self._entries.get(key))

    async def ensure(self, spec: CacheKey, now: datetime) -> CacheEntry:
        async with self._lock:
            entry = self._entries.get(spec.key)
            if entry is None:
                entry = CacheEntry(
                    key=spec.key,
                    kind=spec.kind,
                    subject=spec.subject,
                    portfolio_id=spec.portfolio_id,
                    params=spec.params_dict,
                    status=CacheStatus.STALE,
                    updated_at=now,
                )
                self._entries[spec.key] = entry
            return self._copy(entry)

    async def try_claim(
        self,
        spec: CacheKey,
        expected: CacheEntry | None,
        now: datetime,
        abandoned_before: datetime,
    ) -> CacheEntry | None:
        async with self._lock:
            current = self._entries.get(spec.key)
            if current is None:
                if expected is not None:
                    return None
                current = CacheEntry(
                    key=spec.key,
                    kind=spec.kind,
                    subject=spec.subject,
                    portfolio_id=spec.portfolio_id,
                    params=spec.params_dict,
                    status=CacheStatus.CALCULATING,
                    updated_at=now,
                    calculating_since=now,
                )
                self._entries[spec.key] = current
                return self._copy(current)

            abandoned = (
                current.status is CacheStatus.CALCULATING
                and current.calculating_since is not None
                and current.calculating_since < abandoned_before
            )
            unchanged = (
                expected is not None
                and current.status is not CacheStatus.CALCULATING
                and current.updated_at == expected.updated_at
            )
            if not (abandoned or unchanged):
                return None
            current.status = CacheStatus.CALCULATING
            current.calculating_since = now
            current.updated_at = now
            return self._copy(current)

    async def complete(
        self, key: str, claimed_at: datetime, payload: dict[str, Any], now: datetime, expires_at: datetime
    ) -> CacheEntry | None:
        async with self._lock:
            current = self._entries.get(key)
            if current is None or current.calculating_since != claimed_at:
                return None
            current.status = CacheStatus.FRESH
            current.payload = payload
            current.retry_count = 0
            current.last_error = None
            current.error_details = None
            current.calculated_at = now
            current.calculating_since = None
            current.updated_at = now
            current.expires_at = expires_at
            return self._copy(current)

    async def fail(
        self,
        key: str,
        claimed_at: datetime,
        error: str,
        now: datetime,
        expires_at: datetime,
        max_retries: int,
        details: dict[str, Any] | None = None,
    ) -> CacheEntry | None:
        async with self._lock:
            current = self._entries.get(key)
            if current is None or current.calculating_since != claimed_at:
                return None
            current.status = CacheStatus.ERROR
            current.retry_count = min(current.retry_count + 1, max_retries)
            current.last_error = error[:ERROR_MESSAGE_LIMIT]
            current.error_details = details
            current.calculating_since = None
            current.updated_at = now
            current.expires_at = expires_at
            return self._copy(current)

    async def mark_stale(
        self, key: str, now: datetime, include_exhausted: bool, max_retries: int
    ) -> CacheEntry | None:
        async with self._lock:
            current = self._entries.get(key)
            if current is None:
                return None
            if current.status not in (CacheStatus.FRESH, CacheStatus.ERROR):
                return self._copy(current)
            if (
                current.status is CacheStatus.ERROR
                and current.retry_count >= max_retries
                and not include_exhausted
            ):
                return self._copy(current)
            current.status = CacheStatus.STALE
            current.updated_at = now
            return self._copy(current)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def list_for_portfolio(self, portfolio_id: str) -> list[CacheEntry]:
        return [
            self._copy(e) for e in self._entries.values() if e.portfolio_id == portfolio_id
        ]

    async def list_errors(self, max_retries: int, updated_before: datetime, limit: int) -> list[CacheEntry]:
        rows = [
            e
            for e in self._entries.values()
            if e.status is CacheStatus.ERROR
            and e.retry_count < max_retries
            and e.updated_at <= updated_before
        ]
        rows.sort(key=lambda e: (e.retry_count, e.updated_at))
        return [self._copy(e) for e in rows[:limit]]

    async def list_stale(self, now: datetime, limit: int) -> list[CacheEntry]:
        rows = [
            e
            for e in self._entries.values()
            if e.status is CacheStatus.STALE
            or (e.status is CacheStatus.FRESH and e.is_expired(now))
        ]
        rows.sort(key=lambda e: e.updated_at)
        return [self._copy(e) for e in rows[:limit]]

    async def count_by_status(self, max_retries: int) -> dict[str, int]:
        counts = {status.value: 0 for status in CacheStatus}
        exhausted = 0
        for entry in self._entries.values():
            counts[entry.status.value] += 1
            if entry.status is CacheStatus.ERROR and entry.retry_count >= max_retries:
                exhausted += 1
        counts["exhausted"] = exhausted
        counts["total"] = len(self._entries)
        return counts


# =============================================================================
# Service
# =============================================================================


class RiskCacheService:
    def __init__(
        self,
        storage: CacheStorage,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        policies: dict[CacheKind, CachePolicy] | None = None,
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.scheduler = scheduler
        self._policies = policies or {}

    def policy(self, kind: CacheKind) -> CachePolicy:
        if kind not in self._policies:
            self._policies[kind] = CachePolicy.for_kind(kind)
        return self._policies[kind]

    def backoff_delay(self, kind: CacheKind, retry_count: int) -> timedelta:
        """base * 2^(retry_count - 1), capped at retry_max."""
        policy = self.policy(kind)
        if retry_count <= 0:
            return timedelta(0)
        delay = policy.retry_base * (2 ** (retry_count - 1))
        return min(delay, policy.retry_max)

    def is_exhausted(self, entry: CacheEntry) -> bool:
        return (
            entry.status is CacheStatus.ERROR
            and entry.retry_count >= self.policy(entry.kind).max_retries
        )

    def is_due_for_retry(self, entry: CacheEntry, now: datetime | None = None) -> bool:
        if entry.status is not CacheStatus.ERROR or self.is_exhausted(entry):
            return False
        now = now or self.clock.now()
        return entry.updated_at + self.backoff_delay(entry.kind, entry.retry_count) <= now

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, spec: CacheKey) -> CacheEntry | None:
        """Read an entry, marking it stale first if it has expired."""
        entry = await self.storage.get(spec.key)
        if entry is None:
            return None
        now = self.clock.now()
        if (
            entry.status in (CacheStatus.FRESH, CacheStatus.ERROR)
            and entry.is_expired(now)
            and not self.is_exhausted(entry)
        ):
            logger.debug(f"Cache entry expired, marking stale: {spec.key}")
            entry = await self.storage.mark_stale(
                spec.key, now, include_exhausted=False, max_retries=self.policy(spec.kind).max_retries
            ) or entry
        return entry

    async def read(self, spec: CacheKey, actions: dict[str, str] | None = None) -> CacheEntry:
        """
        Read path for the API: never computes.

        Missing entries get a stale placeholder and a scheduled refresh, then
        CacheMiss is raised. Stale entries are returned and refreshed in the
        background.

        Raises:
            CacheMiss: Nothing computed yet for this key
        """
        entry = await self.get(spec)
        if entry is None:
            await self.storage.ensure(spec, self.clock.now())
            await self._schedule(spec)
            raise CacheMiss(spec.key, actions)
        if entry.status is CacheStatus.STALE:
            await self._schedule(spec)
        if entry.payload is None and entry.status is not CacheStatus.ERROR:
            raise CacheMiss(spec.key, actions)
        return entry

    def raise_for_error(self, entry: CacheEntry) -> None:
        """
        Surface an error entry that has nothing to serve.

        Once retries stopped the entry is RetryExhausted, carrying the code of
        the last recorded failure. Before that, domain failures recorded by the
        computation (no data, insufficient history, providers down) are
        re-raised as themselves and anything else becomes CalculationFailed.
        """
        if entry.status is not CacheStatus.ERROR or entry.payload is not None:
            return
        if self.is_exhausted(entry):
            raise RetryExhausted(
                entry.key,
                entry.retry_count,
                entry.last_error,
                last_error_code=(entry.error_details or {}).get("error"),
            )
        if entry.error_details:
            raise AppException.from_dict(entry.error_details)
        raise CalculationFailed(
            entry.key,
            entry.retry_count,
            entry.updated_at + self.backoff_delay(entry.kind, entry.retry_count),
        )

    async def _schedule(self, spec: CacheKey) -> None:
        if self.scheduler is None:
            return
        try:
            await self.scheduler(spec)
        except Exception as e:
            # The stale placeholder is still picked up by the scanner job
            logger.warning(f"Failed to schedule refresh for {spec.key}: {e}")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def refresh(self, spec: CacheKey, compute: Compute) -> RefreshOutcome:
        """
        Background recomputation under the single-flight claim.

        Fresh entries inside their TTL are left alone, so repeated refresh
        requests for one stale window compute once. Error entries are only
        retried once their backoff window elapsed and while below the retry
        ceiling.
        """
        policy = self.policy(spec.kind)
        now = self.clock.now()
        current = await self.storage.get(spec.key)

        if current is not None and current.status is CacheStatus.FRESH and not current.is_expired(now):
            return RefreshOutcome(RefreshResult.NOT_DUE, current)

        if current is not None and current.status is CacheStatus.ERROR:
            if self.is_exhausted(current):
                logger.warning(
                    f"Retry ceiling reached for {spec.key}",
                    extra={"retry_count": current.retry_count, "last_error": current.last_error},
                )
                return RefreshOutcome(RefreshResult.EXHAUSTED, current)
            if not self.is_due_for_retry(current, now):
                return RefreshOutcome(RefreshResult.NOT_DUE, current)

        claimed = await self.storage.try_claim(spec, current, now, now - policy.lock_timeout)
        if claimed is None:
            logger.debug(f"Refresh already in progress: {spec.key}")
            return RefreshOutcome(RefreshResult.IN_PROGRESS, await self.storage.get(spec.key))
        return await self._run(spec, claimed, compute)

    async def force_refresh(self, spec: CacheKey, compute: Compute) -> CacheEntry:
        """
        Synchronous recompute for an explicit caller request.

        Returns the new entry, or the result of the computation that was
        already running. Errors raised by ``compute`` are recorded on the
        entry and re-raised.
        """
        policy = self.policy(spec.kind)
        deadline = self.clock.now() + policy.force_wait

        current = await self.storage.get(spec.key)
        now = self.clock.now()
        claimed = await self.storage.try_claim(spec, current, now, now - policy.lock_timeout)
        if claimed is not None:
            outcome = await self._run(spec, claimed, compute)
            if outcome.error is not None:
                raise outcome.error
            return outcome.entry

        logger.info(f"Force refresh waiting on running calculation: {spec.key}")
        while True:
            entry = await self.storage.get(spec.key)
            if entry is not None and entry.status is not CacheStatus.CALCULATING:
                return entry
            if self.clock.now() >= deadline:
                logger.warning(f"Force refresh gave up waiting: {spec.key}")
                return entry
            await self.clock.sleep(policy.poll_interval)

    async def _run(self, spec: CacheKey, claimed: CacheEntry, compute: Compute) -> RefreshOutcome:
        policy = self.policy(spec.kind)
        claimed_at = claimed.calculating_since
        try:
            payload = await compute()
        except Exception as e:
            now = self.clock.now()
            entry = await self.storage.fail(
                spec.key,
                claimed_at,
                f"{type(e).__name__}: {e}",
                now,
                now + policy.ttl,
                policy.max_retries,
                details=e.to_dict() if isinstance(e, AppException) else None,
            )
            logger.warning(
                f"Cache computation failed for {spec.key}: {e}",
                extra={"retry_count": entry.retry_count if entry else None},
            )
            return RefreshOutcome(RefreshResult.FAILED, entry or claimed, e)

        now = self.clock.now()
        entry = await self.storage.complete(spec.key, claimed_at, payload, now, now + policy.ttl)
        if entry is None:
            logger.warning(f"Claim lost before completion, result discarded: {spec.key}")
            return RefreshOutcome(RefreshResult.IN_PROGRESS, await self.storage.get(spec.key))
        logger.info(f"Cache entry refreshed: {spec.key}")
        return RefreshOutcome(RefreshResult.COMPUTED, entry)

    async def invalidate(self, spec: CacheKey) -> CacheEntry | None:
        """Mark stale, never delete."""
        return await self.storage.mark_stale(
            spec.key, self.clock.now(), include_exhausted=True,
            max_retries=self.policy(spec.kind).max_retries,
        )

    async def invalidate_portfolio(self, portfolio_id: str) -> int:
        count = 0
        for entry in await self.storage.list_for_portfolio(portfolio_id):
            if entry.status in (CacheStatus.FRESH, CacheStatus.ERROR):
                await self.storage.mark_stale(
                    entry.key, self.clock.now(), include_exhausted=True,
                    max_retries=self.policy(entry.kind).max_retries,
                )
                count += 1
        return count

    async def reset(self, key: str) -> bool:
        """Admin-only removal of an entry."""
        deleted = await self.storage.delete(key)
        if deleted:
            logger.info(f"Cache entry reset by admin: {key}")
        return deleted

    # -------------------------------------------------------------------------
    # Scanner support
    # -------------------------------------------------------------------------

    async def due_for_retry(self, limit: int = 100) -> list[CacheEntry]:
        """Error entries below the ceiling whose backoff window has elapsed."""
        now = self.clock.now()
        base = min((self.policy(k).retry_base for k in CacheKind), default=timedelta(0))
        max_retries = max(self.policy(k).max_retries for k in CacheKind)
        candidates = await self.storage.list_errors(max_retries, now - base, limit * 2)
        return [e for e in candidates if self.is_due_for_retry(e, now)][:limit]

    async def stale_entries(self, limit: int = 100) -> list[CacheEntry]:
        return await self.storage.list_stale(self.clock.now(), limit)

    async def portfolio_status(self, portfolio_id: str) -> list[dict[str, Any]]:
        now = self.clock.now()
        return [
            {
                "cache_key": e.key,
                "kind": e.kind.value,
                "status": e.status.value,
                "age_seconds": e.age_seconds(now),
                "last_calculated": e.calculated_at,
                "last_error": e.last_error,
                "retry_count": e.retry_count,
                "retries_exhausted": self.is_exhausted(e),
            }
            for e in await self.storage.list_for_portfolio(portfolio_id)
        ]

    async def health(self) -> dict[str, int]:
        return await self.storage.count_by_status(settings.cache_max_retries)
