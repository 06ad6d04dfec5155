"""PostgreSQL storage for risk cache entries - SQLAlchemy ORM version.

The calculating claim is a conditional UPDATE (or INSERT ... ON CONFLICT DO
NOTHING for a key that does not exist yet). PostgreSQL takes a row lock for
the UPDATE and re-checks the WHERE clause after any concurrent writer
commits, so two workers can never both move one key into ``calculating``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, false, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert

from portfolio_risk.database.connection import get_session
from portfolio_risk.database.orm import RiskCacheEntry
from portfolio_risk.domain.cache import CacheEntry, CacheKey, CacheKind, CacheStatus


ERROR_MESSAGE_LIMIT = 1000


def _row_to_entry(row: RiskCacheEntry) -> CacheEntry:
    """Convert ORM model to domain entry."""
    return CacheEntry(
        key=row.cache_key,
        kind=CacheKind(row.kind),
        subject=row.subject,
        portfolio_id=row.portfolio_id,
        params=dict(row.params or {}),
        payload=row.payload,
        status=CacheStatus(row.calculation_status),
        retry_count=row.retry_count,
        last_error=row.last_error,
        error_details=row.error_details,
        calculated_at=row.calculated_at,
        calculating_since=row.calculating_since,
        expires_at=row.expires_at,
        updated_at=row.updated_at,
    )


def _new_row_values(spec: CacheKey, status: CacheStatus, now: datetime) -> dict[str, Any]:
    return {
        "cache_key": spec.key,
        "kind": spec.kind.value,
        "subject": spec.subject,
        "portfolio_id": spec.portfolio_id,
        "params": spec.params_dict,
        "calculation_status": status.value,
        "retry_count": 0,
        "created_at": now,
        "updated_at": now,
        "calculating_since": now if status is CacheStatus.CALCULATING else None,
    }


class SqlCacheStorage:
    """Cache storage on the ``portfolio_risk_cache`` table."""

    async def get(self, key: str) -> CacheEntry | None:
        async with get_session() as session:
            row = await session.get(RiskCacheEntry, key)
            return _row_to_entry(row) if row else None

    async def ensure(self, spec: CacheKey, now: datetime) -> CacheEntry:
        async with get_session() as session:
            stmt = (
                insert(RiskCacheEntry)
                .values(**_new_row_values(spec, CacheStatus.STALE, now))
                .on_conflict_do_nothing(index_elements=["cache_key"])
            )
            await session.execute(stmt)
            await session.commit()
            row = await session.get(RiskCacheEntry, spec.key, populate_existing=True)
            return _row_to_entry(row)

    async def try_claim(
        self,
        spec: CacheKey,
        expected: CacheEntry | None,
        now: datetime,
        abandoned_before: datetime,
    ) -> CacheEntry | None:
        async with get_session() as session:
            if expected is None:
                stmt = (
                    insert(RiskCacheEntry)
                    .values(**_new_row_values(spec, CacheStatus.CALCULATING, now))
                    .on_conflict_do_nothing(index_elements=["cache_key"])
                    .returning(RiskCacheEntry)
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is not None:
                    await session.commit()
                    return _row_to_entry(row)
                # Someone created it meanwhile; an abandoned claim may still be taken

            unchanged = (
                and_(
                    RiskCacheEntry.calculation_status != CacheStatus.CALCULATING.value,
                    RiskCacheEntry.updated_at == expected.updated_at,
                )
                if expected is not None
                else false()
            )
            abandoned = and_(
                RiskCacheEntry.calculation_status == CacheStatus.CALCULATING.value,
                RiskCacheEntry.calculating_since < abandoned_before,
            )
            stmt = (
                update(RiskCacheEntry)
                .where(RiskCacheEntry.cache_key == spec.key, or_(unchanged, abandoned))
                .values(
                    calculation_status=CacheStatus.CALCULATING.value,
                    calculating_since=now,
                    updated_at=now,
                )
                .returning(RiskCacheEntry)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return _row_to_entry(row) if row else None

    async def complete(
        self, key: str, claimed_at: datetime, payload: dict[str, Any], now: datetime, expires_at: datetime
    ) -> CacheEntry | None:
        async with get_session() as session:
            stmt = (
                update(RiskCacheEntry)
                .where(
                    RiskCacheEntry.cache_key == key,
                    RiskCacheEntry.calculating_since == claimed_at,
                )
                .values(
                    calculation_status=CacheStatus.FRESH.value,
                    payload=payload,
                    retry_count=0,
                    last_error=None,
                    error_details=None,
                    calculated_at=now,
                    calculating_since=None,
                    updated_at=now,
                    expires_at=expires_at,
                )
                .returning(RiskCacheEntry)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return _row_to_entry(row) if row else None

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
        async with get_session() as session:
            stmt = (
                update(RiskCacheEntry)
                .where(
                    RiskCacheEntry.cache_key == key,
                    RiskCacheEntry.calculating_since == claimed_at,
                )
                .values(
                    calculation_status=CacheStatus.ERROR.value,
                    retry_count=func.least(RiskCacheEntry.retry_count + 1, max_retries),
                    last_error=error[:ERROR_MESSAGE_LIMIT],
                    error_details=details,
                    calculating_since=None,
                    updated_at=now,
                    expires_at=expires_at,
                )
                .returning(RiskCacheEntry)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return _row_to_entry(row) if row else None

    async def mark_stale(
        self, key: str, now: datetime, include_exhausted: bool, max_retries: int
    ) -> CacheEntry | None:
        conditions = [
            RiskCacheEntry.cache_key == key,
            RiskCacheEntry.calculation_status.in_([CacheStatus.FRESH.value, CacheStatus.ERROR.value]),
        ]
        if not include_exhausted:
            conditions.append(
                or_(
                    RiskCacheEntry.calculation_status != CacheStatus.ERROR.value,
                    RiskCacheEntry.retry_count < max_retries,
                )
            )
        async with get_session() as session:
            stmt = (
                update(RiskCacheEntry)
                .where(*conditions)
                .values(calculation_status=CacheStatus.STALE.value, updated_at=now)
                .returning(RiskCacheEntry)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            if row is None:
                row = await session.get(RiskCacheEntry, key)
            return _row_to_entry(row) if row else None

    async def delete(self, key: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                delete(RiskCacheEntry).where(RiskCacheEntry.cache_key == key)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_for_portfolio(self, portfolio_id: str) -> list[CacheEntry]:
        async with get_session() as session:
            result = await session.execute(
                select(RiskCacheEntry)
                .where(RiskCacheEntry.portfolio_id == portfolio_id)
                .order_by(RiskCacheEntry.kind)
            )
            return [_row_to_entry(r) for r in result.scalars().all()]

    async def list_errors(self, max_retries: int, updated_before: datetime, limit: int) -> list[CacheEntry]:
        # Served by idx_portfolio_risk_cache_retry (partial on status = 'error')
        async with get_session() as session:
            result = await session.execute(
                select(RiskCacheEntry)
                .where(
                    RiskCacheEntry.calculation_status == CacheStatus.ERROR.value,
                    RiskCacheEntry.retry_count < max_retries,
                    RiskCacheEntry.updated_at <= updated_before,
                )
                .order_by(RiskCacheEntry.retry_count, RiskCacheEntry.updated_at)
                .limit(limit)
            )
            return [_row_to_entry(r) for r in result.scalars().all()]

    async def list_stale(self, now: datetime, limit: int) -> list[CacheEntry]:
        async with get_session() as session:
            result = await session.execute(
                select(RiskCacheEntry)
                .where(
                    or_(
                        RiskCacheEntry.calculation_status == CacheStatus.STALE.value,
                        and_(
                            RiskCacheEntry.calculation_status == CacheStatus.FRESH.value,
                            RiskCacheEntry.expires_at <= now,
                        ),
                    )
                )
                .order_by(RiskCacheEntry.updated_at)
                .limit(limit)
            )
            return [_row_to_entry(r) for r in result.scalars().all()]

    async def count_by_status(self, max_retries: int) -> dict[str, int]:
        async with get_session() as session:
            result = await session.execute(
                select(RiskCacheEntry.calculation_status, func.count())
                .group_by(RiskCacheEntry.calculation_status)
            )
            counts = {status.value: 0 for status in CacheStatus}
            for status, count in result.all():
                counts[status] = count
            exhausted = await session.scalar(
                select(func.count()).select_from(RiskCacheEntry).where(
                    RiskCacheEntry.calculation_status == CacheStatus.ERROR.value,
                    RiskCacheEntry.retry_count >= max_retries,
                )
            )
        counts["exhausted"] = int(exhausted or 0)
        counts["total"] = sum(counts[s.value] for s in CacheStatus)
        return counts
