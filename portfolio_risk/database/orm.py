"""SQLAlchemy ORM models for the risk analytics store.

Usage:
    from portfolio_risk.database.orm import RiskCacheEntry
    from portfolio_risk.database.connection import get_session

    async with get_session() as session:
        entry = await session.get(RiskCacheEntry, "downside:42:90:SPY")
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Naming convention for constraints and indexes (deterministic names for Alembic)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# MARKET DATA
# =============================================================================


class Instrument(Base):
    """Instrument classification, resolved once at ingestion."""
    __tablename__ = "instruments"

    ticker: Mapped[str] = mapped_column(String(20), primary_key=True)
    asset_class: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    name: Mapped[str | None] = mapped_column(String(255))
    resolved_symbol: Mapped[str | None] = mapped_column(String(30))
    source: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "asset_class IN ('equity', 'etf', 'index', 'mutual_fund', 'money_market', 'crypto', 'unknown')",
            name="asset_class",
        ),
    )


class PricePoint(Base):
    """Daily close. Append-only, unique per (ticker, date)."""
    __tablename__ = "price_points"

    id: Mapped[int] = mapped_column(primary_key=True)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    close_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    source: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("ticker", "date", name="uq_price_points_ticker_date"),
        Index("idx_price_points_ticker_date", "ticker", "date", postgresql_ops={"date": "DESC"}),
    )


class PortfolioPosition(Base):
    """Holdings snapshot written by the portfolio CRUD service; read-only here."""
    __tablename__ = "portfolio_positions"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    market_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 2))
    asset_category: Mapped[str | None] = mapped_column(String(100))

    __table_args__ = (
        Index("idx_portfolio_positions_portfolio", "portfolio_id"),
    )


# =============================================================================
# RISK CACHE
# =============================================================================


class RiskCacheEntry(Base):
    """Computed risk payload with calculation status and retry bookkeeping.

    Partial indexes only cover the minority of non-fresh rows that the
    background scanners look for.
    """
    __tablename__ = "portfolio_risk_cache"

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    subject: Mapped[str] = mapped_column(String(64), nullable=False)
    portfolio_id: Mapped[str | None] = mapped_column(String(64))
    params: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    payload: Mapped[dict | None] = mapped_column(JSONB)
    calculation_status: Mapped[str] = mapped_column(String(20), nullable=False, default="stale")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    error_details: Mapped[dict | None] = mapped_column(JSONB)
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    calculating_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "calculation_status IN ('fresh', 'stale', 'calculating', 'error')",
            name="calculation_status",
        ),
        CheckConstraint("retry_count >= 0", name="retry_count"),
        Index(
            "idx_portfolio_risk_cache_needs_work",
            "portfolio_id",
            "calculation_status",
            postgresql_where=text("calculation_status IN ('stale', 'error')"),
        ),
        Index(
            "idx_portfolio_risk_cache_retry",
            "retry_count",
            "updated_at",
            postgresql_where=text("calculation_status = 'error'"),
        ),
        Index("idx_portfolio_risk_cache_kind_subject", "kind", "subject"),
    )


# =============================================================================
# ALERTS
# =============================================================================


class AlertRule(Base):
    """User-defined threshold rule over a risk metric."""
    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str | None] = mapped_column(String(64))
    ticker: Mapped[str | None] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    metric: Mapped[str] = mapped_column(String(30), nullable=False)
    comparator: Mapped[str] = mapped_column(String(5), nullable=False)
    threshold: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    cooldown_hours: Mapped[int] = mapped_column(Integer, default=24)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("comparator IN ('gt', 'lt', 'gte', 'lte', 'eq')", name="comparator"),
        CheckConstraint("severity IN ('low', 'medium', 'high')", name="severity"),
        Index("idx_alert_rules_enabled", "enabled", postgresql_where=text("enabled = TRUE")),
    )


class AlertEvent(Base):
    """A live trigger, handed to the notification transport."""
    __tablename__ = "alert_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False)
    actual_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 6))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_alert_events_rule", "rule_id", "triggered_at"),
    )


# =============================================================================
# SCHEDULED JOBS
# =============================================================================


class CronJob(Base):
    """Scheduled job configuration and aggregate status."""
    __tablename__ = "cronjobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    cron: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_status: Mapped[str | None] = mapped_column(String(20))
    last_duration_ms: Mapped[int | None] = mapped_column(Integer)
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_cronjobs_active", "is_active", postgresql_where=text("is_active = TRUE")),
    )


class JobRun(Base):
    """One execution of a scheduled or manually triggered job."""
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="schedule")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'success', 'failed', 'cancelled')",
            name="status",
        ),
        Index("idx_job_runs_job_started", "job_name", "started_at", postgresql_ops={"started_at": "DESC"}),
    )
