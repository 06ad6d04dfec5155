"""Baseline risk analytics schema.

Revision ID: 001_baseline
Revises:
Create Date: 2026-10-01

Creates price storage, instrument classification, the risk cache with its
partial scanner indexes, alert rules and scheduled job bookkeeping.
``portfolio_positions`` is owned by the portfolio CRUD service and is only
created here so a fresh database is usable on its own.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==========================================================================
    # MARKET DATA
    # ==========================================================================

    op.create_table(
        "instruments",
        sa.Column("ticker", sa.String(20), primary_key=True),
        sa.Column("asset_class", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("name", sa.String(255)),
        sa.Column("resolved_symbol", sa.String(30)),
        sa.Column("source", sa.String(20)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "asset_class IN ('equity', 'etf', 'index', 'mutual_fund', 'money_market', 'crypto', 'unknown')",
            name="ck_instruments_asset_class",
        ),
    )

    op.create_table(
        "price_points",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticker", sa.String(20), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("close_price", sa.Numeric(18, 6), nullable=False),
        sa.Column("source", sa.String(20)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ticker", "date", name="uq_price_points_ticker_date"),
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_price_points_ticker_date "
        "ON price_points (ticker, date DESC)"
    )

    op.create_table(
        "portfolio_positions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("portfolio_id", sa.String(64), nullable=False),
        sa.Column("ticker", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Numeric(20, 6), nullable=False),
        sa.Column("market_value", sa.Numeric(20, 2)),
        sa.Column("asset_category", sa.String(100)),
    )
    op.create_index("idx_portfolio_positions_portfolio", "portfolio_positions", ["portfolio_id"])

    # ==========================================================================
    # RISK CACHE
    # ==========================================================================

    op.create_table(
        "portfolio_risk_cache",
        sa.Column("cache_key", sa.String(255), primary_key=True),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("subject", sa.String(64), nullable=False),
        sa.Column("portfolio_id", sa.String(64)),
        sa.Column("params", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("payload", postgresql.JSONB()),
        sa.Column("calculation_status", sa.String(20), nullable=False, server_default="stale"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("error_details", postgresql.JSONB()),
        sa.Column("calculated_at", sa.DateTime(timezone=True)),
        sa.Column("calculating_since", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "calculation_status IN ('fresh', 'stale', 'calculating', 'error')",
            name="ck_portfolio_risk_cache_calculation_status",
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_portfolio_risk_cache_retry_count"),
    )
    # Scanners only look at the minority of rows that need work
    op.create_index(
        "idx_portfolio_risk_cache_needs_work",
        "portfolio_risk_cache",
        ["portfolio_id", "calculation_status"],
        postgresql_where=sa.text("calculation_status IN ('stale', 'error')"),
    )
    op.create_index(
        "idx_portfolio_risk_cache_retry",
        "portfolio_risk_cache",
        ["retry_count", "updated_at"],
        postgresql_where=sa.text("calculation_status = 'error'"),
    )
    op.create_index(
        "idx_portfolio_risk_cache_kind_subject", "portfolio_risk_cache", ["kind", "subject"]
    )

    # ==========================================================================
    # ALERTS
    # ==========================================================================

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("portfolio_id", sa.String(64)),
        sa.Column("ticker", sa.String(20)),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("metric", sa.String(30), nullable=False),
        sa.Column("comparator", sa.String(5), nullable=False),
        sa.Column("threshold", sa.Numeric(20, 6), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("cooldown_hours", sa.Integer(), server_default="24"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "comparator IN ('gt', 'lt', 'gte', 'lte', 'eq')", name="ck_alert_rules_comparator"
        ),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high')", name="ck_alert_rules_severity"
        ),
    )
    op.create_index(
        "idx_alert_rules_enabled",
        "alert_rules",
        ["enabled"],
        postgresql_where=sa.text("enabled = TRUE"),
    )

    op.create_table(
        "alert_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("alert_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actual_value", sa.Numeric(20, 6)),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_alert_events_rule", "alert_events", ["rule_id", "triggered_at"])

    # ==========================================================================
    # SCHEDULED JOBS
    # ==========================================================================

    op.create_table(
        "cronjobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("cron", sa.String(50), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("max_duration_minutes", sa.Integer(), server_default="30"),
        sa.Column("last_run", sa.DateTime(timezone=True)),
        sa.Column("last_status", sa.String(20)),
        sa.Column("last_duration_ms", sa.Integer()),
        sa.Column("run_count", sa.Integer(), server_default="0"),
        sa.Column("error_count", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "idx_cronjobs_active",
        "cronjobs",
        ["is_active"],
        postgresql_where=sa.text("is_active = TRUE"),
    )

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("trigger", sa.String(20), nullable=False, server_default="schedule"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("items_processed", sa.Integer(), server_default="0"),
        sa.Column("items_failed", sa.Integer(), server_default="0"),
        sa.Column("message", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed', 'cancelled')",
            name="ck_job_runs_status",
        ),
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_runs_job_started "
        "ON job_runs (job_name, started_at DESC)"
    )


def downgrade() -> None:
    """Drop all tables (WARNING: destructive operation)."""
    op.drop_table("job_runs")
    op.drop_table("cronjobs")
    op.drop_table("alert_events")
    op.drop_table("alert_rules")
    op.drop_table("portfolio_risk_cache")
    op.drop_table("portfolio_positions")
    op.drop_table("price_points")
    op.drop_table("instruments")
