"""Data access layer repositories.

Each repository module provides async functions over the SQLAlchemy ORM
models in ``portfolio_risk.database.orm`` using ``get_session()``.

- prices_orm: price points, instrument classes, portfolio positions (read-only)
- risk_cache_orm: risk cache entries with atomic claim transitions
- alerts_orm: alert rules and trigger events
- jobs_orm: cron job configuration and run history
"""
