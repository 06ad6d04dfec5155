"""Database module: SQLAlchemy async engine, sessions and ORM models.

Use ``get_session()`` with the models in ``portfolio_risk.database.orm``.
"""

from .connection import close_database, database_healthcheck, get_session, init_sqlalchemy_engine


__all__ = ["close_database", "database_healthcheck", "get_session", "init_sqlalchemy_engine"]
