"""PostgreSQL connection management with SQLAlchemy async sessions (asyncpg driver).

Usage:
    from portfolio_risk.database.connection import get_session
    from portfolio_risk.database.orm import PricePoint

    async with get_session() as session:
        rows = (await session.execute(select(PricePoint))).scalars().all()
        await session.commit()
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger


logger = get_logger("database")


def get_async_database_url(url: str) -> str:
    """Convert ``postgresql://`` URLs to the ``postgresql+asyncpg://`` dialect."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# Global SQLAlchemy engine
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_sqlalchemy_engine() -> AsyncEngine:
    """Initialize SQLAlchemy async engine."""
    global _engine, _session_factory

    if _engine is not None:
        return _engine

    try:
        _engine = create_async_engine(
            get_async_database_url(settings.database_url),
            pool_size=settings.db_pool_min_size,
            max_overflow=settings.db_pool_max_size - settings.db_pool_min_size,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=False,
        )
        _session_factory = async_sessionmaker(
            bind=_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("SQLAlchemy async engine initialized")
        return _engine
    except Exception as e:
        logger.error(f"SQLAlchemy engine init failed: {e}")
        raise


async def get_engine() -> AsyncEngine:
    """Get SQLAlchemy async engine, initializing if necessary."""
    if _engine is None:
        await init_sqlalchemy_engine()
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Get an async SQLAlchemy session that rolls back on error."""
    if _session_factory is None:
        await init_sqlalchemy_engine()

    async with _session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def database_healthcheck() -> bool:
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database healthcheck failed: {e}")
        return False


async def close_database() -> None:
    """Dispose the engine and its pool."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("SQLAlchemy engine closed")
