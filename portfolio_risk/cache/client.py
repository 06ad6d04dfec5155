"""Valkey connection handling shared by the call budget and job locks."""

from __future__ import annotations

import asyncio

from redis.asyncio import ConnectionPool, Redis

from portfolio_risk.core.config import settings
from portfolio_risk.core.logging import get_logger


logger = get_logger("cache.client")

# Pools are bound to the event loop that created them (API loop, worker loop, beat loop)
_pools: dict[int, ConnectionPool] = {}
_clients: dict[int, Redis] = {}


def _loop_key() -> int:
    try:
        return id(asyncio.get_running_loop())
    except RuntimeError:
        return 0


def _build_pool() -> ConnectionPool:
    return ConnectionPool.from_url(
        settings.valkey_url,
        max_connections=settings.valkey_max_connections,
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
        retry_on_timeout=True,
        health_check_interval=30,
    )


async def get_valkey_client() -> Redis:
    """Client for the running event loop, created on first use."""
    loop_key = _loop_key()
    client = _clients.get(loop_key)
    if client is None:
        pool = _pools.setdefault(loop_key, _build_pool())
        client = _clients[loop_key] = Redis(connection_pool=pool)
        logger.info("Valkey connection pool initialized", extra={"loop_id": loop_key})
    return client


async def close_valkey_client() -> None:
    loop_key = _loop_key()
    client = _clients.pop(loop_key, None)
    if client is not None:
        await client.aclose()
    pool = _pools.pop(loop_key, None)
    if pool is not None:
        await pool.disconnect()
    logger.info("Valkey connection pool closed", extra={"loop_id": loop_key})


async def valkey_healthcheck() -> bool:
    try:
        client = await get_valkey_client()
        pong = await asyncio.wait_for(client.ping(), timeout=5.0)
        return pong is True or pong == "PONG"
    except Exception as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False
