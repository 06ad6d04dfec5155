"""Job-level mutual exclusion on Valkey.

Scheduled jobs take a non-blocking lock so overlapping beat ticks (or a
manual trigger racing the schedule) skip instead of running twice. Cache
entries do not use this lock; their single flight lives in the
``portfolio_risk_cache`` row itself.
"""

from __future__ import annotations

import asyncio
import time
import uuid

from redis.asyncio import Redis

from portfolio_risk.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache.lock")

LOCK_PREFIX = "portfolio_risk:lock"

# Delete / expire only while the stored token is still ours
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


class LockNotAcquired(RuntimeError):
    pass


class DistributedLock:
    """SET NX EX lock identified by a random token."""

    def __init__(
        self,
        name: str,
        timeout: int = 30,
        blocking: bool = True,
        blocking_timeout: float | None = None,
        client: Redis | None = None,
    ):
        self.name = name
        self.key = f"{LOCK_PREFIX}:{name}"
        self.timeout = timeout
        self.blocking = blocking
        self.blocking_timeout = blocking_timeout
        self.token = uuid.uuid4().hex
        self._client = client
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def _redis(self) -> Redis:
        if self._client is None:
            self._client = await get_valkey_client()
        return self._client

    async def acquire(self) -> bool:
        client = await self._redis()
        started = time.monotonic()
        while True:
            if await client.set(self.key, self.token, ex=self.timeout, nx=True):
                self._held = True
                logger.debug(f"Lock acquired: {self.name}")
                return True
            if not self.blocking:
                return False
            if (
                self.blocking_timeout is not None
                and time.monotonic() - started >= self.blocking_timeout
            ):
                logger.debug(f"Lock wait timed out: {self.name}")
                return False
            await asyncio.sleep(0.1)

    async def release(self) -> bool:
        if not self._held:
            return False
        self._held = False
        client = await self._redis()
        try:
            released = await client.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        except Exception as e:
            logger.error(f"Lock release error for {self.name}: {e}")
            return False
        if not released:
            logger.warning(f"Lock expired before release: {self.name}")
        return bool(released)

    async def extend(self, seconds: int | None = None) -> bool:
        if not self._held:
            return False
        client = await self._redis()
        return bool(
            await client.eval(_EXTEND_SCRIPT, 1, self.key, self.token, seconds or self.timeout)
        )

    async def __aenter__(self) -> DistributedLock:
        if not await self.acquire():
            raise LockNotAcquired(self.name)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()


async def is_locked(name: str) -> bool:
    client = await get_valkey_client()
    return await client.exists(f"{LOCK_PREFIX}:{name}") > 0
