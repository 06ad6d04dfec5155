"""Valkey (Redis-compatible) client and distributed locks."""

from .client import (
    close_valkey_client,
    get_valkey_client,
    valkey_healthcheck,
)
from .distributed_lock import DistributedLock, LockNotAcquired


__all__ = [
    "DistributedLock",
    "LockNotAcquired",
    "close_valkey_client",
    "get_valkey_client",
    "valkey_healthcheck",
]
