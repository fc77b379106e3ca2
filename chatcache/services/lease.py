"""
Short-lived "operation in progress" markers kept in Redis.

A lease is `SET lease:{name} <token> NX EX <ttl>`; only the holder of the
token may release it, and an abandoned lease disappears with its TTL.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from redis.asyncio import Redis

from ..exceptions import OperationInProgress
from ..logging_config import logger
from ..settings import settings


def lease_key(name: str) -> str:
    return f"lease:{name}"


@dataclass(frozen=True)
class Lease:
    name: str
    token: str


async def acquire_lease(
    redis: Redis, name: str, *, ttl_seconds: int | None = None
) -> Lease | None:
    """
    Try to take the lease; returns None when someone else holds it.
    """
    token = uuid.uuid4().hex
    ttl = int(ttl_seconds or settings.lease_ttl_seconds)
    acquired = await redis.set(lease_key(name), token, nx=True, ex=ttl)
    if not acquired:
        return None
    return Lease(name=name, token=token)


async def release_lease(redis: Redis, lease: Lease) -> bool:
    """
    Drop the lease if it is still ours. Returns True when it was removed.
    """
    key = lease_key(lease.name)
    current = await redis.get(key)
    if isinstance(current, bytes):
        current = current.decode("utf-8")
    if current != lease.token:
        logger.debug("Lease %s expired or was taken over before release", lease.name)
        return False
    await redis.delete(key)
    return True


@asynccontextmanager
async def hold_lease(
    redis: Redis, name: str, *, ttl_seconds: int | None = None
) -> AsyncIterator[Lease]:
    """
    Run a block under the lease; raises OperationInProgress if it is taken.
    """
    lease = await acquire_lease(redis, name, ttl_seconds=ttl_seconds)
    if lease is None:
        raise OperationInProgress(name)
    try:
        yield lease
    finally:
        await release_lease(redis, lease)


__all__ = [
    "Lease",
    "acquire_lease",
    "hold_lease",
    "lease_key",
    "release_lease",
]
