"""
Redis helper utilities shared by the cache, session and rate-limit layers.

`chatcache.deps.get_redis` exposes the client as a FastAPI dependency;
everything else takes the client as its first argument so tests can pass
an in-memory stand-in.

All values are stored as JSON text. Reads normalise whatever the driver
hands back (text, bytes or an already-decoded object) and treat anything
unparseable as a miss: a corrupt cache entry must degrade to "recompute
from the durable store", never to an error.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, TypeVar
from weakref import WeakKeyDictionary

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

from .logging_config import logger
from .settings import settings

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_redis_clients_by_loop: WeakKeyDictionary[asyncio.AbstractEventLoop, Redis] = (
    WeakKeyDictionary()
)


def _ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:  # pragma: no cover - easier debugging for sync misuse
        raise RuntimeError(
            "get_redis_client() must be called inside a running event loop"
        ) from exc


def get_redis_client() -> Redis:
    """
    Return a Redis client bound to the current event loop.
    """
    loop = _ensure_event_loop()
    client = _redis_clients_by_loop.get(loop)
    if client is None:
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        _redis_clients_by_loop[loop] = client
    return client


def decode_json(raw: Any) -> Any | None:
    """
    Normalise a raw cache value into a decoded JSON value, or None.
    """
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def encode_json(value: Any) -> str:
    return json.dumps(jsonable_encoder(value), ensure_ascii=False)


async def redis_get_json(redis: Redis, key: str) -> Any | None:
    """
    Load a JSON value. Returns None on missing key or malformed payload.
    """
    raw = await redis.get(key)
    value = decode_json(raw)
    if value is None and raw is not None:
        logger.debug("Discarding unparseable cache value for %s", key)
    return value


async def redis_get_model(redis: Redis, key: str, model: type[M]) -> M | None:
    """
    Load and validate a cached pydantic model; a wrong shape is a miss.
    """
    data = await redis_get_json(redis, key)
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError:
        logger.debug("Cached value for %s does not match %s", key, model.__name__)
        return None


async def redis_set_json(
    redis: Redis, key: str, value: Any, *, ttl_seconds: int | None = None
) -> None:
    """
    Store a JSON-serialisable value (pydantic models included) with optional TTL.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    data = encode_json(value)
    if ttl_seconds is not None:
        await redis.set(key, data, ex=ttl_seconds)
    else:
        await redis.set(key, data)


async def redis_delete(redis: Redis, key: str) -> None:
    """
    Delete a key if it exists.
    """
    await redis.delete(key)


async def execute_batch(operations: Sequence[Callable[[], Awaitable[T]]]) -> list[T]:
    """
    Run all operations concurrently and return their results in order.

    The operations are zero-argument factories so nothing is sent before
    the whole batch is issued. A failing operation fails the batch.
    """
    if not operations:
        return []
    try:
        return list(await asyncio.gather(*(op() for op in operations)))
    except Exception:
        logger.warning("Batch of %d cache operations failed", len(operations))
        raise


async def redis_mget_raw(redis: Redis, keys: Sequence[str]) -> list[Any]:
    return await execute_batch([lambda k=k: redis.get(k) for k in keys])


async def redis_mget_json(redis: Redis, keys: Sequence[str]) -> list[Any | None]:
    """
    Batch form of redis_get_json; each malformed entry becomes None.
    """
    raws = await redis_mget_raw(redis, keys)
    return [decode_json(raw) for raw in raws]


async def redis_mset_json(
    redis: Redis, entries: Sequence[tuple[str, Any, int | None]]
) -> list[None]:
    """
    Batch form of redis_set_json; entries are (key, value, ttl_seconds).
    """
    return await execute_batch(
        [
            lambda k=key, v=value, t=ttl: redis_set_json(redis, k, v, ttl_seconds=t)
            for key, value, ttl in entries
        ]
    )


async def redis_mdel(redis: Redis, keys: Sequence[str]) -> list[Any]:
    return await execute_batch([lambda k=k: redis.delete(k) for k in keys])


async def scan_keys(redis: Redis, pattern: str, *, count: int = 500) -> AsyncIterator[str]:
    """
    Iterate keys matching `pattern` with SCAN.

    Walks the whole keyspace; keep it off request paths.
    """
    async for key in redis.scan_iter(match=pattern, count=count):
        yield key.decode("utf-8") if isinstance(key, bytes) else key


__all__ = [
    "decode_json",
    "encode_json",
    "execute_batch",
    "get_redis_client",
    "redis_delete",
    "redis_get_json",
    "redis_get_model",
    "redis_mdel",
    "redis_mget_json",
    "redis_mget_raw",
    "redis_mset_json",
    "redis_set_json",
    "scan_keys",
]
