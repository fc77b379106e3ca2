"""
Session-scoped transient data and its hand-over between identities.

Keys follow `session:{sessionId}:{name}`. Every write also records `name`
in the set `session_index:{sessionId}`, so the keys of one session can be
listed without scanning the keyspace.
"""

from __future__ import annotations

import time
from typing import Any, Iterable, List, Optional

from redis.asyncio import Redis

from ..logging_config import logger
from ..redis_client import execute_batch, redis_get_json, redis_set_json
from ..settings import settings
from .rate_limiter import FixedWindowRateLimiter


def session_data_key(session_id: str, name: str) -> str:
    return f"session:{session_id}:{name}"


def session_index_key(session_id: str) -> str:
    return f"session_index:{session_id}"


def _as_text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class SessionDataCache:
    def __init__(self, redis: Redis, *, ttl_seconds: int | None = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.session_data_ttl_seconds

    async def set(
        self, session_id: str, name: str, value: Any, *, ttl_seconds: int | None = None
    ) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        index = session_index_key(session_id)
        await redis_set_json(self.redis, session_data_key(session_id, name), value, ttl_seconds=ttl)
        await self.redis.sadd(index, name)
        # The index outlives its longest member.
        await self.redis.expire(index, max(ttl, settings.session_ttl_seconds))

    async def get(self, session_id: str, name: str) -> Optional[Any]:
        return await redis_get_json(self.redis, session_data_key(session_id, name))

    async def delete(self, session_id: str, name: str) -> None:
        await self.redis.delete(session_data_key(session_id, name))
        await self.redis.srem(session_index_key(session_id), name)

    async def names(self, session_id: str) -> List[str]:
        members = await self.redis.smembers(session_index_key(session_id))
        return sorted(_as_text(member) for member in members or ())


async def transfer_session_data(
    redis: Redis,
    from_session_id: str,
    to_session_id: str,
    *,
    ttl_seconds: int | None = None,
) -> int:
    """
    Move every session-scoped key of `from_session_id` under `to_session_id`.

    Each key is copied with the default TTL and then removed from the source.
    A key that fails to copy stays where it is and is not counted. Returns
    the number of keys transferred.
    """
    ttl = ttl_seconds or settings.session_data_ttl_seconds
    cache = SessionDataCache(redis, ttl_seconds=ttl)
    transferred = 0
    for name in await cache.names(from_session_id):
        source_key = session_data_key(from_session_id, name)
        try:
            raw = await redis.get(source_key)
            if raw is None:
                await redis.srem(session_index_key(from_session_id), name)
                continue
            await redis.set(session_data_key(to_session_id, name), raw, ex=ttl)
            await redis.sadd(session_index_key(to_session_id), name)
            await redis.expire(
                session_index_key(to_session_id), max(ttl, settings.session_ttl_seconds)
            )
        except Exception:
            logger.warning(
                "Failed to transfer session key %s to %s",
                source_key,
                to_session_id,
                exc_info=True,
            )
            continue
        try:
            await cache.delete(from_session_id, name)
        except Exception:
            logger.warning("Failed to remove transferred key %s", source_key, exc_info=True)
        transferred += 1

    if transferred:
        logger.info(
            "Transferred %d session keys from %s to %s",
            transferred,
            from_session_id,
            to_session_id,
        )
    return transferred


async def merge_rate_limit_data(
    redis: Redis,
    from_identity: str,
    to_identity: str,
    *,
    window_seconds: int | None = None,
    to_window_seconds: int | None = None,
    max_limit: int | None = None,
    now: float | None = None,
) -> int:
    """
    Fold the current-window request count of `from_identity` into
    `to_identity`, capped at `max_limit`. The source counter is always
    removed, even when the merge fails. Returns the merged count.

    The source counter is keyed by `window_seconds`, the destination by
    `to_window_seconds` (defaults to the same window).
    """
    window = window_seconds or settings.anonymous_burst_window_seconds
    to_window = to_window_seconds or window
    cap = max_limit if max_limit is not None else settings.anonymous_burst_max_requests
    limiter = FixedWindowRateLimiter(redis)
    current = time.time() if now is None else now
    from_key = limiter.key_for(from_identity, window, current)
    to_key = limiter.key_for(to_identity, to_window, current)
    try:
        from_raw, to_raw = await execute_batch(
            [lambda: redis.get(from_key), lambda: redis.get(to_key)]
        )
        merged = min(cap, _count(from_raw) + _count(to_raw))
        await redis.set(to_key, str(merged), ex=to_window)
        return merged
    finally:
        await redis.delete(from_key)


def _count(raw: Any) -> int:
    if raw is None:
        return 0
    try:
        return int(_as_text(raw))
    except ValueError:
        return 0


async def delete_all_session_data(
    redis: Redis,
    session_id: str,
    *,
    window_seconds: Iterable[int] | None = None,
    now: float | None = None,
) -> int:
    """
    Remove every session-scoped key of a session, its index, and its rate
    counters for the current and previous window of each window size.
    Returns the number of keys issued for deletion.
    """
    cache = SessionDataCache(redis)
    keys = [session_data_key(session_id, name) for name in await cache.names(session_id)]
    keys.append(session_index_key(session_id))

    limiter = FixedWindowRateLimiter(redis)
    current = time.time() if now is None else now
    windows = list(window_seconds) if window_seconds is not None else settings.session_rate_windows()
    for window in windows:
        keys.append(limiter.key_for(session_id, window, current))
        keys.append(limiter.key_for(session_id, window, current - window))

    await redis.delete(*keys)
    return len(keys)


__all__ = [
    "SessionDataCache",
    "delete_all_session_data",
    "merge_rate_limit_data",
    "session_data_key",
    "session_index_key",
    "transfer_session_data",
]
