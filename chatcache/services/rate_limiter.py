"""
Fixed-window request counters kept in Redis.

Every (identity, window) pair owns the key
`{prefix}:{identity}:{floor(now / window_seconds)}`. The counter expires
with its window, so a new window always starts from zero.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Sequence

from redis.asyncio import Redis

from ..exceptions import LimitExceeded
from ..redis_client import execute_batch, redis_mget_raw


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset: int  # epoch seconds at which the window ends


def _to_int(raw) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


class FixedWindowRateLimiter:
    def __init__(self, redis: Redis, *, prefix: str = "rate"):
        self.redis = redis
        self.prefix = prefix

    @staticmethod
    def window_index(window_seconds: int, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return int(current // window_seconds)

    @classmethod
    def reset_time(cls, window_seconds: int, now: float | None = None) -> int:
        return (cls.window_index(window_seconds, now) + 1) * window_seconds

    def key_for(self, identity: str, window_seconds: int, now: float | None = None) -> str:
        return f"{self.prefix}:{identity}:{self.window_index(window_seconds, now)}"

    async def check(
        self,
        identity: str,
        window_seconds: int,
        max_requests: int,
        *,
        now: float | None = None,
    ) -> RateLimitResult:
        """
        Count one request and report whether it fits the window.

        The rejected request is still counted; the counter only matters
        until the window rolls over.
        """
        key = self.key_for(identity, window_seconds, now)
        count, _ = await execute_batch(
            [
                lambda: self.redis.incr(key),
                lambda: self.redis.expire(key, window_seconds),
            ]
        )
        count = _to_int(count)
        return RateLimitResult(
            allowed=count <= max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset=self.reset_time(window_seconds, now),
        )

    async def check_limit(
        self,
        identity: str,
        window_seconds: int,
        max_requests: int,
        *,
        now: float | None = None,
    ) -> bool:
        result = await self.check(identity, window_seconds, max_requests, now=now)
        return result.allowed

    async def enforce(
        self,
        identity: str,
        window_seconds: int,
        max_requests: int,
        *,
        message: str = "Rate limit exceeded",
        now: float | None = None,
    ) -> RateLimitResult:
        """
        Like `check`, but raises LimitExceeded when the request does not fit.
        """
        result = await self.check(identity, window_seconds, max_requests, now=now)
        if not result.allowed:
            raise LimitExceeded(
                message, limit=result.limit, remaining=0, reset=result.reset
            )
        return result

    async def get_remaining_requests(
        self,
        identity: str,
        window_seconds: int,
        max_requests: int,
        *,
        now: float | None = None,
    ) -> int:
        """
        Requests left in the current window; does not count anything.
        """
        raw = await self.redis.get(self.key_for(identity, window_seconds, now))
        return max(0, max_requests - _to_int(raw))

    async def check_multiple_limits(
        self,
        identities: Sequence[str],
        window_seconds: int,
        max_requests: int,
        *,
        now: float | None = None,
    ) -> Dict[str, bool]:
        """
        Batched variant: read every counter, then count only the identities
        that were still under the limit. A repeated identity counts once.
        """
        identities = list(dict.fromkeys(identities))
        if not identities:
            return {}
        keys = [self.key_for(identity, window_seconds, now) for identity in identities]
        counts = await redis_mget_raw(self.redis, keys)

        results: Dict[str, bool] = {}
        allowed_keys: list[str] = []
        for identity, key, raw in zip(identities, keys, counts):
            allowed = _to_int(raw) < max_requests
            results[identity] = allowed
            if allowed:
                allowed_keys.append(key)

        operations = []
        for key in allowed_keys:
            operations.append(lambda k=key: self.redis.incr(k))
            operations.append(lambda k=key: self.redis.expire(k, window_seconds))
        await execute_batch(operations)
        return results


__all__ = ["FixedWindowRateLimiter", "RateLimitResult"]
