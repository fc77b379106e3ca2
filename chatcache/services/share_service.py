"""
Share links for threads and the single-copy clone of a shared thread.
"""

from __future__ import annotations

import uuid
from typing import Optional, Tuple

from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..exceptions import InvalidShareToken, ShareLinkNotFound
from ..logging_config import logger
from ..models import Thread
from ..settings import settings
from . import thread_service
from .lease import hold_lease


def share_key(token: str) -> str:
    return f"share:{token}"


def is_valid_share_token(token: str) -> bool:
    try:
        return str(uuid.UUID(token)) == token.lower()
    except (TypeError, ValueError):
        return False


async def create_share_token(
    redis: Redis, thread_id: str, *, ttl_seconds: int | None = None
) -> str:
    token = str(uuid.uuid4())
    ttl = ttl_seconds or settings.share_token_ttl_seconds
    await redis.set(share_key(token), thread_id, ex=ttl)
    return token


async def validate_share_token(redis: Redis, token: str) -> Optional[str]:
    """
    Thread id behind a share token, or None when the token is malformed,
    unknown or expired.
    """
    if not is_valid_share_token(token):
        return None
    thread_id = await redis.get(share_key(token))
    if isinstance(thread_id, bytes):
        thread_id = thread_id.decode("utf-8")
    return thread_id or None


async def revoke_share_token(redis: Redis, token: str) -> bool:
    return bool(await redis.delete(share_key(token)))


async def extend_share_token(
    redis: Redis, token: str, *, ttl_seconds: int | None = None
) -> bool:
    ttl = ttl_seconds or settings.share_token_ttl_seconds
    return bool(await redis.expire(share_key(token), ttl))


async def clone_shared_thread(
    redis: Redis, db: Session, *, token: str, user_id: str
) -> Tuple[Thread, bool]:
    """
    Copy the shared thread into the user's threads, at most once.

    Returns `(thread, created)`; when the user already cloned the same
    source thread, that clone is returned with `created=False`.

    Raises:
        InvalidShareToken: the token is not a UUID
        ShareLinkNotFound: the token is unknown, expired or its thread is gone
        OperationInProgress: another request is cloning for the same user
    """
    if not is_valid_share_token(token):
        raise InvalidShareToken(token)
    thread_id = await validate_share_token(redis, token)
    source = thread_service.get_thread(db, thread_id) if thread_id else None
    if source is None:
        raise ShareLinkNotFound(token)

    existing = thread_service.find_clone(db, user_id=user_id, original_thread_id=source.id)
    if existing is not None:
        return existing, False

    async with hold_lease(redis, f"clone:{user_id}:{token}"):
        existing = thread_service.find_clone(db, user_id=user_id, original_thread_id=source.id)
        if existing is not None:
            return existing, False
        clone = thread_service.clone_thread(db, source=source, user_id=user_id)
        logger.info("User %s cloned shared thread %s into %s", user_id, source.id, clone.id)
        return clone, True


__all__ = [
    "clone_shared_thread",
    "create_share_token",
    "extend_share_token",
    "is_valid_share_token",
    "revoke_share_token",
    "share_key",
    "validate_share_token",
]
