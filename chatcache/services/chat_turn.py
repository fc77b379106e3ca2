"""
Orchestration of one chat turn around the cache layer.

The model call itself happens elsewhere; this module decides whether the
caller may send, which thread the turn belongs to, whether the user
message must be stored, and keeps the context cache in step with the
durable store.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import InvalidSessionId, LimitExceeded, ThreadAccessDenied, ThreadNotFound
from ..logging_config import logger
from ..models import Message, Thread
from ..schemas import (
    AnonymousSession,
    AssistantSaveRequest,
    ChatRequest,
    ConversationMessage,
)
from ..settings import settings
from . import thread_service
from .context_cache import ConversationContextCache
from .rate_limiter import FixedWindowRateLimiter
from .retry_detector import RetryDetectionResult, detect_retry_operation, last_user_message
from .session_manager import AnonymousSessionManager, is_valid_session_id, user_identity

TITLE_MAX_LENGTH = 50


@dataclass
class PreparedTurn:
    thread: Thread
    retry: RetryDetectionResult
    session: Optional[AnonymousSession] = None
    user_message: Optional[Message] = None
    remaining_messages: Optional[int] = None
    context: List[ConversationMessage] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def check_turn_rate_limit(
    redis: Redis,
    db: Session,
    *,
    user_id: Optional[str],
    session: Optional[AnonymousSession],
    now: float | None = None,
) -> int:
    """
    Gate a turn and return the messages left to the caller.

    Signed-in users are held to their per-user window. Anonymous sessions
    are held to the burst window and to the session budget, whichever of
    the cached record and the durable store reports less.

    Raises:
        LimitExceeded: the caller must not send this turn
    """
    limiter = FixedWindowRateLimiter(redis)
    if user_id is not None:
        result = await limiter.enforce(
            user_identity(user_id),
            settings.user_window_seconds,
            settings.user_max_requests,
            message="Rate limit exceeded. Please slow down.",
            now=now,
        )
        return result.remaining

    if session is None:
        raise LimitExceeded("Session required for anonymous users", limit=0, remaining=0)

    await limiter.enforce(
        session.session_id,
        settings.anonymous_burst_window_seconds,
        settings.anonymous_burst_max_requests,
        message="Too many messages. Please wait a moment.",
        now=now,
    )

    remaining = session.remaining_messages
    try:
        stats = thread_service.get_session_stats(db, session.session_id)
        remaining = min(remaining, stats.remaining_messages)
    except SQLAlchemyError as exc:
        logger.warning("Session stats unavailable for %s: %s", session.session_id, exc)
        db.rollback()

    if remaining <= 0:
        raise LimitExceeded(
            "Message limit exceeded. Please sign up to continue.",
            limit=settings.max_messages_per_session,
            remaining=0,
            reset=session.reset_time // 1000,
        )
    return remaining


def _resolve_thread(
    db: Session,
    request: ChatRequest,
    *,
    user_id: Optional[str],
    session: Optional[AnonymousSession],
) -> Thread:
    if request.thread_id:
        thread = thread_service.get_thread(db, request.thread_id)
        if thread is None:
            raise ThreadNotFound(request.thread_id)
        session_id = session.session_id if session else None
        if not thread_service.can_access_thread(thread, user_id=user_id, session_id=session_id):
            raise ThreadAccessDenied(thread.id)
        return thread

    inbound = last_user_message(request.messages)
    title = request.title or (inbound.content.strip()[:TITLE_MAX_LENGTH] if inbound else None)
    ip_hash = session.ip_hash if session and session.ip_hash != "unknown" else None
    return thread_service.create_thread(
        db,
        user_id=user_id,
        session_id=session.session_id if session else None,
        ip_hash=ip_hash,
        title=title or None,
        model=request.model,
    )


async def prepare_user_turn(
    redis: Redis,
    db: Session,
    *,
    request: ChatRequest,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> PreparedTurn:
    """
    Rate check, thread resolution, retry detection, then (only for a new
    user message) budget spend, persistence and cache append.
    """
    manager = AnonymousSessionManager(redis)
    session: Optional[AnonymousSession] = None
    if user_id is None:
        session = await manager.get_or_create_session(
            session_id, user_agent=user_agent, ip=ip
        )

    remaining = await check_turn_rate_limit(redis, db, user_id=user_id, session=session)
    thread = _resolve_thread(db, request, user_id=user_id, session=session)
    retry = detect_retry_operation(db, request.messages, request.thread_id)

    turn = PreparedTurn(
        thread=thread,
        retry=retry,
        session=session,
        remaining_messages=remaining,
    )
    cache = ConversationContextCache(redis)

    inbound = last_user_message(request.messages)
    if retry.should_save_user_message and inbound is not None:
        if session is not None:
            updated = await manager.increment_message_count(session.session_id)
            if updated is not None:
                turn.session = updated
                turn.remaining_messages = updated.remaining_messages
        turn.user_message = thread_service.create_message(
            db,
            thread_id=thread.id,
            role="user",
            content=inbound.content,
            model=request.model,
        )
        try:
            await cache.append_message(
                thread.id,
                ConversationMessage(
                    role="user",
                    content=inbound.content,
                    timestamp=_now_ms(),
                    model=request.model,
                    message_id=turn.user_message.id,
                ),
                user_id=user_id,
                session_id=session.session_id if session else None,
            )
        except Exception:
            logger.warning("Context cache append failed for thread %s", thread.id, exc_info=True)

    try:
        context = await cache.load_context(db, thread.id)
        if context is not None:
            turn.context = context.messages
    except Exception:
        logger.warning("Context load failed for thread %s", thread.id, exc_info=True)
    return turn


async def save_assistant_message(
    redis: Redis,
    db: Session,
    *,
    request: AssistantSaveRequest,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Message:
    """
    Persist an assistant reply, complete or cut short, and mirror it into
    the context cache.
    """
    thread = thread_service.get_thread(db, request.thread_id)
    if thread is None:
        raise ThreadNotFound(request.thread_id)
    if not thread_service.can_access_thread(thread, user_id=user_id, session_id=session_id):
        raise ThreadAccessDenied(thread.id)

    message = thread_service.create_message(
        db,
        thread_id=thread.id,
        role="assistant",
        content=request.content,
        model=request.model,
    )
    if request.partial:
        logger.info("Saved partial assistant reply on thread %s", thread.id)

    try:
        await ConversationContextCache(redis).append_message(
            thread.id,
            ConversationMessage(
                role="assistant",
                content=request.content,
                timestamp=_now_ms(),
                model=request.model,
                message_id=message.id,
            ),
            user_id=user_id,
            session_id=session_id,
        )
    except Exception:
        logger.warning("Context cache append failed for thread %s", thread.id, exc_info=True)
    return message


async def transfer_thread_to_session(
    redis: Redis,
    db: Session,
    *,
    thread_id: str,
    session_id: str,
    ip: str,
) -> tuple[Optional[str], bool]:
    """
    Move an anonymous thread to the caller's current session (same visitor,
    new cookie) and fold the old session into the new one.

    Returns `(old_session_id, merged)`.

    Raises:
        InvalidSessionId: `session_id` is not an anonymous session id
        ThreadAccessDenied: the thread is not an anonymous thread of this visitor
    """
    if not is_valid_session_id(session_id):
        raise InvalidSessionId(session_id)
    manager = AnonymousSessionManager(redis)
    ip_hash = manager.hash_ip(ip)
    old_session_id = thread_service.transfer_anonymous_thread(
        db, thread_id=thread_id, new_session_id=session_id, ip_hash=ip_hash
    )
    if old_session_id is None:
        raise ThreadAccessDenied(thread_id)

    merged = False
    if old_session_id != session_id:
        merged = await manager.merge_sessions(old_session_id, session_id) is not None
        try:
            await ConversationContextCache(redis).update_metadata(thread_id, session_id=session_id)
        except Exception:
            logger.warning("Could not update cached session of thread %s", thread_id, exc_info=True)
    logger.info(
        "Transferred thread %s from session %s to %s", thread_id, old_session_id, session_id
    )
    return old_session_id, merged


__all__ = [
    "PreparedTurn",
    "check_turn_rate_limit",
    "prepare_user_turn",
    "save_assistant_message",
    "transfer_thread_to_session",
]
