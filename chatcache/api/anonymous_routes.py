"""
Bootstrap endpoint the chat page calls before the first anonymous message.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from redis.asyncio import Redis

from ..deps import (
    get_client_ip,
    get_redis,
    get_session_id,
    get_user_agent,
    set_session_cookie,
)
from ..errors import bad_request, not_found
from ..schemas import AnonymousSessionEnvelope
from ..services.rate_limiter import FixedWindowRateLimiter
from ..services.session_manager import AnonymousSessionManager
from ..settings import settings

router = APIRouter(prefix="/api/anonymous", tags=["anonymous"])


@router.post("", response_model=AnonymousSessionEnvelope)
async def bootstrap_anonymous_session(
    request: Request,
    response: Response,
    session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
) -> AnonymousSessionEnvelope:
    """
    Get or create the caller's anonymous session. Limited per client address
    to one call every two seconds and five per minute.
    """
    manager = AnonymousSessionManager(redis)
    ip = get_client_ip(request)
    ip_hash = manager.hash_ip(ip)
    limiter = FixedWindowRateLimiter(redis)
    await limiter.enforce(
        f"anon_ip_burst:{ip_hash}",
        settings.anonymous_ip_second_window_seconds,
        settings.anonymous_ip_second_limit,
        message="Too many requests. Please wait a moment.",
    )
    await limiter.enforce(
        f"anon_ip:{ip_hash}",
        settings.anonymous_ip_minute_window_seconds,
        settings.anonymous_ip_minute_limit,
        message="Too many session requests. Please try again later.",
    )

    session = await manager.get_or_create_session(
        session_id, user_agent=get_user_agent(request), ip=ip
    )
    set_session_cookie(response, session.session_id)
    return AnonymousSessionEnvelope(session_data=session)


@router.get("", response_model=AnonymousSessionEnvelope)
async def get_anonymous_session(
    response: Response,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    redis: Redis = Depends(get_redis),
) -> AnonymousSessionEnvelope:
    if not session_id:
        raise bad_request("sessionId is required")
    session = await AnonymousSessionManager(redis).get_session(session_id)
    if session is None:
        raise not_found("Session not found or expired", details={"session_id": session_id})
    set_session_cookie(response, session.session_id)
    return AnonymousSessionEnvelope(session_data=session)


__all__ = ["router"]
