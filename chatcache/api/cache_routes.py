from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..auth import AuthenticatedUser, get_optional_user
from ..deps import get_db, get_redis, get_session_id
from ..errors import bad_request
from ..exceptions import ThreadAccessDenied
from ..schemas import CacheMessageRequest, CacheMessageResponse, ConversationMessage
from ..services import thread_service
from ..services.context_cache import ConversationContextCache

router = APIRouter(prefix="/api/cache/messages", tags=["cache"])


@router.post("", response_model=CacheMessageResponse)
async def cache_message_endpoint(
    payload: CacheMessageRequest,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    current_session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> CacheMessageResponse:
    """
    Mirror a message the client already displays into the context cache.
    """
    user_id = user.id if user else None
    session_id = payload.session_id or current_session_id
    thread = thread_service.get_thread(db, payload.thread_id)
    if thread is not None and not thread_service.can_access_thread(
        thread, user_id=user_id, session_id=session_id
    ):
        raise ThreadAccessDenied(payload.thread_id)

    incoming = payload.message
    message = ConversationMessage(
        role=incoming.role,
        content=incoming.content,
        timestamp=incoming.timestamp or int(time.time() * 1000),
        model=incoming.model,
        message_id=incoming.message_id,
    )
    await ConversationContextCache(redis).append_message(
        payload.thread_id, message, user_id=user_id, session_id=session_id
    )
    return CacheMessageResponse(
        timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
    )


@router.get("")
async def cached_summary_endpoint(
    thread_id: Optional[str] = Query(None, alias="threadId"),
    redis: Redis = Depends(get_redis),
) -> dict:
    if not thread_id:
        raise bad_request("threadId is required")
    summary = await ConversationContextCache(redis).get_context_summary(thread_id)
    return {"data": summary.to_wire() if summary else None}


__all__ = ["router"]
