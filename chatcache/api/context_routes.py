"""
Read access to cached conversation contexts for the chat client.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..auth import AuthenticatedUser, get_optional_user, require_user
from ..deps import get_client_ip, get_db, get_redis, get_session_id
from ..errors import bad_request, not_found
from ..exceptions import ThreadAccessDenied
from ..schemas import ContextBatchRequest, ContextResponse
from ..services import thread_service
from ..services.context_cache import ConversationContextCache, format_context
from ..services.rate_limiter import FixedWindowRateLimiter
from ..services.session_manager import AnonymousSessionManager
from ..settings import settings

router = APIRouter(prefix="/api/conversation-context", tags=["conversation-context"])

MAX_BATCH_THREADS = 10
RATE_WINDOW_SECONDS = 60


def _meta(operation: str, **extra: Any) -> Dict[str, Any]:
    return {"operation": operation, "timestamp": int(time.time() * 1000), **extra}


@router.get("", response_model=ContextResponse)
async def get_context_endpoint(
    request: Request,
    thread_id: Optional[str] = Query(None, alias="threadId"),
    operation: Literal["context", "summary", "recent"] = Query("context"),
    limit: int = Query(20, ge=1, le=100),
    model: Optional[str] = Query(None),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> ContextResponse:
    if user is not None:
        identity = f"user:{user.id}"
    elif session_id:
        identity = session_id
    else:
        identity = f"ip:{AnonymousSessionManager.hash_ip(get_client_ip(request))}"
    await FixedWindowRateLimiter(redis).enforce(
        f"context:{identity}", RATE_WINDOW_SECONDS, settings.context_api_max_requests
    )

    if not thread_id:
        raise bad_request("threadId is required")
    thread = thread_service.get_thread(db, thread_id)
    if thread is None:
        raise not_found("Thread not found", details={"thread_id": thread_id})
    if not thread_service.can_access_thread(
        thread, user_id=user.id if user else None, session_id=session_id
    ):
        raise ThreadAccessDenied(thread_id)

    cache = ConversationContextCache(redis)
    if operation == "summary":
        summary = await cache.get_context_summary(thread_id)
        return ContextResponse(
            data=summary.to_wire() if summary else None,
            meta=_meta(operation, threadId=thread_id, cached=summary is not None),
        )
    if operation == "recent":
        messages = await cache.get_recent_messages(thread_id, limit)
        return ContextResponse(
            data=[message.to_wire() for message in messages],
            meta=_meta(operation, threadId=thread_id, count=len(messages)),
        )

    context = await cache.load_context(db, thread_id)
    if context is None:
        raise not_found("Thread not found", details={"thread_id": thread_id})
    if model:
        context = context.model_copy(update={"model": model})
    formatted = format_context(context)
    return ContextResponse(
        data=formatted.to_wire(),
        meta=_meta(operation, threadId=thread_id),
    )


@router.post("", response_model=ContextResponse)
async def batch_context_endpoint(
    payload: ContextBatchRequest,
    user: AuthenticatedUser = Depends(require_user),
    redis: Redis = Depends(get_redis),
) -> ContextResponse:
    """
    Cached contexts (or summaries) of up to ten of the caller's threads.
    Threads without a cached context, or owned by someone else, map to null.
    """
    if not payload.thread_ids:
        raise bad_request("threadIds must not be empty")
    if len(payload.thread_ids) > MAX_BATCH_THREADS:
        raise bad_request(
            f"At most {MAX_BATCH_THREADS} threads per request",
            details={"count": len(payload.thread_ids)},
        )
    await FixedWindowRateLimiter(redis).enforce(
        f"context_batch:user:{user.id}",
        RATE_WINDOW_SECONDS,
        settings.context_batch_max_requests,
    )

    cache = ConversationContextCache(redis)
    contexts = await cache.get_multiple_contexts(payload.thread_ids)
    data: Dict[str, Any] = {}
    for thread_id, context in contexts.items():
        if context is None or context.user_id != user.id:
            data[thread_id] = None
            continue
        if payload.model:
            context = context.model_copy(update={"model": payload.model})
        if payload.operation == "summary":
            summary = await cache.get_context_summary(thread_id)
            data[thread_id] = summary.to_wire() if summary else None
        else:
            data[thread_id] = format_context(context).to_wire()
    return ContextResponse(
        data=data,
        meta=_meta(
            payload.operation,
            requested=len(payload.thread_ids),
            found=sum(1 for value in data.values() if value is not None),
        ),
    )


@router.head("")
async def context_health_endpoint() -> Response:
    return Response(status_code=200)


__all__ = ["router"]
