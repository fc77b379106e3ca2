from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..auth import AuthenticatedUser, require_user
from ..deps import (
    get_client_ip,
    get_db,
    get_redis,
    get_session_id,
    get_user_agent,
    set_session_cookie,
)
from ..errors import bad_request, conflict, not_found
from ..schemas import (
    AnonymousSession,
    ClaimRequest,
    ClaimResult,
    MessageCountUpdate,
    SessionRequest,
    SessionStats,
)
from ..services import thread_service
from ..services.session_manager import AnonymousSessionManager, is_valid_session_id

router = APIRouter(prefix="/api/session", tags=["session"])


@router.get("", response_model=AnonymousSession)
async def get_session_endpoint(
    request: Request,
    response: Response,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    redis: Redis = Depends(get_redis),
) -> AnonymousSession:
    """
    Return the given session, or get-or-create one for this client when no
    id is passed.
    """
    manager = AnonymousSessionManager(redis)
    if session_id:
        session = await manager.get_session(session_id)
        if session is None:
            raise not_found("Session not found", details={"session_id": session_id})
    else:
        session = await manager.get_or_create_session(
            None, user_agent=get_user_agent(request), ip=get_client_ip(request)
        )
    set_session_cookie(response, session.session_id)
    return session


@router.post("", response_model=AnonymousSession)
async def post_session_endpoint(
    payload: SessionRequest,
    request: Request,
    response: Response,
    current_session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
) -> AnonymousSession:
    manager = AnonymousSessionManager(redis)
    if payload.action == "merge":
        if not payload.from_session_id or not payload.to_session_id:
            raise bad_request("fromSessionId and toSessionId are required for merge")
        merged = await manager.merge_sessions(payload.from_session_id, payload.to_session_id)
        if merged is None:
            raise not_found(
                "Target session not found",
                details={"session_id": payload.to_session_id},
            )
        set_session_cookie(response, merged.session_id)
        return merged

    session = await manager.get_or_create_session(
        payload.session_id or current_session_id,
        user_agent=get_user_agent(request),
        ip=get_client_ip(request),
        fingerprint=payload.fingerprint,
    )
    set_session_cookie(response, session.session_id)
    return session


@router.put("", response_model=AnonymousSession)
async def put_session_endpoint(
    payload: MessageCountUpdate,
    redis: Redis = Depends(get_redis),
) -> AnonymousSession:
    manager = AnonymousSessionManager(redis)
    session = await manager.set_message_count(payload.session_id, payload.message_count)
    if session is None:
        raise not_found("Session not found", details={"session_id": payload.session_id})
    return session


@router.delete("")
async def delete_session_endpoint(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    redis: Redis = Depends(get_redis),
) -> dict:
    if not session_id:
        raise bad_request("sessionId is required")
    if not is_valid_session_id(session_id):
        raise bad_request("Invalid sessionId", details={"session_id": session_id})
    await AnonymousSessionManager(redis).delete_session(session_id)
    return {"message": "Session deleted"}


@router.get("/stats", response_model=SessionStats)
def session_stats_endpoint(
    session_id: Optional[str] = Depends(get_session_id),
    db: Session = Depends(get_db),
) -> SessionStats:
    """
    Usage of an anonymous session as recorded by the durable store.
    """
    if not session_id:
        raise bad_request("sessionId is required")
    return thread_service.get_session_stats(db, session_id)


@router.post("/claim", response_model=ClaimResult)
async def claim_session_endpoint(
    payload: ClaimRequest,
    user: AuthenticatedUser = Depends(require_user),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> ClaimResult:
    result = await AnonymousSessionManager(redis).claim_session(
        db,
        session_id=payload.session_id,
        user_id=user.id,
        ip_hash=payload.ip_hash,
    )
    if result.status == "conflict":
        raise conflict(
            "Session was claimed by another user",
            details={"session_id": payload.session_id},
        )
    return result


__all__ = ["router"]
