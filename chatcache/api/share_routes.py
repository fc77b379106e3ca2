from __future__ import annotations

from fastapi import APIRouter, Depends
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..auth import AuthenticatedUser, require_user
from ..deps import get_db, get_redis
from ..errors import bad_request, forbidden, not_found
from ..schemas import CloneResponse, ShareResponse
from ..services import share_service, thread_service
from ..settings import settings

router = APIRouter(tags=["share"])


@router.post("/api/threads/{thread_id}/share", response_model=ShareResponse)
async def share_thread_endpoint(
    thread_id: str,
    user: AuthenticatedUser = Depends(require_user),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> ShareResponse:
    """
    Create a share link. Anonymous threads cannot be shared.
    """
    thread = thread_service.get_accessible_thread(
        db, thread_id, user_id=user.id, session_id=None
    )
    if thread is None:
        raise not_found("Thread not found", details={"thread_id": thread_id})
    token = await share_service.create_share_token(redis, thread.id)
    return ShareResponse(
        token=token, thread_id=thread.id, expires_in=settings.share_token_ttl_seconds
    )


@router.delete("/api/share/{token}")
async def revoke_share_endpoint(
    token: str,
    user: AuthenticatedUser = Depends(require_user),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> dict:
    if not share_service.is_valid_share_token(token):
        raise bad_request("Invalid share token format")
    thread_id = await share_service.validate_share_token(redis, token)
    if thread_id is None:
        raise not_found("Share link not found or expired")
    thread = thread_service.get_thread(db, thread_id)
    if thread is not None and thread.user_id != user.id:
        raise forbidden("Only the owner can revoke a share link")
    await share_service.revoke_share_token(redis, token)
    return {"message": "Share link revoked"}


@router.post("/api/share/{token}/clone", response_model=CloneResponse)
async def clone_shared_thread_endpoint(
    token: str,
    user: AuthenticatedUser = Depends(require_user),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> CloneResponse:
    thread, created = await share_service.clone_shared_thread(
        redis, db, token=token, user_id=user.id
    )
    return CloneResponse(thread_id=thread.id, cloned=created)


__all__ = ["router"]
