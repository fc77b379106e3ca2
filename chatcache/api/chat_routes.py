from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..auth import AuthenticatedUser, get_optional_user
from ..deps import (
    get_client_ip,
    get_db,
    get_redis,
    get_session_id,
    get_user_agent,
    set_session_cookie,
)
from ..schemas import (
    AssistantSaveRequest,
    AssistantSaveResponse,
    ChatRequest,
    ChatTurnResponse,
    ThreadTransferRequest,
    ThreadTransferResponse,
)
from ..services.chat_turn import (
    prepare_user_turn,
    save_assistant_message,
    transfer_thread_to_session,
)

router = APIRouter(tags=["chat"])


@router.post("/api/chat", response_model=ChatTurnResponse)
async def chat_turn_endpoint(
    payload: ChatRequest,
    request: Request,
    response: Response,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> ChatTurnResponse:
    """
    Accept one user turn: gate it, store it unless it is a retry, and return
    the thread context the model call should use.
    """
    turn = await prepare_user_turn(
        redis,
        db,
        request=payload,
        user_id=user.id if user else None,
        session_id=session_id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    if turn.session is not None:
        set_session_cookie(response, turn.session.session_id)
    return ChatTurnResponse(
        thread_id=turn.thread.id,
        session_id=turn.session.session_id if turn.session else None,
        user_message_saved=turn.user_message is not None,
        is_retry=turn.retry.is_retry_operation,
        message_id=turn.user_message.id if turn.user_message else None,
        remaining_messages=turn.remaining_messages,
        context=turn.context,
    )


@router.post("/api/chat/partial-save", response_model=AssistantSaveResponse)
async def partial_save_endpoint(
    payload: AssistantSaveRequest,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_session_id),
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> AssistantSaveResponse:
    message = await save_assistant_message(
        redis,
        db,
        request=payload,
        user_id=user.id if user else None,
        session_id=session_id,
    )
    return AssistantSaveResponse(
        thread_id=payload.thread_id, message_id=message.id, partial=payload.partial
    )


@router.post("/api/threads/{thread_id}/transfer", response_model=ThreadTransferResponse)
async def transfer_thread_endpoint(
    thread_id: str,
    payload: ThreadTransferRequest,
    request: Request,
    response: Response,
    redis: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
) -> ThreadTransferResponse:
    """
    Re-home an anonymous thread to the caller's current session after the
    session cookie was lost.
    """
    old_session_id, merged = await transfer_thread_to_session(
        redis,
        db,
        thread_id=thread_id,
        session_id=payload.session_id,
        ip=get_client_ip(request),
    )
    set_session_cookie(response, payload.session_id)
    return ThreadTransferResponse(
        success=True,
        thread_id=thread_id,
        old_session_id=old_session_id,
        merged=merged,
    )


__all__ = ["router"]
