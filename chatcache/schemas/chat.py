from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import CamelModel
from .context import ConversationMessage, MessageRole


class ChatMessageIn(CamelModel):
    """
    A message as sent by the chat client; `id` is the client's temporary id.
    """

    role: MessageRole
    content: str
    id: Optional[str] = None


class ChatRequest(CamelModel):
    thread_id: Optional[str] = None
    messages: List[ChatMessageIn] = Field(..., min_length=1)
    model: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)


class ChatTurnResponse(CamelModel):
    thread_id: str
    session_id: Optional[str] = None
    user_message_saved: bool
    is_retry: bool
    message_id: Optional[str] = None
    remaining_messages: Optional[int] = None
    context: List[ConversationMessage] = Field(default_factory=list)


class AssistantSaveRequest(CamelModel):
    thread_id: str
    content: str = Field(..., min_length=1)
    model: Optional[str] = None
    partial: bool = False


class AssistantSaveResponse(CamelModel):
    thread_id: str
    message_id: str
    partial: bool


class CacheMessageIn(CamelModel):
    role: MessageRole
    content: str
    timestamp: Optional[int] = None
    model: Optional[str] = None
    message_id: Optional[str] = None


class CacheMessageRequest(CamelModel):
    thread_id: str = Field(..., min_length=1)
    message: CacheMessageIn
    session_id: Optional[str] = None


class CacheMessageResponse(CamelModel):
    success: bool = True
    cached: bool = True
    timestamp: str


class ContextBatchRequest(CamelModel):
    thread_ids: List[str]
    model: Optional[str] = None
    operation: Literal["context", "summary"] = "context"


class ContextResponse(CamelModel):
    data: Any
    meta: Dict[str, Any]


class ThreadTransferRequest(CamelModel):
    session_id: str


class ThreadTransferResponse(CamelModel):
    success: bool
    thread_id: str
    old_session_id: Optional[str] = None
    merged: bool = False


class ShareResponse(CamelModel):
    token: str
    thread_id: str
    expires_in: int


class CloneResponse(CamelModel):
    thread_id: str
    cloned: bool = Field(..., description="False when an earlier clone was returned")


__all__ = [
    "AssistantSaveRequest",
    "AssistantSaveResponse",
    "CacheMessageIn",
    "CacheMessageRequest",
    "CacheMessageResponse",
    "ChatMessageIn",
    "ChatRequest",
    "ChatTurnResponse",
    "CloneResponse",
    "ContextBatchRequest",
    "ContextResponse",
    "ShareResponse",
    "ThreadTransferRequest",
    "ThreadTransferResponse",
]
