from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import Field

from .base import CamelModel

MessageRole = Literal["user", "assistant", "system"]


class ConversationMessage(CamelModel):
    """
    One entry of a cached conversation window.
    """

    role: MessageRole
    content: str
    timestamp: int = Field(..., description="Epoch milliseconds")
    model: Optional[str] = None
    message_id: Optional[str] = None


class ConversationContext(CamelModel):
    """
    Disposable, bounded view of the most recent messages of a thread.
    """

    thread_id: str
    messages: List[ConversationMessage] = Field(default_factory=list)
    model: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    last_updated: int = Field(..., description="Epoch milliseconds")
    message_count: int = Field(0, ge=0)


class MessagePreview(CamelModel):
    role: MessageRole
    content_preview: str
    timestamp: int


class ContextSummary(CamelModel):
    thread_id: str
    message_count: int
    model: str
    last_updated: int
    has_messages: bool
    recent_message_preview: List[MessagePreview] = Field(default_factory=list)


class FormattedMessage(CamelModel):
    role: MessageRole
    content: str


class FormattedContextMetadata(CamelModel):
    thread_id: str
    total_messages: int
    included_messages: int
    estimated_tokens: int
    last_updated: int
    model: Optional[str] = None


class FormattedContext(CamelModel):
    """
    LLM-ready context: optional system prompt plus the newest messages
    that fit the token budget, in chronological order.
    """

    messages: List[FormattedMessage]
    metadata: FormattedContextMetadata


__all__ = [
    "ContextSummary",
    "ConversationContext",
    "ConversationMessage",
    "FormattedContext",
    "FormattedContextMetadata",
    "FormattedMessage",
    "MessagePreview",
    "MessageRole",
]
