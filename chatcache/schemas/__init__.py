"""
Pydantic payloads shared by the cache layer and the HTTP surface.
"""

from .base import CamelModel
from .chat import (
    AssistantSaveRequest,
    AssistantSaveResponse,
    CacheMessageIn,
    CacheMessageRequest,
    CacheMessageResponse,
    ChatMessageIn,
    ChatRequest,
    ChatTurnResponse,
    CloneResponse,
    ContextBatchRequest,
    ContextResponse,
    ShareResponse,
    ThreadTransferRequest,
    ThreadTransferResponse,
)
from .context import (
    ContextSummary,
    ConversationContext,
    ConversationMessage,
    FormattedContext,
    FormattedContextMetadata,
    FormattedMessage,
    MessagePreview,
    MessageRole,
)
from .session import (
    AnonymousSession,
    AnonymousSessionEnvelope,
    ClaimRecord,
    ClaimRequest,
    ClaimResult,
    ClaimStatus,
    MessageCountUpdate,
    SessionRequest,
    SessionStats,
)

__all__ = [
    "AnonymousSession",
    "AnonymousSessionEnvelope",
    "AssistantSaveRequest",
    "AssistantSaveResponse",
    "CacheMessageIn",
    "CacheMessageRequest",
    "CacheMessageResponse",
    "CamelModel",
    "ChatMessageIn",
    "ChatRequest",
    "ChatTurnResponse",
    "ClaimRecord",
    "ClaimRequest",
    "ClaimResult",
    "ClaimStatus",
    "CloneResponse",
    "ContextBatchRequest",
    "ContextResponse",
    "ContextSummary",
    "ConversationContext",
    "ConversationMessage",
    "FormattedContext",
    "FormattedContextMetadata",
    "FormattedMessage",
    "MessageCountUpdate",
    "MessagePreview",
    "MessageRole",
    "SessionRequest",
    "SessionStats",
    "ShareResponse",
    "ThreadTransferRequest",
    "ThreadTransferResponse",
]
