from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import CamelModel


class AnonymousSession(CamelModel):
    """
    Ephemeral identity of a visitor who has not signed in yet.
    """

    session_id: str = Field(..., description="Opaque id, 'anon_<uuid4>'")
    message_count: int = Field(0, ge=0, description="Messages sent in this session")
    remaining_messages: int = Field(..., ge=0, description="Messages left in the budget")
    created_at: int = Field(..., description="Epoch milliseconds")
    last_used_at: int = Field(..., description="Epoch milliseconds")
    reset_time: int = Field(..., description="Epoch milliseconds at which the session lapses")
    user_agent: str = "unknown"
    ip_hash: str = "unknown"
    fingerprint_hash: Optional[str] = None
    is_expired: bool = False


class SessionStats(CamelModel):
    """
    Session usage as recorded by the durable store.
    """

    session_id: str
    thread_count: int
    message_count: int
    remaining_messages: int


ClaimStatus = Literal["claimed", "already_claimed", "in_progress", "conflict"]


class ClaimRecord(CamelModel):
    session_id: str
    user_id: str
    migrated: int = 0
    thread_ids: list[str] = Field(default_factory=list)
    claimed_at: int


class ClaimResult(CamelModel):
    status: ClaimStatus
    session_id: str
    user_id: str
    migrated: int = 0
    thread_ids: list[str] = Field(default_factory=list)


class SessionRequest(CamelModel):
    """
    Body of POST /api/session: get-or-create, or merge two sessions.
    """

    action: Optional[Literal["merge"]] = None
    session_id: Optional[str] = None
    fingerprint: Optional[str] = None
    from_session_id: Optional[str] = None
    to_session_id: Optional[str] = None


class MessageCountUpdate(CamelModel):
    session_id: str
    message_count: int = Field(..., ge=0)


class ClaimRequest(CamelModel):
    session_id: str
    ip_hash: Optional[str] = None


class AnonymousSessionEnvelope(CamelModel):
    session_data: AnonymousSession
    success: bool = True


__all__ = [
    "AnonymousSession",
    "AnonymousSessionEnvelope",
    "ClaimRecord",
    "ClaimRequest",
    "ClaimResult",
    "ClaimStatus",
    "MessageCountUpdate",
    "SessionRequest",
    "SessionStats",
]
