from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Thread(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A conversation, owned either by a user or by an anonymous session."""

    __tablename__ = "threads"
    __table_args__ = (
        Index("ix_threads_by_user", "user_id"),
        Index("ix_threads_by_session", "session_id"),
        Index("ix_threads_by_ip_hash", "ip_hash"),
        Index("ix_threads_by_user_original", "user_id", "original_thread_id"),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="New chat")
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    session_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        doc="Anonymous session that created the thread; kept after a claim.",
    )
    ip_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("0")
    )
    original_thread_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("threads.id", ondelete="SET NULL"),
        nullable=True,
        doc="Source thread when this one was cloned from a share link.",
    )

    messages = relationship(
        "Message",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="Message.sequence",
    )


__all__ = ["Thread"]
