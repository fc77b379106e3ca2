"""
Durable-store operations on threads and messages.

The database is the source of truth; everything in Redis can be rebuilt
from what these functions read.
"""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..models import Message, Thread
from ..schemas import SessionStats
from ..settings import settings


def create_thread(
    db: Session,
    *,
    user_id: str | None = None,
    session_id: str | None = None,
    ip_hash: str | None = None,
    title: str | None = None,
    model: str | None = None,
) -> Thread:
    """
    Create a thread owned by a user, or by an anonymous session when no
    user id is given.
    """
    is_anonymous = user_id is None
    thread = Thread(
        title=(title or "New chat")[:200],
        model=model,
        user_id=user_id,
        session_id=session_id,
        ip_hash=ip_hash if is_anonymous else None,
        is_anonymous=is_anonymous,
    )
    db.add(thread)
    db.commit()
    db.refresh(thread)
    return thread


def get_thread(db: Session, thread_id: str) -> Thread | None:
    return db.get(Thread, thread_id)


def can_access_thread(
    thread: Thread, *, user_id: str | None, session_id: str | None
) -> bool:
    if thread.user_id is not None:
        return user_id is not None and thread.user_id == user_id
    if thread.session_id is not None:
        return session_id is not None and thread.session_id == session_id
    return False


def get_accessible_thread(
    db: Session,
    thread_id: str,
    *,
    user_id: str | None,
    session_id: str | None,
) -> Thread | None:
    """
    Load a thread only when the caller owns it.

    User-owned threads need the same user; anonymous threads need the same
    session. Threads with neither are never accessible.
    """
    thread = get_thread(db, thread_id)
    if thread is None:
        return None
    if not can_access_thread(thread, user_id=user_id, session_id=session_id):
        return None
    return thread


def list_threads_by_session(db: Session, session_id: str) -> list[Thread]:
    stmt = (
        select(Thread)
        .where(Thread.session_id == session_id)
        .order_by(Thread.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_threads_by_user(db: Session, user_id: str) -> list[Thread]:
    stmt = (
        select(Thread)
        .where(Thread.user_id == user_id)
        .order_by(Thread.updated_at.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_threads_by_ip_hash(db: Session, ip_hash: str) -> list[Thread]:
    stmt = (
        select(Thread)
        .where(Thread.ip_hash == ip_hash, Thread.is_anonymous.is_(True))
        .order_by(Thread.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_thread_messages(
    db: Session, thread_id: str, *, limit: int | None = None
) -> list[Message]:
    """
    Messages of a thread in chronological order; with `limit`, only the
    most recent `limit` of them.
    """
    if limit is None:
        stmt = (
            select(Message)
            .where(Message.thread_id == thread_id)
            .order_by(Message.sequence.asc())
        )
        return list(db.execute(stmt).scalars().all())

    stmt = (
        select(Message)
        .where(Message.thread_id == thread_id)
        .order_by(Message.sequence.desc())
        .limit(max(0, limit))
    )
    rows = list(db.execute(stmt).scalars().all())
    rows.reverse()
    return rows


def get_last_user_message(db: Session, thread_id: str) -> Message | None:
    stmt = (
        select(Message)
        .where(Message.thread_id == thread_id, Message.role == "user")
        .order_by(Message.sequence.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def _next_sequence(db: Session, thread_id: str) -> int:
    current = db.execute(
        select(func.max(Message.sequence)).where(Message.thread_id == thread_id)
    ).scalar()
    return int(current or 0) + 1


def create_message(
    db: Session,
    *,
    thread_id: str,
    role: str,
    content: str,
    model: str | None = None,
    cloned: bool = False,
) -> Message:
    message = Message(
        thread_id=thread_id,
        role=role,
        content=content,
        model=model,
        sequence=_next_sequence(db, thread_id),
        cloned=cloned,
    )
    db.add(message)
    thread = db.get(Thread, thread_id)
    if thread is not None and model:
        thread.model = model
        db.add(thread)
    db.commit()
    db.refresh(message)
    return message


def claim_anonymous_threads(
    db: Session,
    *,
    user_id: str,
    session_id: str,
    ip_hash: str | None = None,
) -> list[str]:
    """
    Move the anonymous threads of a session (and, when given, of an ip hash)
    to a user. `session_id` is kept on the thread; `ip_hash` is cleared.

    Threads that already belong to another user are left alone. Returns the
    ids of the threads that changed owner.
    """
    conditions = [Thread.session_id == session_id]
    if ip_hash:
        conditions.append(Thread.ip_hash == ip_hash)
    stmt = select(Thread).where(or_(*conditions))
    threads = db.execute(stmt).scalars().all()

    migrated: list[str] = []
    for thread in threads:
        if thread.user_id is not None and thread.user_id != user_id:
            continue
        if thread.user_id == user_id and not thread.is_anonymous:
            continue
        thread.user_id = user_id
        thread.is_anonymous = False
        thread.ip_hash = None
        db.add(thread)
        if thread.id not in migrated:
            migrated.append(thread.id)

    if migrated:
        db.commit()
    return migrated


def transfer_anonymous_thread(
    db: Session,
    *,
    thread_id: str,
    new_session_id: str,
    ip_hash: str,
) -> str | None:
    """
    Re-home an anonymous thread to a new session of the same visitor.

    Only allowed when the thread is still anonymous and was created from the
    same ip hash. Returns the previous session id, or None when refused.
    """
    thread = get_thread(db, thread_id)
    if thread is None or thread.user_id is not None:
        return None
    if not thread.ip_hash or thread.ip_hash != ip_hash:
        return None
    old_session_id = thread.session_id
    if old_session_id != new_session_id:
        thread.session_id = new_session_id
        db.add(thread)
        db.commit()
    return old_session_id


def get_session_stats(
    db: Session, session_id: str, *, max_messages: int | None = None
) -> SessionStats:
    """
    Usage of an anonymous session as recorded in the store. Cloned messages
    do not count against the budget.
    """
    limit = max_messages if max_messages is not None else settings.max_messages_per_session
    thread_count = db.execute(
        select(func.count(Thread.id)).where(Thread.session_id == session_id)
    ).scalar() or 0
    message_count = db.execute(
        select(func.count(Message.id))
        .join(Thread, Message.thread_id == Thread.id)
        .where(
            Thread.session_id == session_id,
            Message.role == "user",
            Message.cloned.is_(False),
        )
    ).scalar() or 0
    return SessionStats(
        session_id=session_id,
        thread_count=int(thread_count),
        message_count=int(message_count),
        remaining_messages=max(0, limit - int(message_count)),
    )


def find_clone(db: Session, *, user_id: str, original_thread_id: str) -> Thread | None:
    stmt = (
        select(Thread)
        .where(Thread.user_id == user_id, Thread.original_thread_id == original_thread_id)
        .order_by(Thread.created_at.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def clone_thread(db: Session, *, source: Thread, user_id: str) -> Thread:
    """
    Copy a thread and its messages into a new thread owned by `user_id`.
    """
    clone = Thread(
        title=source.title,
        model=source.model,
        user_id=user_id,
        is_anonymous=False,
        original_thread_id=source.id,
    )
    db.add(clone)
    db.flush()
    messages: Sequence[Message] = list_thread_messages(db, source.id)
    for index, message in enumerate(messages, start=1):
        db.add(
            Message(
                thread_id=clone.id,
                role=message.role,
                content=message.content,
                model=message.model,
                sequence=index,
                cloned=True,
            )
        )
    db.commit()
    db.refresh(clone)
    return clone


__all__ = [
    "can_access_thread",
    "claim_anonymous_threads",
    "clone_thread",
    "create_message",
    "create_thread",
    "find_clone",
    "get_accessible_thread",
    "get_last_user_message",
    "get_session_stats",
    "get_thread",
    "list_thread_messages",
    "list_threads_by_ip_hash",
    "list_threads_by_session",
    "list_threads_by_user",
    "transfer_anonymous_thread",
]
