"""
Decide whether an inbound user turn has to be persisted.

A client that retries (network hiccup, regenerate, resumed stream) sends
the same last user message again. Comparing its content with the last
persisted user message keeps the turn from being stored twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..logging_config import logger
from ..schemas import ChatMessageIn
from . import thread_service


@dataclass(frozen=True)
class RetryDetectionResult:
    is_retry_operation: bool
    should_save_user_message: bool
    error: Optional[str] = None


def last_user_message(messages: Sequence[ChatMessageIn]) -> Optional[ChatMessageIn]:
    for message in reversed(messages):
        if message.role == "user":
            return message
    return None


def detect_retry_operation(
    db: Session,
    messages: Sequence[ChatMessageIn],
    thread_id: Optional[str],
) -> RetryDetectionResult:
    if not thread_id:
        return RetryDetectionResult(is_retry_operation=False, should_save_user_message=True)

    inbound = last_user_message(messages)
    if inbound is None:
        return RetryDetectionResult(is_retry_operation=False, should_save_user_message=False)

    try:
        persisted = thread_service.get_last_user_message(db, thread_id)
    except SQLAlchemyError as exc:
        # Fail open.
        logger.warning("Retry detection failed for thread %s: %s", thread_id, exc)
        db.rollback()
        return RetryDetectionResult(
            is_retry_operation=False,
            should_save_user_message=True,
            error=str(exc),
        )

    if persisted is not None and persisted.content == inbound.content:
        logger.info("Detected retried user turn on thread %s", thread_id)
        return RetryDetectionResult(is_retry_operation=True, should_save_user_message=False)

    return RetryDetectionResult(is_retry_operation=False, should_save_user_message=True)


__all__ = ["RetryDetectionResult", "detect_retry_operation", "last_user_message"]
