"""
Rolling window of the most recent messages of every thread.

A context lives under `conversation:{threadId}` for two hours and never
holds more than `max_messages` entries; older ones are dropped first. The
cache is disposable: `load_context` rebuilds a missing entry from the
durable store, and every read treats a corrupt entry as a miss.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..logging_config import logger
from ..redis_client import (
    redis_delete,
    redis_get_json,
    redis_get_model,
    redis_mget_json,
    redis_set_json,
    scan_keys,
)
from ..schemas import (
    ContextSummary,
    ConversationContext,
    ConversationMessage,
    FormattedContext,
    FormattedContextMetadata,
    FormattedMessage,
    MessagePreview,
)
from ..settings import settings
from . import thread_service

CONTEXT_KEY_PREFIX = "conversation:"
PREVIEW_MESSAGES = 3
PREVIEW_CHARS = 100
CHARS_PER_TOKEN = 4


def context_key(thread_id: str) -> str:
    return f"{CONTEXT_KEY_PREFIX}{thread_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _preview(content: str) -> str:
    if len(content) <= PREVIEW_CHARS:
        return content
    return content[:PREVIEW_CHARS] + "..."


class ConversationContextCache:
    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int | None = None,
        max_messages: int | None = None,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.context_ttl_seconds
        self.max_messages = max_messages or settings.context_max_messages

    def _validate(self, data) -> Optional[ConversationContext]:
        if not isinstance(data, dict):
            return None
        try:
            return ConversationContext.model_validate(data)
        except ValueError:
            return None

    async def get_context(self, thread_id: str) -> Optional[ConversationContext]:
        return await redis_get_model(self.redis, context_key(thread_id), ConversationContext)

    async def set_context(self, context: ConversationContext) -> None:
        messages = context.messages[-self.max_messages:]
        stored = context.model_copy(
            update={"messages": messages, "message_count": len(messages)}
        )
        await redis_set_json(
            self.redis, context_key(context.thread_id), stored, ttl_seconds=self.ttl_seconds
        )

    async def append_message(
        self,
        thread_id: str,
        message: ConversationMessage,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ConversationContext:
        """
        Add a message to the thread's window, creating the context when it
        does not exist yet. Refreshes the TTL.
        """
        current = now_ms()
        context = await self.get_context(thread_id)
        if context is None:
            context = ConversationContext(
                thread_id=thread_id,
                messages=[message],
                model=message.model or settings.default_model,
                user_id=user_id,
                session_id=session_id,
                last_updated=current,
                message_count=1,
            )
        else:
            messages = [*context.messages, message][-self.max_messages:]
            context = context.model_copy(
                update={
                    "messages": messages,
                    "message_count": len(messages),
                    "last_updated": current,
                    "user_id": context.user_id or user_id,
                    "session_id": context.session_id or session_id,
                }
            )
        await self.set_context(context)
        return context

    async def get_recent_messages(
        self, thread_id: str, limit: int = 20
    ) -> List[ConversationMessage]:
        context = await self.get_context(thread_id)
        if context is None or limit <= 0:
            return []
        return context.messages[-limit:]

    async def update_metadata(
        self,
        thread_id: str,
        *,
        model: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> bool:
        """
        Merge the given fields into an existing context; messages are kept.
        Returns False when the thread has no cached context.
        """
        context = await self.get_context(thread_id)
        if context is None:
            return False
        updates = {
            field: value
            for field, value in (
                ("model", model),
                ("user_id", user_id),
                ("session_id", session_id),
            )
            if value is not None
        }
        updates["last_updated"] = now_ms()
        await self.set_context(context.model_copy(update=updates))
        return True

    async def clear_context(self, thread_id: str) -> None:
        await redis_delete(self.redis, context_key(thread_id))

    async def get_context_summary(self, thread_id: str) -> Optional[ContextSummary]:
        context = await self.get_context(thread_id)
        if context is None:
            return None
        previews = [
            MessagePreview(
                role=message.role,
                content_preview=_preview(message.content),
                timestamp=message.timestamp,
            )
            for message in context.messages[-PREVIEW_MESSAGES:]
        ]
        return ContextSummary(
            thread_id=context.thread_id,
            message_count=context.message_count,
            model=context.model,
            last_updated=context.last_updated,
            has_messages=bool(context.messages),
            recent_message_preview=previews,
        )

    async def get_multiple_contexts(
        self, thread_ids: Sequence[str]
    ) -> Dict[str, Optional[ConversationContext]]:
        """
        Batched read. If the batch fails as a whole, fall back to one read
        per thread; a thread whose read fails maps to None.
        """
        if not thread_ids:
            return {}
        keys = [context_key(thread_id) for thread_id in thread_ids]
        try:
            values = await redis_mget_json(self.redis, keys)
        except Exception:
            logger.warning(
                "Batch context read failed for %d threads; reading one by one",
                len(thread_ids),
                exc_info=True,
            )
            results: Dict[str, Optional[ConversationContext]] = {}
            for thread_id in thread_ids:
                try:
                    results[thread_id] = await self.get_context(thread_id)
                except Exception:
                    logger.warning("Context read failed for thread %s", thread_id)
                    results[thread_id] = None
            return results

        return {
            thread_id: self._validate(value)
            for thread_id, value in zip(thread_ids, values)
        }

    async def cleanup_old_contexts(self, older_than_days: int = 7) -> int:
        """
        Delete contexts not updated for `older_than_days`, and any entry that
        no longer parses. Walks the keyspace, so run it from maintenance
        jobs only. Returns the number of deleted keys; a store error stops
        the walk and the keys deleted so far are still reported.
        """
        cutoff = now_ms() - older_than_days * 24 * 60 * 60 * 1000
        deleted = 0
        try:
            async for key in scan_keys(self.redis, f"{CONTEXT_KEY_PREFIX}*"):
                data = await redis_get_json(self.redis, key)
                last_updated = data.get("lastUpdated") if isinstance(data, dict) else None
                if isinstance(last_updated, (int, float)) and last_updated >= cutoff:
                    continue
                await redis_delete(self.redis, key)
                deleted += 1
        except Exception:
            logger.exception("Context cleanup aborted after %d deletions", deleted)
            return deleted
        logger.info("Context cleanup removed %d entries", deleted)
        return deleted

    async def load_context(
        self, db: Session, thread_id: str
    ) -> Optional[ConversationContext]:
        """
        Cached context of a thread, rebuilt from the durable store on a miss.
        Returns None when the thread does not exist.
        """
        context = await self.get_context(thread_id)
        if context is not None:
            return context

        thread = thread_service.get_thread(db, thread_id)
        if thread is None:
            return None
        rows = thread_service.list_thread_messages(db, thread_id, limit=self.max_messages)
        messages = [
            ConversationMessage(
                role=row.role,
                content=row.content,
                timestamp=_epoch_ms(row.created_at),
                model=row.model,
                message_id=row.id,
            )
            for row in rows
        ]
        context = ConversationContext(
            thread_id=thread_id,
            messages=messages,
            model=thread.model or settings.default_model,
            user_id=thread.user_id,
            session_id=thread.session_id,
            last_updated=now_ms(),
            message_count=len(messages),
        )
        try:
            await self.set_context(context)
        except Exception:
            logger.warning("Could not seed context cache for thread %s", thread_id, exc_info=True)
        return context


def format_context(
    context: ConversationContext,
    *,
    max_tokens: int | None = None,
    include_system_prompt: bool = True,
    system_prompt: str | None = None,
) -> FormattedContext:
    """
    Build the LLM-ready message list: the system prompt first, then the
    newest messages that fit into `max_tokens`, oldest first.
    """
    budget = max_tokens if max_tokens is not None else settings.context_max_tokens
    prompt = system_prompt if system_prompt is not None else settings.system_prompt

    formatted: List[FormattedMessage] = []
    used = 0
    if include_system_prompt and prompt:
        formatted.append(FormattedMessage(role="system", content=prompt))
        used += estimate_tokens(prompt)

    selected: List[FormattedMessage] = []
    for message in reversed(context.messages):
        cost = estimate_tokens(message.content)
        if used + cost > budget:
            break
        selected.append(FormattedMessage(role=message.role, content=message.content))
        used += cost
    selected.reverse()
    formatted.extend(selected)

    return FormattedContext(
        messages=formatted,
        metadata=FormattedContextMetadata(
            thread_id=context.thread_id,
            total_messages=len(context.messages),
            included_messages=len(selected),
            estimated_tokens=used,
            last_updated=context.last_updated,
            model=context.model,
        ),
    )


__all__ = [
    "CONTEXT_KEY_PREFIX",
    "ConversationContextCache",
    "context_key",
    "estimate_tokens",
    "format_context",
    "now_ms",
]
