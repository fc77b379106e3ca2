import json

import pytest

from chatcache.schemas import ConversationContext, ConversationMessage
from chatcache.services import thread_service
from chatcache.services.context_cache import (
    ConversationContextCache,
    context_key,
    format_context,
    now_ms,
)
from chatcache.settings import settings


def _msg(i: int, role: str = "user", content: str | None = None) -> ConversationMessage:
    return ConversationMessage(role=role, content=content or f"message {i}", timestamp=i)


@pytest.mark.asyncio
async def test_append_creates_context_with_default_model(redis):
    cache = ConversationContextCache(redis)

    context = await cache.append_message("t1", _msg(1), session_id="anon_x")

    assert context.model == settings.default_model
    assert context.session_id == "anon_x"
    assert context.message_count == 1
    assert await redis.ttl(context_key("t1")) == 7200


@pytest.mark.asyncio
async def test_window_is_bounded_and_keeps_newest(redis):
    cache = ConversationContextCache(redis)
    for i in range(15):
        await cache.append_message("t1", _msg(i))

    context = await cache.get_context("t1")

    assert context is not None
    assert len(context.messages) == 10
    assert context.message_count == 10
    assert [m.content for m in context.messages] == [f"message {i}" for i in range(5, 15)]


@pytest.mark.asyncio
async def test_set_context_truncates_oversized_input(redis):
    cache = ConversationContextCache(redis, max_messages=3)
    context = ConversationContext(
        thread_id="t2",
        messages=[_msg(i) for i in range(5)],
        model="m",
        last_updated=1,
        message_count=5,
    )

    await cache.set_context(context)
    stored = await cache.get_context("t2")

    assert stored.message_count == 3
    assert [m.timestamp for m in stored.messages] == [2, 3, 4]


@pytest.mark.asyncio
async def test_get_recent_messages(redis):
    cache = ConversationContextCache(redis)
    assert await cache.get_recent_messages("missing") == []
    for i in range(4):
        await cache.append_message("t1", _msg(i))

    recent = await cache.get_recent_messages("t1", limit=2)

    assert [m.timestamp for m in recent] == [2, 3]


@pytest.mark.asyncio
async def test_update_metadata_merges_only_given_fields(redis):
    cache = ConversationContextCache(redis)
    assert await cache.update_metadata("missing", user_id="u1") is False

    await cache.append_message("t1", _msg(1), session_id="anon_s")
    assert await cache.update_metadata("t1", user_id="u1") is True

    context = await cache.get_context("t1")
    assert context.user_id == "u1"
    assert context.session_id == "anon_s"
    assert len(context.messages) == 1


@pytest.mark.asyncio
async def test_summary_previews_are_truncated(redis):
    cache = ConversationContextCache(redis)
    assert await cache.get_context_summary("missing") is None
    await cache.append_message("t1", _msg(1, content="short"))
    await cache.append_message("t1", _msg(2, content="x" * 150))

    summary = await cache.get_context_summary("t1")

    assert summary.has_messages is True
    assert summary.message_count == 2
    previews = [p.content_preview for p in summary.recent_message_preview]
    assert previews == ["short", "x" * 100 + "..."]


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss(redis):
    cache = ConversationContextCache(redis)
    await redis.set(context_key("bad"), "{not json")
    await redis.set(context_key("shape"), json.dumps({"threadId": "shape"}))

    assert await cache.get_context("bad") is None
    assert await cache.get_context("shape") is None

    context = await cache.append_message("bad", _msg(1))
    assert context.message_count == 1


@pytest.mark.asyncio
async def test_clear_context(redis):
    cache = ConversationContextCache(redis)
    await cache.append_message("t1", _msg(1))
    await cache.clear_context("t1")
    assert await cache.get_context("t1") is None


@pytest.mark.asyncio
async def test_get_multiple_contexts_falls_back_per_key(redis):
    cache = ConversationContextCache(redis)
    await cache.append_message("a", _msg(1))
    await cache.append_message("b", _msg(2))
    redis.failing_keys.add(context_key("b"))

    results = await cache.get_multiple_contexts(["a", "b", "c"])

    assert results["a"] is not None and results["a"].thread_id == "a"
    assert results["b"] is None
    assert results["c"] is None


@pytest.mark.asyncio
async def test_get_multiple_contexts_batch(redis):
    cache = ConversationContextCache(redis)
    await cache.append_message("a", _msg(1))

    results = await cache.get_multiple_contexts(["a", "z"])

    assert set(results) == {"a", "z"}
    assert results["a"].messages[0].timestamp == 1
    assert results["z"] is None


@pytest.mark.asyncio
async def test_cleanup_removes_stale_and_corrupt_entries(redis):
    cache = ConversationContextCache(redis)
    await cache.append_message("fresh", _msg(1))
    stale = ConversationContext(
        thread_id="stale",
        messages=[],
        model="m",
        last_updated=now_ms() - 8 * 24 * 60 * 60 * 1000,
    )
    await cache.set_context(stale)
    await redis.set(context_key("corrupt"), "???")

    deleted = await cache.cleanup_old_contexts(older_than_days=7)

    assert deleted == 2
    assert await cache.get_context("fresh") is not None
    assert await redis.get(context_key("stale")) is None
    assert await redis.get(context_key("corrupt")) is None


@pytest.mark.asyncio
async def test_cleanup_reports_deletions_made_before_a_store_error(redis):
    cache = ConversationContextCache(redis)
    await redis.set(context_key("corrupt"), "???")
    await redis.set(context_key("unreadable"), "{}")
    redis.failing_keys.add(context_key("unreadable"))

    deleted = await cache.cleanup_old_contexts(older_than_days=7)

    assert deleted == 1
    assert await redis.exists(context_key("corrupt")) == 0


@pytest.mark.asyncio
async def test_load_context_rebuilds_from_store(redis, db):
    cache = ConversationContextCache(redis)
    thread = thread_service.create_thread(db, session_id="anon_s", model="m-1")
    for i in range(12):
        role = "user" if i % 2 == 0 else "assistant"
        thread_service.create_message(db, thread_id=thread.id, role=role, content=f"c{i}")

    rebuilt = await cache.load_context(db, thread.id)
    await cache.clear_context(thread.id)
    again = await cache.load_context(db, thread.id)

    assert [m.content for m in rebuilt.messages] == [f"c{i}" for i in range(2, 12)]
    assert [m.content for m in again.messages] == [m.content for m in rebuilt.messages]
    assert again.session_id == "anon_s"
    assert await cache.get_context(thread.id) is not None
    assert await cache.load_context(db, "no-such-thread") is None


def test_format_context_keeps_newest_messages_within_budget():
    context = ConversationContext(
        thread_id="t",
        messages=[
            ConversationMessage(role="user", content="a" * 40, timestamp=1),
            ConversationMessage(role="assistant", content="b" * 40, timestamp=2),
            ConversationMessage(role="user", content="c" * 40, timestamp=3),
        ],
        model="m",
        last_updated=3,
        message_count=3,
    )

    formatted = format_context(context, max_tokens=25, system_prompt="s" * 8)

    assert [m.role for m in formatted.messages] == ["system", "assistant", "user"]
    assert formatted.metadata.included_messages == 2
    assert formatted.metadata.estimated_tokens == 22

    bare = format_context(context, max_tokens=1000, include_system_prompt=False)
    assert [m.content[0] for m in bare.messages] == ["a", "b", "c"]
    assert bare.metadata.estimated_tokens == 30
