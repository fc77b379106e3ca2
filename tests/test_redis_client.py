import json

import pytest

from chatcache.redis_client import (
    decode_json,
    execute_batch,
    redis_get_json,
    redis_get_model,
    redis_mdel,
    redis_mget_json,
    redis_mset_json,
    redis_set_json,
    scan_keys,
)
from chatcache.schemas import AnonymousSession


def test_decode_json_normalises_driver_values():
    assert decode_json(None) is None
    assert decode_json('{"a": 1}') == {"a": 1}
    assert decode_json(b'[1, 2]') == [1, 2]
    assert decode_json({"already": "decoded"}) == {"already": "decoded"}
    assert decode_json("{broken") is None
    assert decode_json(b"\xff\xfe") is None
    assert decode_json(42) is None


@pytest.mark.asyncio
async def test_set_json_writes_models_with_camel_case_and_ttl(redis):
    session = AnonymousSession(
        session_id="anon_1",
        remaining_messages=10,
        created_at=1,
        last_used_at=1,
        reset_time=2,
    )

    await redis_set_json(redis, "k", session, ttl_seconds=30)

    stored = json.loads(await redis.get("k"))
    assert stored["sessionId"] == "anon_1"
    assert stored["remainingMessages"] == 10
    assert await redis.ttl("k") == 30
    loaded = await redis_get_model(redis, "k", AnonymousSession)
    assert loaded == session


@pytest.mark.asyncio
async def test_get_model_treats_wrong_shape_as_miss(redis):
    await redis.set("k", json.dumps({"sessionId": "anon_1"}))
    await redis.set("list", json.dumps([1, 2]))

    assert await redis_get_model(redis, "k", AnonymousSession) is None
    assert await redis_get_model(redis, "list", AnonymousSession) is None
    assert await redis_get_json(redis, "list") == [1, 2]


@pytest.mark.asyncio
async def test_batch_helpers(redis):
    await redis_mset_json(redis, [("a", {"v": 1}, None), ("b", [2], 10)])

    assert await redis_mget_json(redis, ["a", "b", "c"]) == [{"v": 1}, [2], None]
    await redis_mdel(redis, ["a", "b"])
    assert await redis_mget_json(redis, ["a", "b"]) == [None, None]


@pytest.mark.asyncio
async def test_execute_batch_keeps_order_and_propagates_failures(redis):
    async def value(v):
        return v

    assert await execute_batch([lambda: value(1), lambda: value(2)]) == [1, 2]
    assert await execute_batch([]) == []

    redis.failing_keys.add("bad")
    with pytest.raises(ConnectionError):
        await execute_batch([lambda: redis.get("ok"), lambda: redis.get("bad")])


@pytest.mark.asyncio
async def test_scan_keys(redis):
    await redis.set("conversation:1", "{}")
    await redis.set("conversation:2", "{}")
    await redis.set("share:x", "t")

    keys = [key async for key in scan_keys(redis, "conversation:*")]

    assert sorted(keys) == ["conversation:1", "conversation:2"]
