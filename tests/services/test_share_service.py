import uuid

import pytest

from chatcache.exceptions import InvalidShareToken, OperationInProgress, ShareLinkNotFound
from chatcache.services import share_service, thread_service
from chatcache.services.lease import acquire_lease


@pytest.mark.asyncio
async def test_share_token_lifecycle(redis):
    token = await share_service.create_share_token(redis, "thread-1", ttl_seconds=100)

    assert share_service.is_valid_share_token(token)
    assert await share_service.validate_share_token(redis, token) == "thread-1"
    assert await share_service.extend_share_token(redis, token, ttl_seconds=500)
    assert await redis.ttl(share_service.share_key(token)) == 500
    assert await share_service.revoke_share_token(redis, token)
    assert await share_service.validate_share_token(redis, token) is None
    assert await share_service.validate_share_token(redis, "not-a-uuid") is None


@pytest.mark.asyncio
async def test_clone_happens_once_per_user(redis, db):
    source = thread_service.create_thread(db, user_id="owner")
    thread_service.create_message(db, thread_id=source.id, role="user", content="q")
    token = await share_service.create_share_token(redis, source.id)

    first, created = await share_service.clone_shared_thread(redis, db, token=token, user_id="u1")
    second, created_again = await share_service.clone_shared_thread(
        redis, db, token=token, user_id="u1"
    )

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert len(thread_service.list_threads_by_user(db, "u1")) == 1


@pytest.mark.asyncio
async def test_clone_in_flight_is_rejected(redis, db):
    source = thread_service.create_thread(db, user_id="owner")
    token = await share_service.create_share_token(redis, source.id)
    await acquire_lease(redis, f"clone:u1:{token}")

    with pytest.raises(OperationInProgress):
        await share_service.clone_shared_thread(redis, db, token=token, user_id="u1")


@pytest.mark.asyncio
async def test_clone_rejects_bad_tokens(redis, db):
    with pytest.raises(InvalidShareToken):
        await share_service.clone_shared_thread(redis, db, token="abc", user_id="u1")
    with pytest.raises(ShareLinkNotFound):
        await share_service.clone_shared_thread(
            redis, db, token=str(uuid.uuid4()), user_id="u1"
        )
