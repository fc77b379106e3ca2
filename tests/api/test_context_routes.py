from chatcache.settings import settings
from tests.utils import jwt_auth_headers


def _start_thread(client, content="hello there", **kwargs):
    resp = client.post(
        "/api/chat", json={"messages": [{"role": "user", "content": content}]}, **kwargs
    )
    assert resp.status_code == 200
    return resp.json()["threadId"]


def test_cache_message_roundtrip(client):
    posted = client.post(
        "/api/cache/messages",
        json={"threadId": "t-free", "message": {"role": "user", "content": "hi"}},
    )
    summary = client.get("/api/cache/messages", params={"threadId": "t-free"})
    empty = client.get("/api/cache/messages", params={"threadId": "t-none"})

    assert posted.status_code == 200
    assert posted.json()["success"] is True
    assert posted.json()["cached"] is True
    assert isinstance(posted.json()["timestamp"], str)
    assert summary.json()["data"]["messageCount"] == 1
    assert summary.json()["data"]["recentMessagePreview"][0]["contentPreview"] == "hi"
    assert empty.json() == {"data": None}
    assert client.get("/api/cache/messages").status_code == 400


def test_cache_message_into_foreign_thread_is_denied(client):
    thread_id = _start_thread(client, headers=jwt_auth_headers("user-1"))

    resp = client.post(
        "/api/cache/messages",
        json={"threadId": thread_id, "message": {"role": "user", "content": "sneaky"}},
    )

    assert resp.status_code == 403


def test_get_context_operations(client):
    thread_id = _start_thread(client)

    context = client.get("/api/conversation-context", params={"threadId": thread_id})
    summary = client.get(
        "/api/conversation-context", params={"threadId": thread_id, "operation": "summary"}
    )
    missing = client.get("/api/conversation-context", params={"threadId": "missing"})

    body = context.json()
    assert body["meta"]["operation"] == "context"
    assert body["data"]["messages"][0] == {"role": "system", "content": settings.system_prompt}
    assert body["data"]["messages"][-1]["content"] == "hello there"
    assert body["data"]["metadata"]["includedMessages"] == 1
    assert summary.json()["data"]["hasMessages"] is True
    assert missing.status_code == 404


def test_get_context_is_rate_limited(client, monkeypatch):
    thread_id = _start_thread(client)
    monkeypatch.setattr(settings, "context_api_max_requests", 1)

    ok = client.get("/api/conversation-context", params={"threadId": thread_id})
    limited = client.get("/api/conversation-context", params={"threadId": thread_id})

    assert ok.status_code == 200
    assert limited.status_code == 429


def test_batch_contexts_for_signed_in_user(client):
    headers = jwt_auth_headers("user-1")
    mine = _start_thread(client, headers=headers)
    theirs = _start_thread(client, "not yours", headers=jwt_auth_headers("user-2"))

    anonymous = client.post("/api/conversation-context", json={"threadIds": [mine]})
    too_many = client.post(
        "/api/conversation-context",
        json={"threadIds": [f"t{i}" for i in range(11)]},
        headers=headers,
    )
    batch = client.post(
        "/api/conversation-context",
        json={"threadIds": [mine, theirs, "unknown"], "operation": "summary"},
        headers=headers,
    )

    assert anonymous.status_code == 401
    assert too_many.status_code == 400
    data = batch.json()["data"]
    assert data[mine]["threadId"] == mine
    assert data[theirs] is None
    assert data["unknown"] is None
    assert batch.json()["meta"]["found"] == 1


def test_head_probe(client):
    assert client.head("/api/conversation-context").status_code == 200
    assert client.get("/health").json() == {"status": "ok"}
