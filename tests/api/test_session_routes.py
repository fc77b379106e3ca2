from chatcache.models import Thread
from chatcache.settings import settings
from tests.utils import jwt_auth_headers


def test_get_session_creates_and_sets_cookie(client):
    resp = client.get("/api/session")

    assert resp.status_code == 200
    body = resp.json()
    assert body["sessionId"].startswith("anon_")
    assert body["remainingMessages"] == settings.max_messages_per_session
    assert body["isExpired"] is False
    assert client.cookies.get(settings.session_cookie_name) == body["sessionId"]
    assert "httponly" not in resp.headers["set-cookie"].lower()


def test_get_unknown_session_is_404(client):
    resp = client.get("/api/session", params={"sessionId": "anon_nope"})

    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


def test_post_session_reuses_cookie_session(client):
    created = client.get("/api/session").json()

    resp = client.post("/api/session", json={})

    assert resp.status_code == 200
    assert resp.json()["sessionId"] == created["sessionId"]


def test_merge_validation_and_result(client):
    source = client.post("/api/session", json={}, headers={"User-Agent": "a"}).json()
    client.cookies.clear()
    target = client.post("/api/session", json={}, headers={"User-Agent": "b"}).json()
    client.put("/api/session", json={"sessionId": source["sessionId"], "messageCount": 7})
    client.put("/api/session", json={"sessionId": target["sessionId"], "messageCount": 8})

    missing = client.post("/api/session", json={"action": "merge", "fromSessionId": "x"})
    unknown = client.post(
        "/api/session",
        json={"action": "merge", "fromSessionId": source["sessionId"], "toSessionId": "anon_gone"},
    )
    merged = client.post(
        "/api/session",
        json={
            "action": "merge",
            "fromSessionId": source["sessionId"],
            "toSessionId": target["sessionId"],
        },
    )

    assert missing.status_code == 400
    assert unknown.status_code == 404
    assert merged.status_code == 200
    assert merged.json()["messageCount"] == 10
    assert merged.json()["remainingMessages"] == 0
    gone = client.get("/api/session", params={"sessionId": source["sessionId"]})
    assert gone.status_code == 404


def test_put_and_delete_session(client):
    session = client.get("/api/session").json()

    updated = client.put(
        "/api/session", json={"sessionId": session["sessionId"], "messageCount": 3}
    )
    no_id = client.delete("/api/session")
    deleted = client.delete("/api/session", params={"sessionId": session["sessionId"]})

    assert updated.json()["remainingMessages"] == settings.max_messages_per_session - 3
    assert no_id.status_code == 400
    assert deleted.json() == {"message": "Session deleted"}
    assert client.get("/api/session", params={"sessionId": session["sessionId"]}).status_code == 404


def test_session_stats_reflect_store(client):
    client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    session_id = client.cookies.get(settings.session_cookie_name)

    stats = client.get("/api/session/stats", params={"sessionId": session_id})

    assert stats.status_code == 200
    assert stats.json() == {
        "sessionId": session_id,
        "threadCount": 1,
        "messageCount": 1,
        "remainingMessages": settings.max_messages_per_session - 1,
    }


def test_claim_requires_authentication_and_is_idempotent(client, app):
    turn = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]}).json()
    session_id = turn["sessionId"]

    anonymous = client.post("/api/session/claim", json={"sessionId": session_id})
    first = client.post(
        "/api/session/claim", json={"sessionId": session_id}, headers=jwt_auth_headers("user-1")
    )
    second = client.post(
        "/api/session/claim", json={"sessionId": session_id}, headers=jwt_auth_headers("user-1")
    )
    other = client.post(
        "/api/session/claim", json={"sessionId": session_id}, headers=jwt_auth_headers("user-2")
    )

    assert anonymous.status_code == 401
    assert first.json()["status"] == "claimed"
    assert first.json()["threadIds"] == [turn["threadId"]]
    assert second.json()["status"] == "already_claimed"
    assert other.status_code == 409

    with app.state.session_factory() as db:
        thread = db.get(Thread, turn["threadId"])
        assert thread.user_id == "user-1"
        assert thread.session_id == session_id


def test_user_ids_are_rejected_as_session_ids(client, monkeypatch):
    monkeypatch.setattr(settings, "user_max_requests", 2)
    headers = jwt_auth_headers("u1")

    def send():
        return client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "content": "hi"}]},
            headers=headers,
        ).status_code

    assert [send(), send(), send()] == [200, 200, 429]

    deleted = client.delete("/api/session", params={"sessionId": "user:u1"})
    claimed = client.post(
        "/api/session/claim", json={"sessionId": "user:u1"}, headers=jwt_auth_headers("u2")
    )

    assert deleted.status_code == 400
    assert claimed.status_code == 400
    assert claimed.json()["detail"]["error"] == "bad_request"
    assert send() == 429


def test_malformed_session_header_gets_a_fresh_session(client):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"X-Session-ID": "user:u1"},
    )

    assert resp.status_code == 200
    assert resp.json()["sessionId"].startswith("anon_")
