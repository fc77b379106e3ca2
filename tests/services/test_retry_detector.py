from sqlalchemy.exc import OperationalError

from chatcache.schemas import ChatMessageIn
from chatcache.services import retry_detector, thread_service
from chatcache.services.retry_detector import detect_retry_operation


def _user(content: str) -> ChatMessageIn:
    return ChatMessageIn(role="user", content=content)


def test_new_thread_must_save(db):
    result = detect_retry_operation(db, [_user("hello")], None)

    assert result.is_retry_operation is False
    assert result.should_save_user_message is True


def test_same_content_as_last_persisted_user_message_is_retry(db):
    thread = thread_service.create_thread(db, session_id="anon_s")
    thread_service.create_message(db, thread_id=thread.id, role="user", content="A")
    thread_service.create_message(db, thread_id=thread.id, role="assistant", content="reply")
    thread_service.create_message(db, thread_id=thread.id, role="user", content="B")

    retry = detect_retry_operation(
        db,
        [_user("A"), ChatMessageIn(role="assistant", content="reply"), _user("B")],
        thread.id,
    )
    fresh = detect_retry_operation(db, [_user("A"), _user("C")], thread.id)

    assert (retry.is_retry_operation, retry.should_save_user_message) == (True, False)
    assert (fresh.is_retry_operation, fresh.should_save_user_message) == (False, True)


def test_thread_without_user_messages_saves(db):
    thread = thread_service.create_thread(db, user_id="u1")

    result = detect_retry_operation(db, [_user("first")], thread.id)

    assert result.should_save_user_message is True


def test_no_inbound_user_message_saves_nothing(db):
    thread = thread_service.create_thread(db, user_id="u1")

    result = detect_retry_operation(
        db, [ChatMessageIn(role="assistant", content="x")], thread.id
    )

    assert (result.is_retry_operation, result.should_save_user_message) == (False, False)


def test_store_error_fails_open(db, monkeypatch):
    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(retry_detector.thread_service, "get_last_user_message", boom)

    result = detect_retry_operation(db, [_user("hello")], "t1")

    assert result.should_save_user_message is True
    assert result.is_retry_operation is False
    assert result.error
