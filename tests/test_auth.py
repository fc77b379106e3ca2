import pytest
from fastapi import HTTPException
from jose import jwt

from chatcache.auth import create_access_token, get_optional_user, require_user
from chatcache.settings import settings


@pytest.mark.asyncio
async def test_require_user_uses_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "auth_jwt_secret", "custom-secret")
    token = jwt.encode({"sub": "user-1", "email": "a@example.com"}, "custom-secret", algorithm="HS256")

    user = await require_user(authorization=f"Bearer {token}")

    assert user.id == "user-1"
    assert user.email == "a@example.com"


@pytest.mark.asyncio
async def test_optional_user_is_none_without_header():
    assert await get_optional_user(authorization=None) is None


@pytest.mark.asyncio
async def test_invalid_tokens_are_rejected():
    forged = jwt.encode({"sub": "user-1"}, "another-secret", algorithm="HS256")
    no_subject = create_access_token("")

    for header in (f"Bearer {forged}", "Basic abc", f"Bearer {no_subject}"):
        with pytest.raises(HTTPException) as exc_info:
            await get_optional_user(authorization=header)
        assert exc_info.value.status_code == 401

    with pytest.raises(HTTPException) as missing:
        await require_user(authorization=None)
    assert missing.value.status_code == 401
    assert missing.value.headers["WWW-Authenticate"] == "Bearer"
