"""
Bearer-token identity issued by the managed auth provider.

Tokens are HS256 JWTs whose `sub` claim is the user id. Anonymous-capable
routes use `get_optional_user`; the rest use `require_user`.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Header
from jose import JWTError, jwt

from .errors import unauthorized
from .settings import settings


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def verify_token(token: str) -> Dict[str, Any]:
    """
    Decode and verify an access token.

    Raises:
        JWTError: signature, expiry or shape is invalid
    """
    return jwt.decode(
        token,
        settings.auth_jwt_secret,
        algorithms=[settings.auth_jwt_algorithm],
        options={"verify_aud": False},
    )


def create_access_token(user_id: str, **claims: Any) -> str:
    """
    Issue a token the way the auth provider does. Used by local tooling and tests.
    """
    payload = {"sub": user_id, **claims}
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def _get_token_from_header(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise unauthorized("Invalid Authorization header, expected 'Bearer <token>'")
    return token.strip()


def _user_from_token(token: str) -> AuthenticatedUser:
    try:
        payload = verify_token(token)
    except JWTError:
        raise unauthorized("Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise unauthorized("Invalid token payload")
    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthenticatedUser]:
    """
    Identity of the caller when a bearer token is present, else None.
    A malformed or invalid token is still rejected with 401.
    """
    token = _get_token_from_header(authorization)
    if token is None:
        return None
    return _user_from_token(token)


async def require_user(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    token = _get_token_from_header(authorization)
    if token is None:
        raise unauthorized("Missing Authorization header")
    return _user_from_token(token)


__all__ = [
    "AuthenticatedUser",
    "create_access_token",
    "get_optional_user",
    "require_user",
    "verify_token",
]
