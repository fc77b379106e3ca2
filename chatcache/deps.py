from collections.abc import Iterator
from typing import Optional

from fastapi import Cookie, Header, Query, Request, Response
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .db import get_db_session
from .redis_client import get_redis_client
from .services.session_manager import is_valid_session_id
from .settings import settings


async def get_redis() -> Redis:
    """
    FastAPI dependency that provides the shared Redis client.

    Tests override this dependency with an in-memory implementation.
    """
    return get_redis_client()


def get_db() -> Iterator[Session]:
    """
    Provide a synchronous SQLAlchemy session.
    """
    yield from get_db_session()


def get_client_ip(request: Request) -> str:
    """
    Best-effort client address: first X-Forwarded-For hop, then X-Real-IP,
    then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def get_session_id(
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
    session_cookie: Optional[str] = Cookie(None, alias=settings.session_cookie_name),
    session_id: Optional[str] = Query(None, alias="sessionId"),
) -> Optional[str]:
    """
    Anonymous session id from header, cookie or query string, in that order.
    Values that are not `anon_<uuid4>` ids are ignored.
    """
    for candidate in (x_session_id, session_cookie, session_id):
        if candidate and is_valid_session_id(candidate.strip()):
            return candidate.strip()
    return None


def set_session_cookie(response: Response, session_id: str) -> None:
    """
    Refresh the anonymous session cookie. Client scripts read it, so it is
    not HttpOnly.
    """
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=settings.session_ttl_seconds,
        httponly=False,
        samesite="lax",
        secure=settings.environment == "production",
        path="/",
    )


__all__ = [
    "get_client_ip",
    "get_db",
    "get_redis",
    "get_session_id",
    "get_user_agent",
    "set_session_cookie",
]
