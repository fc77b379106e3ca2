from __future__ import annotations

import fnmatch
import time

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chatcache.auth import create_access_token
from chatcache.db import get_db_session
from chatcache.deps import get_db, get_redis
from chatcache.models import Base


def make_inmemory_sessionmaker() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def install_inmemory_db(app) -> sessionmaker[Session]:
    """
    Attach an in-memory SQLite database and an in-memory Redis to the app.
    The Redis fake is reachable as `app.state._test_redis`.
    """
    SessionLocal = make_inmemory_sessionmaker()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_db_session] = override_get_db

    redis = InMemoryRedis()
    app.state._test_redis = redis

    async def override_get_redis():
        return redis

    app.dependency_overrides[get_redis] = override_get_redis
    return SessionLocal


def jwt_auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


class InMemoryRedis:
    """
    Just enough of redis.asyncio.Redis (decode_responses=True) for the
    cache layer. TTLs are honoured against a clock that tests can move
    with `advance()`. Keys listed in `failing_keys` raise on read.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._expires_at: dict[str, float] = {}
        self._offset = 0.0
        self.failing_keys: set[str] = set()

    def now(self) -> float:
        return time.time() + self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds

    def _purge(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self.now():
            self._data.pop(key, None)
            self._sets.pop(key, None)
            self._expires_at.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._data or key in self._sets

    async def get(self, key: str):
        if key in self.failing_keys:
            raise ConnectionError(f"simulated failure reading {key}")
        self._purge(key)
        return self._data.get(key)

    async def set(self, key: str, value, ex: int | None = None, nx: bool = False):
        if nx and self._exists(key):
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires_at[key] = self.now() + ex
        else:
            self._expires_at.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._purge(key)
        current = int(self._data.get(key, 0)) + 1
        self._data[key] = str(current)
        return current

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._exists(key):
            return False
        self._expires_at[key] = self.now() + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._exists(key):
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return int(round(deadline - self.now()))

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._exists(key))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self._data.pop(key, None)
            self._sets.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        self._purge(key)
        bucket = self._sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(str(member) for member in members)
        return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        self._purge(key)
        bucket = self._sets.get(key)
        if not bucket:
            return 0
        removed = 0
        for member in members:
            if member in bucket:
                bucket.discard(member)
                removed += 1
        if not bucket:
            self._sets.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def smembers(self, key: str) -> set[str]:
        self._purge(key)
        return set(self._sets.get(key, set()))

    async def keys(self, pattern: str) -> list[str]:
        candidates = list(self._data) + list(self._sets)
        return [
            key
            for key in candidates
            if self._exists(key) and fnmatch.fnmatch(key, pattern)
        ]

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in await self.keys(match or "*"):
            yield key
