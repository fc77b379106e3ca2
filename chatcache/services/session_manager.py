"""
Anonymous session lifecycle: issue, validate, recover, budget, merge, claim.

A session moves NEW -> ACTIVE -> (EXPIRED | CLAIMED):

- `anon_session:{sessionId}` holds the record; every read slides its TTL.
- `anon_lookup:{ipHash}:{uaHash}` and `anon_lookup:fp:{fingerprintHash}`
  point back to the session so a visitor who lost the cookie recovers it.
- `anon_claimed:{sessionId}` marks a session whose threads now belong to a
  user; such a session is never served again.

Only hashes of the client address, user agent and fingerprint are stored.
"""

from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from typing import List, Optional

from redis.asyncio import Redis
from sqlalchemy.orm import Session

from ..exceptions import InvalidSessionId, LimitExceeded
from ..logging_config import logger
from ..redis_client import redis_get_model, redis_set_json
from ..schemas import AnonymousSession, ClaimRecord, ClaimResult
from ..settings import settings
from . import thread_service
from .context_cache import ConversationContextCache
from .lease import acquire_lease, release_lease
from .session_data import (
    delete_all_session_data,
    merge_rate_limit_data,
    transfer_session_data,
)

SESSION_KEY_PREFIX = "anon_session:"
LOOKUP_KEY_PREFIX = "anon_lookup:"
CLAIM_KEY_PREFIX = "anon_claimed:"
SESSION_ID_PREFIX = "anon_"
USER_AGENT_MAX_LENGTH = 200


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def lookup_key(ip_hash: str, ua_hash: str) -> str:
    return f"{LOOKUP_KEY_PREFIX}{ip_hash}:{ua_hash}"


def fingerprint_lookup_key(fingerprint_hash: str) -> str:
    return f"{LOOKUP_KEY_PREFIX}fp:{fingerprint_hash}"


def claim_key(session_id: str) -> str:
    return f"{CLAIM_KEY_PREFIX}{session_id}"


def user_identity(user_id: str) -> str:
    return f"user:{user_id}"


def is_valid_session_id(session_id: str | None) -> bool:
    """
    True for ids of the `anon_<uuid4>` form issued by `generate_session_id`.
    Anything else never names an anonymous session.
    """
    if not session_id or not session_id.startswith(SESSION_ID_PREFIX):
        return False
    try:
        parsed = uuid.UUID(session_id[len(SESSION_ID_PREFIX):])
    except ValueError:
        return False
    return parsed.version == 4 and session_id == f"{SESSION_ID_PREFIX}{parsed}"


def _keyed_hash(value: str) -> str:
    digest = hmac.new(
        settings.secret_key.encode("utf-8"), value.encode("utf-8"), hashlib.sha256
    )
    return digest.hexdigest()[:32]


def _now_ms() -> int:
    return int(time.time() * 1000)


class AnonymousSessionManager:
    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int | None = None,
        max_messages: int | None = None,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.session_ttl_seconds
        self.max_messages = max_messages or settings.max_messages_per_session

    @staticmethod
    def generate_session_id() -> str:
        return f"{SESSION_ID_PREFIX}{uuid.uuid4()}"

    @staticmethod
    def hash_ip(ip: str) -> str:
        return _keyed_hash(f"ip:{ip}")

    @staticmethod
    def hash_user_agent(user_agent: str) -> str:
        return _keyed_hash(f"ua:{user_agent}")

    @staticmethod
    def hash_fingerprint(fingerprint: str) -> str:
        return _keyed_hash(f"fp:{fingerprint}")

    def _lookup_keys(self, session: AnonymousSession) -> List[str]:
        keys = []
        if session.ip_hash and session.ip_hash != "unknown":
            keys.append(lookup_key(session.ip_hash, self.hash_user_agent(session.user_agent)))
        if session.fingerprint_hash:
            keys.append(fingerprint_lookup_key(session.fingerprint_hash))
        return keys

    async def _load(self, session_id: str) -> Optional[AnonymousSession]:
        return await redis_get_model(self.redis, session_key(session_id), AnonymousSession)

    async def _store(self, session: AnonymousSession, *, now: int | None = None) -> AnonymousSession:
        current = now if now is not None else _now_ms()
        stored = session.model_copy(
            update={
                "last_used_at": current,
                "reset_time": current + self.ttl_seconds * 1000,
                "is_expired": False,
            }
        )
        await redis_set_json(
            self.redis, session_key(stored.session_id), stored, ttl_seconds=self.ttl_seconds
        )
        for key in self._lookup_keys(stored):
            await self.redis.set(key, stored.session_id, ex=self.ttl_seconds)
        return stored

    async def _delete_record(self, session: AnonymousSession) -> None:
        stale_lookups = []
        for key in self._lookup_keys(session):
            pointer = await self.redis.get(key)
            if pointer == session.session_id:
                stale_lookups.append(key)
        await self.redis.delete(session_key(session.session_id), *stale_lookups)

    async def get_claim_record(self, session_id: str) -> Optional[ClaimRecord]:
        return await redis_get_model(self.redis, claim_key(session_id), ClaimRecord)

    async def create_session(
        self,
        *,
        user_agent: str | None = None,
        ip_hash: str | None = None,
        fingerprint_hash: str | None = None,
    ) -> AnonymousSession:
        current = _now_ms()
        session = AnonymousSession(
            session_id=self.generate_session_id(),
            message_count=0,
            remaining_messages=self.max_messages,
            created_at=current,
            last_used_at=current,
            reset_time=current + self.ttl_seconds * 1000,
            user_agent=(user_agent or "unknown")[:USER_AGENT_MAX_LENGTH],
            ip_hash=ip_hash or "unknown",
            fingerprint_hash=fingerprint_hash,
        )
        stored = await self._store(session, now=current)
        logger.info("Created anonymous session %s", stored.session_id)
        return stored

    async def get_session(
        self, session_id: str, *, now: int | None = None
    ) -> Optional[AnonymousSession]:
        """
        Return a live session and slide its expiry, or None.

        A claimed session is never returned. A record whose last use is
        older than the TTL is deleted on sight.
        """
        if not is_valid_session_id(session_id):
            return None
        session = await self._load(session_id)
        if session is None:
            return None
        if await self.redis.exists(claim_key(session_id)):
            return None
        current = now if now is not None else _now_ms()
        if current - session.last_used_at > self.ttl_seconds * 1000:
            logger.info("Anonymous session %s expired", session_id)
            await self._delete_record(session)
            return None
        return await self._store(session, now=current)

    async def find_session_by_fingerprint(
        self,
        *,
        ip_hash: str | None = None,
        ua_hash: str | None = None,
        fingerprint_hash: str | None = None,
    ) -> Optional[AnonymousSession]:
        """
        Recover a session through its lookup keys; the client fingerprint is
        tried before the address/user-agent pair.
        """
        candidates = []
        if fingerprint_hash:
            candidates.append(fingerprint_lookup_key(fingerprint_hash))
        if ip_hash and ip_hash != "unknown" and ua_hash:
            candidates.append(lookup_key(ip_hash, ua_hash))
        for key in candidates:
            session_id = await self.redis.get(key)
            if isinstance(session_id, bytes):
                session_id = session_id.decode("utf-8")
            if not session_id:
                continue
            session = await self.get_session(session_id)
            if session is not None:
                return session
        return None

    async def get_or_create_session(
        self,
        session_id: str | None = None,
        *,
        user_agent: str | None = None,
        ip: str | None = None,
        fingerprint: str | None = None,
    ) -> AnonymousSession:
        """
        Existing session, else a recovered one, else a new one. Unknown or
        expired ids are not an error.
        """
        if session_id:
            session = await self.get_session(session_id)
            if session is not None:
                return session

        agent = (user_agent or "unknown")[:USER_AGENT_MAX_LENGTH]
        ip_hash = self.hash_ip(ip) if ip and ip != "unknown" else None
        fingerprint_hash = self.hash_fingerprint(fingerprint) if fingerprint else None

        recovered = await self.find_session_by_fingerprint(
            ip_hash=ip_hash,
            ua_hash=self.hash_user_agent(agent) if ip_hash else None,
            fingerprint_hash=fingerprint_hash,
        )
        if recovered is not None:
            logger.info("Recovered anonymous session %s", recovered.session_id)
            return recovered

        return await self.create_session(
            user_agent=agent, ip_hash=ip_hash, fingerprint_hash=fingerprint_hash
        )

    async def update_session(self, session: AnonymousSession) -> AnonymousSession:
        return await self._store(session)

    async def increment_message_count(self, session_id: str) -> Optional[AnonymousSession]:
        """
        Spend one message of the budget.

        Raises:
            LimitExceeded: the budget is used up
        """
        session = await self.get_session(session_id)
        if session is None:
            return None
        if session.remaining_messages <= 0 or session.message_count >= self.max_messages:
            raise LimitExceeded(
                "Message limit exceeded for anonymous session",
                limit=self.max_messages,
                remaining=0,
                reset=session.reset_time // 1000,
            )
        count = session.message_count + 1
        return await self._store(
            session.model_copy(
                update={
                    "message_count": count,
                    "remaining_messages": max(0, self.max_messages - count),
                }
            )
        )

    async def set_message_count(
        self, session_id: str, message_count: int
    ) -> Optional[AnonymousSession]:
        session = await self.get_session(session_id)
        if session is None:
            return None
        count = min(max(0, message_count), self.max_messages)
        return await self._store(
            session.model_copy(
                update={
                    "message_count": count,
                    "remaining_messages": self.max_messages - count,
                }
            )
        )

    async def merge_sessions(
        self, from_session_id: str, to_session_id: str
    ) -> Optional[AnonymousSession]:
        """
        Fold `from_session_id` into `to_session_id`: add up the message
        counts (capped at the budget), move session data and rate counters,
        then drop the source. Merging an already merged source is a no-op.
        """
        destination = await self.get_session(to_session_id)
        if destination is None:
            return None
        if from_session_id == to_session_id or not is_valid_session_id(from_session_id):
            return destination
        source = await self._load(from_session_id)
        if source is None:
            return destination

        count = min(self.max_messages, source.message_count + destination.message_count)
        merged = await self._store(
            destination.model_copy(
                update={
                    "message_count": count,
                    "remaining_messages": self.max_messages - count,
                }
            )
        )
        await transfer_session_data(self.redis, from_session_id, to_session_id)
        await merge_rate_limit_data(
            self.redis,
            from_session_id,
            to_session_id,
            window_seconds=settings.anonymous_burst_window_seconds,
            max_limit=settings.anonymous_burst_max_requests,
        )
        await self._delete_record(source)
        logger.info("Merged anonymous session %s into %s", from_session_id, to_session_id)
        return merged

    async def claim_session(
        self,
        db: Session,
        *,
        session_id: str,
        user_id: str,
        ip_hash: str | None = None,
        context_cache: ConversationContextCache | None = None,
    ) -> ClaimResult:
        """
        Hand an anonymous session over to a signed-in user.

        Safe to call any number of times: the first caller to take the
        `claim:{sessionId}` lease does the work, concurrent callers get
        `in_progress`, later callers get the stored outcome back.

        Raises:
            InvalidSessionId: `session_id` is not an anonymous session id
        """
        if not is_valid_session_id(session_id):
            raise InvalidSessionId(session_id)

        existing = await self._claim_outcome(session_id, user_id)
        if existing is not None:
            return existing

        lease = await acquire_lease(self.redis, f"claim:{session_id}")
        if lease is None:
            return ClaimResult(status="in_progress", session_id=session_id, user_id=user_id)

        try:
            existing = await self._claim_outcome(session_id, user_id)
            if existing is not None:
                return existing

            thread_ids = thread_service.claim_anonymous_threads(
                db, user_id=user_id, session_id=session_id, ip_hash=ip_hash
            )
            identity = user_identity(user_id)
            await merge_rate_limit_data(
                self.redis,
                session_id,
                identity,
                window_seconds=settings.anonymous_burst_window_seconds,
                to_window_seconds=settings.user_window_seconds,
                max_limit=settings.user_max_requests,
            )
            await transfer_session_data(self.redis, session_id, identity)

            cache = context_cache or ConversationContextCache(self.redis)
            for thread_id in thread_ids:
                try:
                    await cache.update_metadata(thread_id, user_id=user_id)
                except Exception:
                    logger.warning(
                        "Could not stamp user on cached context of thread %s",
                        thread_id,
                        exc_info=True,
                    )

            record = ClaimRecord(
                session_id=session_id,
                user_id=user_id,
                migrated=len(thread_ids),
                thread_ids=thread_ids,
                claimed_at=_now_ms(),
            )
            await redis_set_json(
                self.redis,
                claim_key(session_id),
                record,
                ttl_seconds=settings.claim_record_ttl_seconds,
            )

            session = await self._load(session_id)
            await delete_all_session_data(self.redis, session_id)
            if session is not None:
                await self._delete_record(session)
            logger.info(
                "Session %s claimed by user %s (%d threads)",
                session_id,
                user_id,
                len(thread_ids),
            )
            return ClaimResult(
                status="claimed",
                session_id=session_id,
                user_id=user_id,
                migrated=len(thread_ids),
                thread_ids=thread_ids,
            )
        finally:
            await release_lease(self.redis, lease)

    async def _claim_outcome(self, session_id: str, user_id: str) -> Optional[ClaimResult]:
        record = await self.get_claim_record(session_id)
        if record is None:
            return None
        if record.user_id != user_id:
            logger.warning(
                "Session %s already claimed by another user; refusing claim by %s",
                session_id,
                user_id,
            )
            return ClaimResult(status="conflict", session_id=session_id, user_id=user_id)
        return ClaimResult(
            status="already_claimed",
            session_id=session_id,
            user_id=user_id,
            migrated=record.migrated,
            thread_ids=record.thread_ids,
        )

    async def delete_session(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        session = await self._load(session_id)
        await delete_all_session_data(self.redis, session_id)
        if session is None:
            return False
        await self._delete_record(session)
        return True


__all__ = [
    "AnonymousSessionManager",
    "claim_key",
    "fingerprint_lookup_key",
    "is_valid_session_id",
    "lookup_key",
    "session_key",
    "user_identity",
]
