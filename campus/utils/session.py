"""
Member session store.

The billing engine only needs one thing from sessions: when a tenant is
suspended, every affected member must be logged out at once. Sessions live in
Redis when it is reachable and in process memory otherwise.

Redis keys:
- ``session:{id}`` JSON payload with a TTL
- ``member_sessions:{member_id}`` set of that member's session ids
"""

import json
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import redis.asyncio as redis

from campus.config import settings
from campus.utils.clock import utcnow

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def invalidate_sessions_for_members(self, member_ids: Iterable[int]) -> int: ...


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _member_key(member_id: int) -> str:
    return f"member_sessions:{member_id}"


@dataclass
class _Session:
    member_id: int
    tenant_id: int | None
    role: str
    expires_at: datetime


class InMemorySessionManager:
    """Single-process fallback; sessions do not survive a restart."""

    def __init__(self, expire_seconds: int | None = None):
        self.expire_seconds = expire_seconds or settings.session_expire_seconds
        self._sessions: dict[str, _Session] = {}

    def _drop_expired(self) -> None:
        now = utcnow()
        for session_id in [sid for sid, s in self._sessions.items() if s.expires_at < now]:
            del self._sessions[session_id]

    async def connect(self):
        logger.info("Using in-memory session storage (Redis not available)")

    async def disconnect(self):
        self._sessions.clear()

    async def create_session(self, member_id: int, tenant_id: int | None, role: str) -> str:
        self._drop_expired()
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = _Session(
            member_id=member_id,
            tenant_id=tenant_id,
            role=role,
            expires_at=utcnow() + timedelta(seconds=self.expire_seconds),
        )
        return session_id

    async def validate_session(self, session_id: str) -> bool:
        self._drop_expired()
        return session_id in self._sessions

    async def delete_all_member_sessions(self, member_id: int) -> int:
        return await self.invalidate_sessions_for_members([member_id])

    async def invalidate_sessions_for_members(self, member_ids: Iterable[int]) -> int:
        targets = set(member_ids)
        doomed = [sid for sid, s in self._sessions.items() if s.member_id in targets]
        for session_id in doomed:
            del self._sessions[session_id]
        logger.info("Invalidated %d in-memory session(s) for %d member(s)", len(doomed), len(targets))
        return len(doomed)


class RedisSessionManager:
    def __init__(self, expire_seconds: int | None = None, client: redis.Redis | None = None):
        self.expire_seconds = expire_seconds or settings.session_expire_seconds
        self._redis = client

    async def connect(self):
        if self._redis is not None:
            return
        if settings.redis_url:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        else:
            client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                password=settings.redis_password,
                decode_responses=True,
            )
        try:
            await client.ping()
        except (redis.RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            await client.aclose()
            raise
        self._redis = client
        logger.info("Session store connected to Redis")

    async def disconnect(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def create_session(self, member_id: int, tenant_id: int | None, role: str) -> str:
        if self._redis is None:
            await self.connect()
        session_id = str(uuid.uuid4())
        payload = json.dumps(
            {"member_id": member_id, "tenant_id": tenant_id, "role": role, "created_at": utcnow().isoformat()}
        )
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.setex(_session_key(session_id), self.expire_seconds, payload)
            pipe.sadd(_member_key(member_id), session_id)
            pipe.expire(_member_key(member_id), self.expire_seconds)
            await pipe.execute()
        return session_id

    async def validate_session(self, session_id: str) -> bool:
        if self._redis is None:
            await self.connect()
        return bool(await self._redis.exists(_session_key(session_id)))

    async def delete_all_member_sessions(self, member_id: int) -> int:
        return await self.invalidate_sessions_for_members([member_id])

    async def invalidate_sessions_for_members(self, member_ids: Iterable[int]) -> int:
        """Delete every session of the given members; returns how many existed."""
        if self._redis is None:
            await self.connect()

        member_keys = [_member_key(member_id) for member_id in set(member_ids)]
        if not member_keys:
            return 0

        async with self._redis.pipeline(transaction=False) as pipe:
            for key in member_keys:
                pipe.smembers(key)
            session_sets = await pipe.execute()

        session_keys = [_session_key(sid) for sessions in session_sets for sid in sessions]
        deleted = await self._redis.delete(*session_keys) if session_keys else 0
        await self._redis.delete(*member_keys)
        logger.info("Invalidated %d Redis session(s) for %d member(s)", deleted, len(member_keys))
        return deleted


_session_manager: RedisSessionManager | InMemorySessionManager | None = None


async def get_session_manager() -> RedisSessionManager | InMemorySessionManager:
    """Shared session store: Redis when reachable, in-memory otherwise."""
    global _session_manager

    if _session_manager is not None:
        return _session_manager

    try:
        redis_manager = RedisSessionManager()
        await redis_manager.connect()
        _session_manager = redis_manager
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis not available, using in-memory sessions: {e}")
        _session_manager = InMemorySessionManager()
        await _session_manager.connect()

    return _session_manager


async def close_session_manager() -> None:
    global _session_manager
    if _session_manager is not None:
        await _session_manager.disconnect()
        _session_manager = None
