"""
Account Deletion Queue

Hands graduated members whose grace period has ended to the account-removal
worker through a Redis list. Each entry is a JSON object with the member id
and the time it was queued.

Member ids already handed over are kept in the `{key}:members` set, so a
member whose lifecycle record survived a failed commit is not queued twice
when the deletion job runs again.
"""

import json
import logging
from typing import Protocol

import redis.asyncio as redis

from campus.config import settings
from campus.utils.clock import utcnow

logger = logging.getLogger(__name__)


class AccountDeletionQueue(Protocol):
    async def enqueue_account_deletion(self, member_id: int) -> None: ...


class RedisAccountDeletionQueue:
    def __init__(self, key: str | None = None, client: redis.Redis | None = None):
        self.key = key or settings.deletion_queue_key
        self.members_key = f"{self.key}:members"
        self._redis = client

    async def connect(self) -> None:
        if self._redis is not None:
            return
        if settings.redis_url:
            self._redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                password=settings.redis_password,
                decode_responses=True,
            )
        await self._redis.ping()
        logger.info("Deletion queue connected to Redis (key=%s)", self.key)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def enqueue_account_deletion(self, member_id: int) -> None:
        if self._redis is None:
            await self.connect()
        if not await self._redis.sadd(self.members_key, member_id):
            logger.info(f"Account deletion for member {member_id} already queued")
            return
        payload = json.dumps({"member_id": member_id, "enqueued_at": utcnow().isoformat()})
        try:
            await self._redis.lpush(self.key, payload)
        except (redis.RedisError, OSError):
            await self._redis.srem(self.members_key, member_id)
            raise
        logger.info(f"Queued account deletion for member {member_id}")

