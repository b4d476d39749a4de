# /chatflow/services/dedup_service.py

import logging
import time
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatflow.config.settings import Settings, settings

logger = logging.getLogger(__name__)


class InMemoryDuplicateGuard:
    """Remembers processed message ids for `ttl_seconds` within this process."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._seen: Dict[str, float] = {}

    async def is_duplicate_message(self, message_id: str, phone_number: str) -> bool:
        now = time.monotonic()
        self._evict(now)
        key = f"{phone_number}:{message_id}"
        if key in self._seen:
            return True
        self._seen[key] = now + self.ttl_seconds
        return False

    async def forget(self, message_id: str, phone_number: str) -> None:
        self._seen.pop(f"{phone_number}:{message_id}", None)

    def _evict(self, now: float):
        expired = [k for k, expires_at in self._seen.items() if expires_at <= now]
        for k in expired:
            del self._seen[k]


class RedisDuplicateGuard:
    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def is_duplicate_message(self, message_id: str, phone_number: str) -> bool:
        """Checks for duplicate message IDs to prevent re-processing."""
        try:
            # set(nx=True) returns None when the key already existed.
            first_seen = await self.redis.set(
                self._key(message_id, phone_number), "1", ex=self.ttl_seconds, nx=True
            )
        except RedisError as e:
            logger.warning(f"Duplicate check unavailable for {message_id}, processing anyway: {e}")
            return False
        return not first_seen

    async def forget(self, message_id: str, phone_number: str) -> None:
        """Drops the marker of a message that failed, so a redelivery is processed."""
        try:
            await self.redis.delete(self._key(message_id, phone_number))
        except RedisError as e:
            logger.warning(f"Could not clear duplicate marker for {message_id}: {e}")

    def _key(self, message_id: str, phone_number: str) -> str:
        return f"chatflow:processed:{phone_number}:{message_id}"


def create_duplicate_guard(config: Settings = settings, redis_client: Optional[redis.Redis] = None):
    if config.session_backend == "redis":
        client = redis_client or redis.Redis.from_url(config.redis_url)
        return RedisDuplicateGuard(client, config.dedup_ttl_seconds)
    return InMemoryDuplicateGuard(config.dedup_ttl_seconds)
