# /chatflow/services/session_store.py

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import LockError, RedisError

from chatflow.config.settings import Settings, settings
from chatflow.errors import SessionStoreUnavailable
from chatflow.models.session import Session
from chatflow.utils.metrics import session_store_operations

# Durable per-conversation session storage with per-key mutual exclusion.
# The backend is chosen explicitly by configuration; there is no fallback
# from one backend to the other.

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "chatflow:session:"
LOCK_KEY_PREFIX = "chatflow:lock:"


class SessionStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Session]: ...

    @abstractmethod
    async def set(self, key: str, session: Session) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    def lock(self, key: str):
        """Async context manager giving exclusive access to one conversation key."""

    async def update(self, key: str, patch: Dict[str, Any]) -> Session:
        session = await self.get(key) or Session.new(key)
        updated = session.model_copy(update=patch)
        await self.set(key, updated)
        return updated

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """
    Process-lifetime session storage. Sessions are lost on restart and are
    not shared between workers. asyncio.Lock wakes waiters in FIFO order,
    so messages for one key are processed in arrival order. A key's lock is
    dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def connect(self) -> None:
        logger.warning(
            "SESSION_BACKEND=memory: sessions live only for the lifetime of this process "
            "and are not shared between workers."
        )

    async def get(self, key: str) -> Optional[Session]:
        raw = self._sessions.get(key)
        session_store_operations.labels(operation="get", status="hit" if raw else "miss").inc()
        return Session.model_validate_json(raw) if raw else None

    async def set(self, key: str, session: Session) -> None:
        # Stored serialized so callers never share mutable state with the store.
        self._sessions[key] = session.model_dump_json()
        session_store_operations.labels(operation="set", status="success").inc()

    async def delete(self, key: str) -> None:
        self._sessions.pop(key, None)
        session_store_operations.labels(operation="delete", status="success").inc()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]


class RedisSessionStore(SessionStore):
    """
    Sessions stored as JSON documents with a sliding TTL, guarded by a Redis
    lock per key. The lock expires `lock_timeout_seconds` after it was last
    renewed, and is renewed every `keepalive_seconds` while held.
    """

    def __init__(self, redis_url: str, ttl_seconds: int, lock_timeout_seconds: int,
                 keepalive_seconds: Optional[float] = None):
        self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
        self.redis = redis.Redis(connection_pool=self.redis_pool)
        self.ttl_seconds = ttl_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.keepalive_seconds = keepalive_seconds or lock_timeout_seconds / 3

    async def connect(self) -> None:
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.critical(f"Redis session store unreachable: {e}")
            raise SessionStoreUnavailable(f"Redis session store unreachable: {e}") from e
        logger.info("Redis session store connected.")

    async def close(self) -> None:
        await self.redis.aclose()

    async def get(self, key: str) -> Optional[Session]:
        try:
            raw = await self.redis.get(SESSION_KEY_PREFIX + key)
        except RedisError as e:
            session_store_operations.labels(operation="get", status="error").inc()
            raise SessionStoreUnavailable(str(e)) from e
        session_store_operations.labels(operation="get", status="hit" if raw else "miss").inc()
        if not raw:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Discarding unreadable session for {key}: {e}")
            return None

    async def set(self, key: str, session: Session) -> None:
        try:
            await self.redis.setex(SESSION_KEY_PREFIX + key, self.ttl_seconds, session.model_dump_json())
        except RedisError as e:
            session_store_operations.labels(operation="set", status="error").inc()
            raise SessionStoreUnavailable(str(e)) from e
        session_store_operations.labels(operation="set", status="success").inc()

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(SESSION_KEY_PREFIX + key)
        except RedisError as e:
            session_store_operations.labels(operation="delete", status="error").inc()
            raise SessionStoreUnavailable(str(e)) from e
        session_store_operations.labels(operation="delete", status="success").inc()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            LOCK_KEY_PREFIX + key,
            timeout=self.lock_timeout_seconds,
            blocking_timeout=self.lock_timeout_seconds,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise SessionStoreUnavailable(f"Timed out waiting for the lock on {key}")
        keepalive = asyncio.create_task(self._keep_alive(lock, key))
        try:
            yield
        finally:
            keepalive.cancel()
            with suppress(asyncio.CancelledError):
                await keepalive
            try:
                await lock.release()
            except LockError:
                logger.warning(f"Lock for {key} expired before release")

    async def _keep_alive(self, lock, key: str):
        while True:
            await asyncio.sleep(self.keepalive_seconds)
            try:
                await lock.reacquire()
            except LockError as e:
                logger.error(f"Lost the lock on {key} while holding it: {e}")
                return
            except RedisError as e:
                logger.warning(f"Could not renew the lock on {key}: {e}")


def create_session_store(config: Settings = settings) -> SessionStore:
    if config.session_backend == "redis":
        return RedisSessionStore(
            config.redis_url, config.session_ttl_seconds, config.session_lock_timeout_seconds
        )
    return InMemorySessionStore()
