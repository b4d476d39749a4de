# backend/tests/unit/test_session_store.py
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError, LockError

from chatflow.config.settings import Settings
from chatflow.errors import SessionStoreUnavailable
from chatflow.models.domain import CartItem
from chatflow.models.session import Session
from chatflow.services.dedup_service import InMemoryDuplicateGuard, RedisDuplicateGuard
from chatflow.services.session_store import (
    InMemorySessionStore, RedisSessionStore, create_session_store
)
from chatflow.utils.tasks import TimerScheduler


@pytest.mark.asyncio
async def test_in_memory_round_trip_returns_independent_copies():
    store = InMemorySessionStore()
    session = Session.new("549111", "Ana")
    session.cart.append(CartItem(product_id="p1", name="Pan", qty=1, unit_price=10))
    await store.set("549111", session)

    loaded = await store.get("549111")
    loaded.cart.clear()

    assert (await store.get("549111")).cart[0].product_id == "p1"
    await store.delete("549111")
    assert await store.get("549111") is None


@pytest.mark.asyncio
async def test_update_applies_patch_to_new_or_existing_session():
    store = InMemorySessionStore()
    updated = await store.update("549111", {"paused": True})
    assert updated.paused is True
    assert (await store.get("549111")).paused is True


@pytest.mark.asyncio
async def test_lock_serializes_work_per_key_in_arrival_order():
    store = InMemorySessionStore()
    order = []

    async def worker(name, delay):
        async with store.lock("549111"):
            order.append(f"{name}-start")
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    await asyncio.gather(worker("first", 0.02), worker("second", 0))

    assert order == ["first-start", "first-end", "second-start", "second-end"]


@pytest.mark.asyncio
async def test_locks_for_different_keys_do_not_block_each_other():
    store = InMemorySessionStore()
    async with store.lock("a"):
        await asyncio.wait_for(_enter(store, "b"), timeout=1)


async def _enter(store, key):
    async with store.lock(key):
        return True


@pytest.mark.asyncio
async def test_idle_locks_are_dropped_once_released():
    store = InMemorySessionStore()

    async def worker(key):
        async with store.lock(key):
            await asyncio.sleep(0)

    await asyncio.gather(*(worker(f"5491{i}") for i in range(20)), worker("54910"))
    assert store._locks == {}
    assert store._lock_users == {}


@pytest.mark.asyncio
async def test_lock_is_kept_while_someone_waits_for_it():
    store = InMemorySessionStore()
    entered = []

    async def waiter():
        async with store.lock("549111"):
            entered.append(True)

    async with store.lock("549111"):
        task = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert "549111" in store._locks

    await task
    assert entered == [True]
    assert "549111" not in store._locks


@pytest.mark.asyncio
async def test_redis_lock_is_renewed_while_held():
    store = RedisSessionStore("redis://localhost:6379", ttl_seconds=60, lock_timeout_seconds=30, keepalive_seconds=0.01)
    redis_lock = MagicMock()
    redis_lock.acquire = AsyncMock(return_value=True)
    redis_lock.reacquire = AsyncMock()
    redis_lock.release = AsyncMock()
    store.redis = MagicMock()
    store.redis.lock = MagicMock(return_value=redis_lock)

    async with store.lock("549111"):
        # A step that outlives several renewal periods.
        await asyncio.sleep(0.05)

    renewals = redis_lock.reacquire.await_count
    assert renewals >= 2
    redis_lock.release.assert_awaited_once()
    assert store.redis.lock.call_args.kwargs["timeout"] == 30

    await asyncio.sleep(0.03)
    assert redis_lock.reacquire.await_count == renewals


@pytest.mark.asyncio
async def test_redis_lock_stops_renewing_once_lost():
    store = RedisSessionStore("redis://localhost:6379", ttl_seconds=60, lock_timeout_seconds=30, keepalive_seconds=0.01)
    redis_lock = MagicMock()
    redis_lock.acquire = AsyncMock(return_value=True)
    redis_lock.reacquire = AsyncMock(side_effect=LockError("not owned"))
    redis_lock.release = AsyncMock(side_effect=LockError("not owned"))
    store.redis = MagicMock()
    store.redis.lock = MagicMock(return_value=redis_lock)

    async with store.lock("549111"):
        await asyncio.sleep(0.05)

    assert redis_lock.reacquire.await_count == 1


def test_redis_lock_renewal_defaults_to_a_third_of_the_timeout():
    assert RedisSessionStore("redis://localhost:6379", 60, lock_timeout_seconds=30).keepalive_seconds == 10


def test_backend_is_chosen_by_configuration():
    assert isinstance(create_session_store(Settings(environment="test", session_backend="memory")), InMemorySessionStore)
    assert isinstance(create_session_store(Settings(environment="test", session_backend="redis")), RedisSessionStore)


def test_production_rejects_the_in_memory_backend():
    with pytest.raises(ValueError):
        Settings(environment="production", session_backend="memory")


@pytest.mark.asyncio
async def test_unreachable_redis_fails_fast_on_connect():
    store = RedisSessionStore("redis://localhost:6379", ttl_seconds=60, lock_timeout_seconds=1)
    store.redis = MagicMock()
    store.redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

    with pytest.raises(SessionStoreUnavailable):
        await store.connect()


@pytest.mark.asyncio
async def test_redis_store_writes_with_ttl():
    store = RedisSessionStore("redis://localhost:6379", ttl_seconds=1800, lock_timeout_seconds=1)
    store.redis = MagicMock()
    store.redis.setex = AsyncMock()
    store.redis.get = AsyncMock(return_value=Session.new("549111").model_dump_json())

    await store.set("549111", Session.new("549111"))
    key, ttl, _ = store.redis.setex.await_args.args
    assert key == "chatflow:session:549111"
    assert ttl == 1800
    assert (await store.get("549111")).phone == "549111"


# --- Duplicate guard ---

@pytest.mark.asyncio
async def test_in_memory_duplicate_guard():
    guard = InMemoryDuplicateGuard(ttl_seconds=60)
    assert await guard.is_duplicate_message("wamid.1", "549111") is False
    assert await guard.is_duplicate_message("wamid.1", "549111") is True
    assert await guard.is_duplicate_message("wamid.1", "549222") is False


@pytest.mark.asyncio
async def test_forgotten_message_is_processed_again():
    guard = InMemoryDuplicateGuard(ttl_seconds=60)
    assert await guard.is_duplicate_message("wamid.1", "549111") is False

    await guard.forget("wamid.1", "549111")

    assert await guard.is_duplicate_message("wamid.1", "549111") is False
    assert await guard.is_duplicate_message("wamid.1", "549111") is True


@pytest.mark.asyncio
async def test_redis_duplicate_guard_forget_deletes_the_marker():
    client = MagicMock()
    client.delete = AsyncMock(side_effect=[1, RedisConnectionError("down")])
    guard = RedisDuplicateGuard(client, ttl_seconds=60)

    await guard.forget("wamid.1", "549111")
    client.delete.assert_awaited_once_with("chatflow:processed:549111:wamid.1")
    # Redis being down only leaves the marker to expire.
    await guard.forget("wamid.2", "549111")


@pytest.mark.asyncio
async def test_redis_duplicate_guard_processes_when_redis_is_down():
    client = MagicMock()
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    guard = RedisDuplicateGuard(client, ttl_seconds=60)

    assert await guard.is_duplicate_message("wamid.1", "549111") is False


@pytest.mark.asyncio
async def test_redis_duplicate_guard_uses_set_nx():
    client = MagicMock()
    client.set = AsyncMock(side_effect=[True, None])
    guard = RedisDuplicateGuard(client, ttl_seconds=60)

    assert await guard.is_duplicate_message("wamid.1", "549111") is False
    assert await guard.is_duplicate_message("wamid.1", "549111") is True
    assert client.set.await_args.kwargs == {"ex": 60, "nx": True}


# --- Timer scheduler ---

@pytest.mark.asyncio
async def test_scheduler_fires_after_the_requested_delay(manual_sleep):
    fired = []

    async def on_fire(key, token):
        fired.append((key, token))

    scheduler = TimerScheduler(sleep=manual_sleep)
    scheduler.bind(on_fire)
    task = scheduler.schedule("549111", "tok-1", 1000)
    await asyncio.sleep(0)

    assert manual_sleep.delays == [1.0]
    assert fired == []
    assert scheduler.is_pending("549111")

    manual_sleep.release_all()
    await task
    assert fired == [("549111", "tok-1")]
    assert not scheduler.is_pending("549111")


@pytest.mark.asyncio
async def test_rescheduling_replaces_the_previous_timer(manual_sleep):
    fired = []

    async def on_fire(key, token):
        fired.append(token)

    scheduler = TimerScheduler(sleep=manual_sleep)
    scheduler.bind(on_fire)
    old = scheduler.schedule("549111", "old", 1000)
    new = scheduler.schedule("549111", "new", 1000)
    await asyncio.sleep(0)

    manual_sleep.release_all()
    await new
    await asyncio.gather(old, return_exceptions=True)

    assert old.cancelled()
    assert fired == ["new"]
    await scheduler.shutdown()
