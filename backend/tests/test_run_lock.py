import asyncio
from unittest.mock import AsyncMock, patch

from conftest import InProcessLocks

from app.services.run_lock import REFRESH_LOCK, REQUOTE_LOCK, RunLockService


def test_lock_is_exclusive_until_released():
    locks = InProcessLocks()

    async def scenario():
        first = await locks.acquire(REFRESH_LOCK, 60)
        second = await locks.acquire(REFRESH_LOCK, 60)
        other = await locks.acquire(REQUOTE_LOCK, 60)
        await locks.release(REFRESH_LOCK, first)
        third = await locks.acquire(REFRESH_LOCK, 60)
        return first, second, other, third

    first, second, other, third = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert other is not None
    assert third is not None and third != first


def test_expired_lock_can_be_retaken_and_stale_release_is_ignored():
    locks = InProcessLocks()

    async def scenario():
        stale = await locks.acquire(REFRESH_LOCK, 0)
        fresh = await locks.acquire(REFRESH_LOCK, 60)
        await locks.release(REFRESH_LOCK, stale)
        blocked = await locks.acquire(REFRESH_LOCK, 60)
        return fresh, blocked

    fresh, blocked = asyncio.run(scenario())

    assert fresh is not None
    assert blocked is None


def test_redis_lock_uses_set_nx_with_ttl():
    redis = AsyncMock()
    redis.set.return_value = True
    locks = RunLockService(redis_url="redis://unused")

    with patch.object(locks, "_get_redis", AsyncMock(return_value=redis)):
        token = asyncio.run(locks.acquire(REQUOTE_LOCK, 900))

    assert token is not None
    redis.set.assert_awaited_once_with("runlock:requote-run", token, nx=True, ex=900)


def test_redis_release_only_deletes_own_token():
    redis = AsyncMock()
    redis.get.return_value = "someone-else"
    locks = RunLockService(redis_url="redis://unused")

    with patch.object(locks, "_get_redis", AsyncMock(return_value=redis)):
        asyncio.run(locks.release(REQUOTE_LOCK, "mine"))

    redis.delete.assert_not_awaited()
