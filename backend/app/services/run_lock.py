"""Named run locks so overlapping cron batches or requote runs cannot race."""

import logging
import time
import uuid

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)

REFRESH_LOCK = "refresh-packages"
REQUOTE_LOCK = "requote-run"


class RunLockService:
    """
    Redis-backed `SET NX EX` locks with a TTL.

    When Redis is unreachable the service falls back to in-process locks,
    which only guard a single worker.
    """

    def __init__(self, redis_url: str | None = None):
        self._redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None
        self._local: dict[str, tuple[str, float]] = {}

    async def _get_redis(self) -> redis.Redis | None:
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
            except Exception as e:
                logger.warning(f"Redis unavailable, using in-process run locks: {e}")
                self._redis = None
                return None
        return self._redis

    @staticmethod
    def _key(name: str) -> str:
        return f"runlock:{name}"

    async def acquire(self, name: str, ttl: int) -> str | None:
        """Take the lock; returns an ownership token, or None if it is held."""
        token = uuid.uuid4().hex
        r = await self._get_redis()
        if r is not None:
            try:
                ok = await r.set(self._key(name), token, nx=True, ex=ttl)
                return token if ok else None
            except Exception as e:
                logger.warning(f"Redis lock acquire failed for {name}: {e}")

        now = time.monotonic()
        held = self._local.get(name)
        if held and held[1] > now:
            return None
        self._local[name] = (token, now + ttl)
        return token

    async def release(self, name: str, token: str) -> None:
        """Release only if we still own the lock (it may have expired and been retaken)."""
        r = await self._get_redis()
        if r is not None:
            try:
                if await r.get(self._key(name)) == token:
                    await r.delete(self._key(name))
            except Exception as e:
                logger.warning(f"Redis lock release failed for {name}: {e}")

        held = self._local.get(name)
        if held and held[0] == token:
            del self._local[name]

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None


run_lock_service = RunLockService()
