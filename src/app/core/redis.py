"""Redis connection pool and the cross-worker token refresh lock.

The credential store single-flights refreshes per (user, provider) inside
one process. When several workers share a database, RefreshLock extends
that guarantee across processes with a Redis lock keyed the same way.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from src.app.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis | None:
    """Get or create the Redis connection pool singleton.

    Returns None when REDIS_URL is empty (single-worker deployments).
    """
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        if not settings.REDIS_URL:
            return None
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ── Refresh Lock ────────────────────────────────────────────────────────────


class RefreshLock:
    """Distributed lock guarding OAuth refresh for one (user, provider).

    Args:
        redis_client: Async Redis client.
        timeout_seconds: Lock TTL; also bounds how long a waiter blocks.
    """

    def __init__(self, redis_client: aioredis.Redis, timeout_seconds: int = 30) -> None:
        self._redis = redis_client
        self._timeout = timeout_seconds

    @staticmethod
    def _key(user_id: str, provider: str) -> str:
        return f"crm:refresh:{provider}:{user_id}"

    @asynccontextmanager
    async def hold(self, user_id: str, provider: str) -> AsyncIterator[None]:
        """Hold the refresh lock for the duration of the block."""
        lock = self._redis.lock(
            self._key(user_id, provider),
            timeout=self._timeout,
            blocking_timeout=self._timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            # Proceed without the lock; the in-process single-flight still applies
            logger.warning("redis.refresh_lock_timeout", user_id=user_id, provider=provider)
        try:
            yield
        finally:
            if acquired:
                try:
                    await lock.release()
                except RedisError:
                    logger.warning(
                        "redis.refresh_lock_release_failed",
                        user_id=user_id,
                        provider=provider,
                        exc_info=True,
                    )
