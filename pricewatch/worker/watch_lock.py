"""Redis-based per-watch lock for evaluation coordination."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from pricewatch.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "pricewatch:watch:lock:"

# Delete the key only while it still holds the caller's token.
# Returns: 0 = not found/already released, 1 = deleted, 2 = held by someone else
RELEASE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
    return 0
end
if value == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 2
"""


def lock_key(watch_id: int) -> str:
    return f"{LOCK_KEY_PREFIX}{watch_id}"


class WatchLockManager:
    """
    Per-watch distributed lock using Redis.

    At most one evaluation of a watch runs at a time across all workers. The
    TTL frees the lock if a worker dies mid-evaluation.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            ttl_seconds: Lock expiry (defaults to settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.watch_lock_ttl_seconds
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire(self, watch_id: int, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the lock for a watch.

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        token = uuid4().hex

        acquired = await redis_client.set(
            lock_key(watch_id),
            token,
            nx=True,
            ex=ttl_seconds or self.ttl_seconds,
        )
        if acquired:
            logger.debug(f"Acquired lock for watch {watch_id}")
            return token

        logger.debug(f"Watch {watch_id} is already being evaluated")
        return None

    async def release(self, watch_id: int, token: str) -> bool:
        """
        Release the lock if the token still owns it.

        Returns:
            True if released or already gone, False if held by another owner
        """
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(RELEASE_SCRIPT, 1, lock_key(watch_id), token)
        except redis.RedisError as e:
            logger.error(f"Error releasing lock for watch {watch_id}: {e}")
            return False

        if result == 2:
            logger.warning(f"Lock for watch {watch_id} is held by another token; not released")
            return False
        return True

    async def force_unlock(self, watch_id: int) -> bool:
        """Delete a watch lock without token verification (admin use)."""
        redis_client = await self._get_redis()
        deleted = await redis_client.delete(lock_key(watch_id))
        if deleted:
            logger.warning(f"Force-cleared lock for watch {watch_id}")
        return bool(deleted)

    async def get_lock_info(self, watch_id: int) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with token and ttl, or None if not locked
        """
        redis_client = await self._get_redis()
        key = lock_key(watch_id)
        value = await redis_client.get(key)
        if not value:
            return None
        ttl = await redis_client.ttl(key)
        return {
            "watch_id": watch_id,
            "token": value,
            "ttl_seconds": ttl if ttl > 0 else None,
            "checked_at": datetime.utcnow().isoformat(),
        }

    async def list_locked(self) -> list[int]:
        """Ids of watches that currently hold a lock."""
        redis_client = await self._get_redis()
        watch_ids = []
        async for key in redis_client.scan_iter(match=f"{LOCK_KEY_PREFIX}*"):
            try:
                watch_ids.append(int(key[len(LOCK_KEY_PREFIX):]))
            except ValueError:
                logger.warning(f"Ignoring malformed lock key {key}")
        return sorted(watch_ids)
