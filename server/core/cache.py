"""Shared key-value store (Redis) used for generations, locks and cache records.

The store is the only serialization point between instances. Every caller in
the cache core treats it as optional: errors raised from here are caught at the
call site and turned into a documented fail-open default.
"""

import asyncio
from typing import List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import DELETE_BATCH_SIZE, SCAN_COUNT, STRLEN_BATCH_SIZE
from core.config import Settings
from core.exceptions import StoreUnavailableError
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)

# Errors that mean "the store could not answer", never "the answer is no"
STORE_ERRORS = (RedisError, StoreUnavailableError, OSError, asyncio.TimeoutError)

# Delete KEYS[1] only while it still holds ARGV[1]
COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class CacheService:
    """Async Redis connection owner with the handful of primitives the core needs."""

    def __init__(self, settings: Settings, client: Optional["redis.Redis"] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = client

    async def startup(self):
        """Create the Redis client and verify connectivity.

        A failed ping is logged but the client is kept: redis-py reconnects on
        the next command, and every caller already fails open in the meantime.
        """
        if self.redis is None:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.settings.redis_socket_timeout,
                socket_connect_timeout=self.settings.redis_socket_timeout,
                retry_on_timeout=True
            )

        try:
            await self.redis.ping()
            logger.info("Redis cache store initialized", url=self.settings.redis_url)
        except STORE_ERRORS as e:
            logger.warning("Redis ping failed at startup, continuing fail-open",
                           url=self.settings.redis_url, error=str(e))

    async def shutdown(self):
        """Close the Redis connection pool."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis cache store connections closed")

    def client(self) -> "redis.Redis":
        """Return the live client or raise StoreUnavailableError."""
        if self.redis is None:
            raise StoreUnavailableError("Redis client is not initialized")
        return self.redis

    def is_available(self) -> bool:
        return self.redis is not None

    # ------------------------------------------------------------------
    # Primitives used by maintenance and the lock coordinator
    # ------------------------------------------------------------------

    async def compare_and_delete(self, key: str, token: str) -> bool:
        """Atomically delete ``key`` if its value equals ``token``."""
        result = await self.client().eval(COMPARE_AND_DELETE_SCRIPT, 1, key, token)
        return int(result or 0) == 1

    async def scan_keys(self, pattern: str) -> List[str]:
        """SCAN the keyspace for ``pattern``. Returns [] if the store is down."""
        keys: List[str] = []
        try:
            async for key in self.client().scan_iter(match=pattern, count=SCAN_COUNT):
                keys.append(key)
        except STORE_ERRORS as e:
            logger.warning("Key scan failed", pattern=pattern, error=str(e))
            return []
        return keys

    async def total_value_bytes(self, keys: Sequence[str]) -> int:
        """Sum STRLEN over ``keys`` in batches; unreadable keys count as zero."""
        if not keys:
            return 0

        total = 0
        try:
            client = self.client()
            for index in range(0, len(keys), STRLEN_BATCH_SIZE):
                chunk = keys[index:index + STRLEN_BATCH_SIZE]
                lengths = await asyncio.gather(
                    *(client.strlen(key) for key in chunk),
                    return_exceptions=True,
                )
                total += sum(length for length in lengths if isinstance(length, int))
        except STORE_ERRORS as e:
            logger.warning("Value size scan failed", keys=len(keys), error=str(e))
        return total

    async def delete_keys(self, keys: Sequence[str]) -> int:
        """Delete ``keys`` in batches. Best effort; returns the count deleted."""
        if not keys:
            return 0

        deleted = 0
        try:
            client = self.client()
            for index in range(0, len(keys), DELETE_BATCH_SIZE):
                chunk = keys[index:index + DELETE_BATCH_SIZE]
                deleted += int(await client.delete(*chunk) or 0)
        except STORE_ERRORS as e:
            logger.warning("Key deletion failed", keys=len(keys), error=str(e))
        log_cache_operation(logger, "delete_keys", f"{len(keys)} keys", deleted=deleted)
        return deleted
