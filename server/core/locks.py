"""Advisory locks over the shared key-value store.

Used to limit concurrent upstream re-fetches of the same cache key, not to
guarantee mutual exclusion. Acquisition fails open: when Redis cannot answer,
the caller gets a token anyway and proceeds uncoordinated.

Release is a compare-and-delete on the holder's token, so a holder that
stalled past its TTL can never delete a lock that has since been re-acquired
by someone else.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from core.cache import CacheService, STORE_ERRORS
from core.config import Settings
from core.keys import lock_key
from core.logging import get_logger, log_store_fallback

logger = get_logger(__name__)


class AdvisoryLockCoordinator:
    """Token-based SET NX PX locks with scripted release."""

    def __init__(self, store: CacheService, settings: Settings):
        self.store = store
        self.default_ttl_ms = settings.cache_lock_ttl_ms

    async def acquire(self, scope: str, seed: str, ttl_ms: Optional[int] = None) -> Optional[str]:
        """Try to take the lock for ``(scope, seed)``.

        Returns:
            The holder token, or None if another caller holds the lock.
        """
        token = str(uuid.uuid4())
        key = lock_key(scope, seed)
        ttl = max(1, ttl_ms if ttl_ms is not None else self.default_ttl_ms)

        try:
            acquired = await self.store.client().set(key, token, px=ttl, nx=True)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "lock_acquire", e, scope=scope)
            return token

        if not acquired:
            logger.debug("Lock contended", scope=scope, lock_key=key)
            return None

        logger.debug("Lock acquired", scope=scope, token=token[:8], ttl_ms=ttl)
        return token

    async def release(self, scope: str, seed: str, token: str) -> bool:
        """Delete the lock only if it is still held under ``token``."""
        try:
            released = await self.store.compare_and_delete(lock_key(scope, seed), token)
        except STORE_ERRORS as e:
            logger.debug("Lock release failed, TTL will expire it", scope=scope, error=str(e))
            return False

        if released:
            logger.debug("Lock released", scope=scope, token=token[:8])
        return released

    @asynccontextmanager
    async def hold(self, scope: str, seed: str,
                   ttl_ms: Optional[int] = None) -> AsyncIterator[Optional[str]]:
        """Acquire for the duration of the block; yields the token or None.

        Only a caller that actually got a token releases on exit.
        """
        token = await self.acquire(scope, seed, ttl_ms)
        try:
            yield token
        finally:
            if token is not None:
                await self.release(scope, seed, token)
