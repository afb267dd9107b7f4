"""Generation registry: the cache generation counter, the caching-enabled flag,
and the purge status fields.

Every read here fails open. A Redis outage degrades the cache to
"generation 1, caching on, nothing purging" instead of raising into the
request path.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING

from constants import CACHE_GENERATION_KEY, CACHE_LAST_PURGED_AT_KEY, CACHE_PURGE_STATUS_KEY
from core.cache import CacheService, STORE_ERRORS
from core.logging import get_logger, log_store_fallback
from models.cache import PurgeStatus

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database

logger = get_logger(__name__)


def _parse_generation(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


class CacheStateRegistry:
    """Process-facing view of the shared cache state."""

    def __init__(
        self,
        store: CacheService,
        database: "Database",
        settings: "Settings",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.database = database
        self.refresh_seconds = settings.cache_enabled_refresh_seconds
        self._clock = clock
        self._enabled: Optional[bool] = None
        self._enabled_at = 0.0

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def current_generation(self) -> int:
        """Read the generation, initializing it to 1 (SET NX) when absent."""
        try:
            client = self.store.client()
            existing = _parse_generation(await client.get(CACHE_GENERATION_KEY))
            if existing:
                return existing

            if await client.set(CACHE_GENERATION_KEY, "1", nx=True):
                logger.info("Cache generation initialized", generation=1)
                return 1

            # Another instance won the initialization race
            return _parse_generation(await client.get(CACHE_GENERATION_KEY)) or 1
        except STORE_ERRORS as e:
            log_store_fallback(logger, "current_generation", e, fallback=1)
            return 1

    async def advance_generation(self) -> int:
        """Atomically INCR the generation and return the new value."""
        try:
            value = int(await self.store.client().incr(CACHE_GENERATION_KEY))
            generation = value if value > 0 else 1
            logger.info("Cache generation advanced", generation=generation)
            return generation
        except STORE_ERRORS as e:
            log_store_fallback(logger, "advance_generation", e, fallback=1)
            return 1

    # =========================================================================
    # CACHING-ENABLED FLAG
    # =========================================================================

    async def caching_enabled(self, force_refresh: bool = False) -> bool:
        """Memoized read of the persisted flag.

        Values younger than ``refresh_seconds`` are served from memory. A
        missing settings row means enabled. A failed read returns True
        without touching the memo, so the next call retries.
        """
        now = self._clock()
        if (not force_refresh and self._enabled is not None
                and now - self._enabled_at <= self.refresh_seconds):
            return self._enabled

        try:
            stored = await self.database.get_cache_images_enabled()
        except Exception as e:
            log_store_fallback(logger, "caching_enabled", e, fallback=True)
            return True

        enabled = stored if isinstance(stored, bool) else True
        self._enabled = enabled
        self._enabled_at = now
        return enabled

    def set_caching_enabled_local(self, enabled: bool) -> None:
        """Update only the in-process memo (after the caller persisted it)."""
        self._enabled = enabled
        self._enabled_at = self._clock()

    # =========================================================================
    # PURGE STATUS
    # =========================================================================

    async def get_purge_status(self) -> PurgeStatus:
        try:
            value = await self.store.client().get(CACHE_PURGE_STATUS_KEY)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "get_purge_status", e, fallback="idle")
            return PurgeStatus.IDLE
        return PurgeStatus.PURGING if value == PurgeStatus.PURGING.value else PurgeStatus.IDLE

    async def set_purge_status(self, status: PurgeStatus) -> None:
        try:
            await self.store.client().set(CACHE_PURGE_STATUS_KEY, status.value)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "set_purge_status", e, status=status.value)

    async def get_last_purged_at(self) -> Optional[str]:
        try:
            return await self.store.client().get(CACHE_LAST_PURGED_AT_KEY)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "get_last_purged_at", e)
            return None

    async def set_last_purged_at(self, value: Optional[str] = None) -> str:
        """Record a purge timestamp (ISO-8601 UTC); returns the value written."""
        value = value or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            await self.store.client().set(CACHE_LAST_PURGED_AT_KEY, value)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "set_last_purged_at", e)
        return value
