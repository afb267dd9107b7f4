"""JSON response cache for the rate-limited metadata API.

Same freshness and locking rules as the image cache, but the payload is stored
inline in the Redis record. Entries are keyed by a canonical serialization of
the endpoint, the normalized parameters and a hash of the API credential, so
two credentials never share an entry and parameter order never matters.

Unlike the image path this one raises: when the fetcher fails and no stale
copy is usable, the fetcher's own exception propagates to the caller.
"""

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from pydantic import ValidationError

from constants import API_LOCK_SCOPE
from core.cache import CacheService, STORE_ERRORS
from core.cache_state import CacheStateRegistry
from core.config import Settings
from core.keys import api_entry_key, sha256_hex, stable_stringify
from core.locks import AdvisoryLockCoordinator
from core.logging import get_logger, log_cache_operation, log_store_fallback
from models.cache import ApiCacheEntry, CachePolicy, CacheStatus, now_ms

logger = get_logger(__name__)

T = TypeVar("T")


def normalize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop parameters that are None so absent and unset fields key identically."""
    if not params:
        return {}
    return {key: value for key, value in params.items() if value is not None}


def build_cache_seed(endpoint: str, params: Optional[Mapping[str, Any]], credential_seed: str) -> str:
    return stable_stringify({
        "endpoint": endpoint,
        "params": normalize_params(params),
        "apiKeyHash": sha256_hex(credential_seed),
    })


class ApiCacheService:
    """Generation-scoped JSON cache with stale-while-revalidate."""

    def __init__(
        self,
        settings: Settings,
        store: CacheService,
        state: CacheStateRegistry,
        locks: AdvisoryLockCoordinator,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.store = store
        self.state = state
        self.locks = locks
        self._clock = clock

    def _resolve_policy(self, policy: Optional[CachePolicy]) -> CachePolicy:
        default = self.settings.default_api_cache_policy
        if policy is None:
            return default
        return CachePolicy(
            ttl_seconds=policy.ttl_seconds if policy.ttl_seconds is not None else default.ttl_seconds,
            stale_seconds=policy.stale_seconds if policy.stale_seconds is not None else default.stale_seconds,
        )

    async def fetch_cached_json(
        self,
        endpoint: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        credential_seed: str,
        params: Optional[Mapping[str, Any]] = None,
        policy: Optional[CachePolicy] = None,
    ) -> T:
        """Return the cached payload for this request, fetching when needed.

        Args:
            endpoint: Logical API endpoint, e.g. ``"/discover/movie"``
            fetcher: Zero-argument coroutine function performing the real call
            credential_seed: The API credential; only its hash enters the key
            params: Request parameters; None values are ignored
            policy: TTL/stale override; missing fields use the global default

        Raises:
            Whatever ``fetcher`` raises, when no stale copy can stand in.
        """
        if not await self.state.caching_enabled():
            log_cache_operation(logger, "api", endpoint, status=CacheStatus.BYPASS.value)
            return await fetcher()

        generation = await self.state.current_generation()
        seed = build_cache_seed(endpoint, params, credential_seed)
        entry_key = api_entry_key(generation, seed)
        resolved = self._resolve_policy(policy)
        now = self._clock()

        cached = await self._read_entry(entry_key)
        if cached and cached.is_fresh(now):
            log_cache_operation(logger, "api", endpoint, hit=True, status=CacheStatus.HIT.value)
            return cached.payload

        async with self.locks.hold(API_LOCK_SCOPE, f"{generation}:{seed}") as token:
            if token is None and cached and cached.is_stale_eligible(now):
                log_cache_operation(logger, "api", endpoint, hit=True,
                                    status=CacheStatus.STALE.value, reason="lock_contended")
                return cached.payload

            try:
                payload = await fetcher()
            except Exception as e:
                if cached and cached.is_stale_eligible(now):
                    logger.warning("Metadata fetch failed, serving stale entry",
                                   endpoint=endpoint, error=str(e))
                    log_cache_operation(logger, "api", endpoint, hit=True,
                                        status=CacheStatus.STALE.value, reason="fetch_failed")
                    return cached.payload
                raise

            # A purge may have advanced the generation while the fetcher ran
            write_generation = await self.state.current_generation()
            if write_generation != generation:
                logger.info("Generation advanced during fetch, storing under new generation",
                            endpoint=endpoint, fetched_under=generation, generation=write_generation)
                entry_key = api_entry_key(write_generation, seed)

            entry = ApiCacheEntry(
                endpoint=endpoint,
                key_hash=sha256_hex(seed),
                payload=payload,
                fetched_at=now,
                expires_at=now + resolved.ttl_seconds * 1000,
                stale_until=now + (resolved.ttl_seconds + resolved.stale_seconds) * 1000,
            )
            await self._write_entry(entry_key, entry, now)
            status = CacheStatus.REVALIDATED if cached else CacheStatus.MISS
            log_cache_operation(logger, "api", endpoint, hit=False, status=status.value)
            return payload

    async def _read_entry(self, entry_key: str) -> Optional[ApiCacheEntry]:
        try:
            raw = await self.store.client().get(entry_key)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "api_entry_read", e)
            return None
        if not raw:
            return None
        try:
            return ApiCacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Malformed API cache entry ignored", entry_key=entry_key)
            return None

    async def _write_entry(self, entry_key: str, entry: ApiCacheEntry, now: int) -> None:
        try:
            await self.store.client().set(entry_key, entry.to_json(), ex=entry.redis_ttl_seconds(now))
        except (*STORE_ERRORS, TypeError, ValueError) as e:
            # TypeError/ValueError: payload not JSON-serializable; serve it uncached
            log_store_fallback(logger, "api_entry_write", e)
