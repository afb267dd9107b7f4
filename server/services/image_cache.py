"""Server-side image cache.

Blob bytes live on disk under ``IMAGE_CACHE_DIR/v{generation}/``; per-entry
metadata (content type, size, freshness window) lives in Redis. Metadata is the
source of truth: a blob without metadata is invisible, and metadata whose blob
cannot be read is deleted and treated as a miss.

Request flow:
    1. Caching disabled -> fetch upstream directly (BYPASS)
    2. Fresh metadata and readable blob -> HIT
    3. Lock held elsewhere and a stale-eligible copy exists -> STALE
    4. Otherwise fetch upstream, write blob (temp file + rename) and metadata
       -> MISS or REVALIDATED
    5. Retryable upstream failure with a stale-eligible copy -> STALE
"""

import asyncio
import os
import uuid
from pathlib import Path
from typing import Callable, Mapping, Optional

import httpx
from pydantic import ValidationError

from constants import (
    DEFAULT_IMAGE_CONTENT_TYPE,
    IMAGE_LOCK_SCOPE,
    UPSTREAM_NETWORK_ERROR_STATUS,
    is_retryable_status,
)
from core.cache import CacheService, STORE_ERRORS
from core.cache_state import CacheStateRegistry
from core.config import Settings
from core.exceptions import UpstreamError
from core.keys import blob_relative_path, image_meta_key
from core.locks import AdvisoryLockCoordinator
from core.logging import get_logger, log_cache_operation, log_store_fallback
from models.cache import (
    CachedImageResult,
    CacheStatus,
    ImageCacheMeta,
    UpstreamImageResponse,
    now_ms,
)

logger = get_logger(__name__)


class ImageCacheService:
    """Generation-scoped blob cache in front of upstream image CDNs."""

    def __init__(
        self,
        settings: Settings,
        store: CacheService,
        state: CacheStateRegistry,
        locks: AdvisoryLockCoordinator,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.store = store
        self.state = state
        self.locks = locks
        self._http_client = http_client
        self._clock = clock

    @property
    def cache_dir(self) -> Path:
        return Path(self.settings.image_cache_dir)

    # =========================================================================
    # REQUEST PATH
    # =========================================================================

    async def fetch_cached_binary(
        self,
        cache_key: str,
        upstream_url: str,
        upstream_headers: Optional[Mapping[str, str]] = None,
        ttl_seconds: Optional[int] = None,
        stale_seconds: Optional[int] = None,
    ) -> CachedImageResult:
        """Serve ``upstream_url`` through the cache under ``cache_key``.

        Never raises for upstream or store failures: the result always carries
        a definite status, an optional body and the cache decision taken.
        """
        if not await self.state.caching_enabled():
            return await self._fetch_bypass(cache_key, upstream_url, upstream_headers)

        generation = await self.state.current_generation()
        meta_key = image_meta_key(generation, cache_key)
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.image_cache_ttl_seconds
        stale = stale_seconds if stale_seconds is not None else self.settings.image_cache_stale_seconds
        now = self._clock()

        cached = await self._read_meta(meta_key)
        if cached and cached.is_fresh(now):
            body = await self._load_blob(cached)
            if body is not None:
                log_cache_operation(logger, "image", cache_key, hit=True, status=CacheStatus.HIT.value)
                return CachedImageResult(
                    status=200, body=body, content_type=cached.content_type,
                    cache_status=CacheStatus.HIT,
                )

            logger.warning("Cached image file missing, dropping metadata",
                           cache_key=cache_key, path=cached.relative_path)
            await self._remove_meta(meta_key)
            cached = None

        async with self.locks.hold(IMAGE_LOCK_SCOPE, f"{generation}:{cache_key}") as token:
            if token is None and cached and cached.is_stale_eligible(now):
                stale_result = await self._serve_stale(cache_key, cached, reason="lock_contended")
                if stale_result:
                    return stale_result

            return await self._refresh(
                cache_key, upstream_url, upstream_headers,
                generation=generation, cached=cached,
                now=now, ttl=ttl, stale=stale,
            )

    async def _refresh(
        self,
        cache_key: str,
        upstream_url: str,
        upstream_headers: Optional[Mapping[str, str]],
        *,
        generation: int,
        cached: Optional[ImageCacheMeta],
        now: int,
        ttl: int,
        stale: int,
    ) -> CachedImageResult:
        """Fetch upstream and persist, or fall back to the stale copy."""
        outcome = CacheStatus.REVALIDATED if cached else CacheStatus.MISS
        stale_eligible = cached is not None and cached.is_stale_eligible(now)

        try:
            upstream = await self._fetch_upstream(upstream_url, upstream_headers)
        except UpstreamError as e:
            logger.warning("Upstream image fetch failed", cache_key=cache_key, error=str(e))
            if stale_eligible and e.retryable:
                stale_result = await self._serve_stale(cache_key, cached, reason="network_error")
                if stale_result:
                    return stale_result
            return CachedImageResult(status=UPSTREAM_NETWORK_ERROR_STATUS, cache_status=outcome)

        if upstream.ok and upstream.body is not None:
            content_type = upstream.content_type or DEFAULT_IMAGE_CONTENT_TYPE
            generation = await self._write_generation(cache_key, generation)
            meta_key = image_meta_key(generation, cache_key)
            try:
                relative_path = await self._save_blob(generation, cache_key, upstream.body)
            except OSError as e:
                logger.error("Failed to write cached image, serving uncached",
                             cache_key=cache_key, error=str(e))
                return CachedImageResult(
                    status=upstream.status, body=upstream.body,
                    content_type=content_type, cache_status=outcome,
                )

            meta = ImageCacheMeta(
                generation=generation,
                relative_path=relative_path,
                content_type=content_type,
                size_bytes=len(upstream.body),
                fetched_at=now,
                expires_at=now + ttl * 1000,
                stale_until=now + (ttl + stale) * 1000,
            )
            await self._write_meta(meta_key, meta, now)
            log_cache_operation(logger, "image", cache_key, hit=False,
                                status=outcome.value, size_bytes=meta.size_bytes)
            return CachedImageResult(
                status=upstream.status, body=upstream.body,
                content_type=content_type, cache_status=outcome,
            )

        logger.info("Upstream image returned error status",
                    cache_key=cache_key, status=upstream.status)
        if stale_eligible and is_retryable_status(upstream.status):
            stale_result = await self._serve_stale(cache_key, cached, reason=f"upstream_{upstream.status}")
            if stale_result:
                return stale_result

        return CachedImageResult(status=upstream.status, cache_status=outcome)

    async def _write_generation(self, cache_key: str, read_generation: int) -> int:
        """Generation a completed fetch should be stored under.

        Re-read after the upstream call: if the generation advanced meanwhile,
        the old one may already be purged and the write belongs to the new one.
        """
        generation = await self.state.current_generation()
        if generation != read_generation:
            logger.info("Generation advanced during fetch, storing under new generation",
                        cache_key=cache_key, fetched_under=read_generation, generation=generation)
        return generation

    async def _serve_stale(self, cache_key: str, meta: ImageCacheMeta,
                           reason: str) -> Optional[CachedImageResult]:
        body = await self._load_blob(meta)
        if body is None:
            return None
        log_cache_operation(logger, "image", cache_key, hit=True,
                            status=CacheStatus.STALE.value, reason=reason)
        return CachedImageResult(
            status=200, body=body, content_type=meta.content_type,
            cache_status=CacheStatus.STALE,
        )

    async def _fetch_bypass(self, cache_key: str, url: str,
                            headers: Optional[Mapping[str, str]]) -> CachedImageResult:
        try:
            upstream = await self._fetch_upstream(url, headers)
        except UpstreamError as e:
            logger.warning("Upstream image fetch failed (bypass)", cache_key=cache_key, error=str(e))
            return CachedImageResult(status=UPSTREAM_NETWORK_ERROR_STATUS, cache_status=CacheStatus.BYPASS)

        log_cache_operation(logger, "image", cache_key, status=CacheStatus.BYPASS.value)
        return CachedImageResult(
            status=upstream.status,
            body=upstream.body,
            content_type=upstream.content_type,
            cache_status=CacheStatus.BYPASS,
        )

    # =========================================================================
    # UPSTREAM
    # =========================================================================

    async def _fetch_upstream(self, url: str,
                              headers: Optional[Mapping[str, str]]) -> UpstreamImageResponse:
        """GET the image. Non-2xx is a normal response; network errors raise UpstreamError."""
        timeout = self.settings.image_upstream_timeout_seconds
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Timeout fetching {url}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error fetching {url}: {e}") from e

        if not response.is_success:
            return UpstreamImageResponse(status=response.status_code, ok=False)

        return UpstreamImageResponse(
            status=response.status_code,
            ok=True,
            body=response.content,
            content_type=response.headers.get("content-type") or DEFAULT_IMAGE_CONTENT_TYPE,
        )

    # =========================================================================
    # METADATA (Redis)
    # =========================================================================

    async def _read_meta(self, meta_key: str) -> Optional[ImageCacheMeta]:
        try:
            raw = await self.store.client().get(meta_key)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "image_meta_read", e)
            return None
        if not raw:
            return None
        try:
            return ImageCacheMeta.model_validate_json(raw)
        except ValidationError:
            logger.warning("Malformed image metadata ignored", meta_key=meta_key)
            return None

    async def _write_meta(self, meta_key: str, meta: ImageCacheMeta, now: int) -> None:
        try:
            await self.store.client().set(meta_key, meta.to_json(), ex=meta.redis_ttl_seconds(now))
        except STORE_ERRORS as e:
            log_store_fallback(logger, "image_meta_write", e)

    async def _remove_meta(self, meta_key: str) -> None:
        try:
            await self.store.client().delete(meta_key)
        except STORE_ERRORS as e:
            log_store_fallback(logger, "image_meta_delete", e)

    # =========================================================================
    # BLOBS (filesystem)
    # =========================================================================

    def blob_path(self, relative_path: str) -> Path:
        return self.cache_dir / relative_path

    async def _load_blob(self, meta: ImageCacheMeta) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self.blob_path(meta.relative_path).read_bytes)
        except OSError:
            return None

    async def _save_blob(self, generation: int, cache_key: str, content: bytes) -> str:
        """Write ``content`` atomically and return its path relative to cache_dir."""
        relative_path = blob_relative_path(generation, cache_key)
        await asyncio.to_thread(self._write_atomic, self.blob_path(relative_path), content)
        return relative_path

    @staticmethod
    def _write_atomic(path: Path, content: bytes) -> None:
        # Readers only ever see the old file or the complete new one
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp-{uuid.uuid4()}")
        try:
            tmp_path.write_bytes(content)
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
