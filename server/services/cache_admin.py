"""Cache maintenance: usage accounting and generation purges.

Nothing here raises. Usage is diagnostic, so an unreadable directory or an
unreachable Redis shows up as zeroed sub-totals rather than an error.

Purges work on whole generations. ``purge_active`` empties the current
generation in place; ``disable_and_purge`` first advances the generation so
new writes land somewhere fresh, then reclaims the generation it left behind.
"""

import asyncio
import os
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from constants import API_ENTRY_NAMESPACE, IMAGE_META_NAMESPACE
from core.cache import CacheService
from core.cache_state import CacheStateRegistry
from core.config import Settings
from core.keys import api_entry_pattern, generation_tag, image_meta_pattern, parse_generation_tag
from core.logging import get_logger
from models.cache import (
    CacheMaintenanceMeta,
    CachePurgeResult,
    CacheUsageSummary,
    PurgeStatus,
)

logger = get_logger(__name__)


def _directory_usage(path: Path) -> Tuple[int, int]:
    """Recursively sum (bytes, files) under ``path``; (0, 0) on any I/O error."""
    total_bytes = 0
    total_files = 0
    try:
        for root, _dirs, files in os.walk(path, onerror=_raise):
            for name in files:
                total_bytes += os.stat(os.path.join(root, name)).st_size
                total_files += 1
    except OSError:
        return 0, 0
    return total_bytes, total_files


def _raise(error: OSError) -> None:
    raise error


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


class CacheAdminService:
    """Administrative operations over the image and API caches."""

    def __init__(self, settings: Settings, store: CacheService, state: CacheStateRegistry):
        self.settings = settings
        self.store = store
        self.state = state

    @property
    def cache_dir(self) -> Path:
        return Path(self.settings.image_cache_dir)

    def generation_dir(self, generation: int) -> Path:
        return self.cache_dir / generation_tag(generation)

    # =========================================================================
    # USAGE
    # =========================================================================

    async def usage(self, generation: Optional[int] = None) -> CacheUsageSummary:
        """Bytes and entry counts for ``generation`` (default: the active one)."""
        if generation is None:
            generation = await self.state.current_generation()

        image_bytes, image_files = await asyncio.to_thread(
            _directory_usage, self.generation_dir(generation)
        )
        api_keys = await self.store.scan_keys(api_entry_pattern(generation))
        api_bytes = await self.store.total_value_bytes(api_keys)

        return CacheUsageSummary(
            image_bytes=image_bytes,
            image_files=image_files,
            api_bytes=api_bytes,
            api_entries=len(api_keys),
            total_bytes=image_bytes + api_bytes,
        )

    # =========================================================================
    # PURGES
    # =========================================================================

    async def purge_active(self) -> CachePurgeResult:
        """Delete everything cached under the active generation, keeping its number."""
        generation = await self.state.current_generation()
        await self.state.set_purge_status(PurgeStatus.PURGING)
        try:
            return await self._purge_generation(generation)
        finally:
            await self.state.set_purge_status(PurgeStatus.IDLE)

    async def disable_and_purge(self) -> CachePurgeResult:
        """Advance the generation, then reclaim the one that was active before.

        Lookups switch to the new, empty generation as soon as the INCR lands,
        so writes racing with this call never touch the generation being purged.
        """
        previous = await self.state.current_generation()
        await self.state.set_purge_status(PurgeStatus.PURGING)
        try:
            await self.state.advance_generation()
            return await self._purge_generation(previous)
        finally:
            await self.state.set_purge_status(PurgeStatus.IDLE)

    async def purge_orphaned_generations(self) -> List[CachePurgeResult]:
        """Reclaim generations older than the previous one.

        ``disable_and_purge`` only cleans up the generation it retired; any
        generation skipped past without a purge is collected here. The active
        generation and the one directly before it are never touched.
        """
        active = await self.state.current_generation()
        orphaned = sorted(g for g in await self._known_generations() if g < active - 1)
        if not orphaned:
            return []

        await self.state.set_purge_status(PurgeStatus.PURGING)
        try:
            results = []
            for generation in orphaned:
                results.append(await self._purge_generation(generation))
            return results
        finally:
            await self.state.set_purge_status(PurgeStatus.IDLE)

    async def maintenance_meta(self) -> CacheMaintenanceMeta:
        status, last_purged_at = await asyncio.gather(
            self.state.get_purge_status(),
            self.state.get_last_purged_at(),
        )
        return CacheMaintenanceMeta(status=status, last_purged_at=last_purged_at)

    async def _purge_generation(self, generation: int) -> CachePurgeResult:
        directory = self.generation_dir(generation)
        image_bytes, image_files = await asyncio.to_thread(_directory_usage, directory)

        image_meta_keys = await self.store.scan_keys(image_meta_pattern(generation))
        api_keys = await self.store.scan_keys(api_entry_pattern(generation))
        api_bytes = await self.store.total_value_bytes(api_keys)

        await asyncio.gather(
            asyncio.to_thread(_remove_tree, directory),
            self.store.delete_keys(image_meta_keys),
            self.store.delete_keys(api_keys),
        )

        purged_at = await self.state.set_last_purged_at()
        result = CachePurgeResult(
            generation=generation,
            deleted_image_bytes=image_bytes,
            deleted_image_files=image_files,
            deleted_api_bytes=api_bytes,
            deleted_api_entries=len(api_keys),
            deleted_total_bytes=image_bytes + api_bytes,
            purged_at=purged_at,
        )
        logger.info("Cache generation purged", **result.model_dump())
        return result

    async def _known_generations(self) -> set:
        """Generations with any footprint on disk or in Redis."""
        generations = set()

        def list_dirs() -> List[str]:
            try:
                return [entry.name for entry in os.scandir(self.cache_dir) if entry.is_dir()]
            except OSError:
                return []

        for name in await asyncio.to_thread(list_dirs):
            generation = parse_generation_tag(name)
            if generation:
                generations.add(generation)

        for namespace in (IMAGE_META_NAMESPACE, API_ENTRY_NAMESPACE):
            for key in await self.store.scan_keys(f"{namespace}:v*"):
                tag = key[len(namespace) + 1:].split(":", 1)[0]
                generation = parse_generation_tag(tag)
                if generation:
                    generations.add(generation)

        return generations
