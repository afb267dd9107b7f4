"""Cache maintenance routes for the settings page."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.cache_state import CacheStateRegistry
from core.container import container
from core.database import Database
from core.logging import get_logger
from services.cache_admin import CacheAdminService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/settings/cache", tags=["cache"])


class CacheSettingsRequest(BaseModel):
    enabled: bool


@router.get("")
async def get_cache_overview(
    state: CacheStateRegistry = Depends(lambda: container.cache_state()),
    admin: CacheAdminService = Depends(lambda: container.cache_admin())
):
    """Current flag, active-generation usage and purge status."""
    enabled = await state.caching_enabled(force_refresh=True)
    usage = await admin.usage()
    maintenance = await admin.maintenance_meta()
    return {
        "enabled": enabled,
        "usage": usage.model_dump(by_alias=True),
        "status": maintenance.status.value,
        "lastPurgedAt": maintenance.last_purged_at,
    }


@router.delete("")
async def purge_cache(
    admin: CacheAdminService = Depends(lambda: container.cache_admin())
):
    """Purge the active generation in place."""
    result = await admin.purge_active()
    usage = await admin.usage()
    return {
        "purged": True,
        "result": result.model_dump(by_alias=True),
        "usage": usage.model_dump(by_alias=True),
    }


@router.put("")
async def update_cache_settings(
    request: CacheSettingsRequest,
    database: Database = Depends(lambda: container.database()),
    state: CacheStateRegistry = Depends(lambda: container.cache_state()),
    admin: CacheAdminService = Depends(lambda: container.cache_admin())
):
    """Persist the flag; turning caching off also retires and purges the cache.

    The transition is judged against the stored row the write replaced, so
    disabling an already-disabled cache never purges again.
    """
    previously_enabled = await database.set_cache_images_enabled(request.enabled)
    if previously_enabled is None:
        return JSONResponse(status_code=500, content={"error": "Failed to save cache settings"})
    state.set_caching_enabled_local(request.enabled)

    result = None
    if previously_enabled and not request.enabled:
        purge = await admin.disable_and_purge()
        result = purge.model_dump(by_alias=True)
        logger.info("Caching disabled and previous generation purged",
                    generation=purge.generation)

    return {"enabled": request.enabled, "result": result}
