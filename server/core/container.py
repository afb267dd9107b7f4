"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from core.cache_state import CacheStateRegistry
from core.locks import AdvisoryLockCoordinator
from services.api_cache import ApiCacheService
from services.cache_admin import CacheAdminService
from services.image_cache import ImageCacheService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Application settings store (cache-enabled flag)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Shared key-value store
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    cache_state = providers.Singleton(
        CacheStateRegistry,
        store=cache,
        database=database,
        settings=settings
    )

    cache_locks = providers.Singleton(
        AdvisoryLockCoordinator,
        store=cache,
        settings=settings
    )

    # Shared upstream HTTP client (pooled connections), closed in the app lifespan
    http_client = providers.Singleton(
        httpx.AsyncClient,
        follow_redirects=True,
        timeout=settings.provided.image_upstream_timeout_seconds
    )

    # Request-path caches
    image_cache = providers.Singleton(
        ImageCacheService,
        settings=settings,
        store=cache,
        state=cache_state,
        locks=cache_locks,
        http_client=http_client
    )

    api_cache = providers.Singleton(
        ApiCacheService,
        settings=settings,
        store=cache,
        state=cache_state,
        locks=cache_locks
    )

    # Maintenance
    cache_admin = providers.Singleton(
        CacheAdminService,
        settings=settings,
        store=cache,
        state=cache_state
    )


# Global container instance
container = Container()
