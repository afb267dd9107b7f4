"""Async database service with SQLModel and SQLAlchemy 2.0.

Owns the persisted application settings record. The cache core only reads the
``cache_images_enabled`` flag; the maintenance surface is its sole writer.
"""

from contextlib import asynccontextmanager
from typing import Optional

from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from models.database import APP_SETTINGS_ID, AppSettings

logger = get_logger(__name__)


class Database:
    """Owner of the application settings database (engine, sessions, settings row)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Open the engine and make sure the app_settings table exists."""
        try:
            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                future=True
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Settings database ready", url=self.settings.database_url)

        except Exception as e:
            logger.error("Settings database startup failed", url=self.settings.database_url, error=str(e))
            raise

    async def shutdown(self):
        """Dispose of the engine and its pooled connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Yield a session; rolls back if the block raises."""
        if not self.async_session:
            raise RuntimeError("Settings database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Application Settings
    # ============================================================================

    async def get_cache_images_enabled(self) -> Optional[bool]:
        """Read the persisted cache flag.

        Returns None when no settings row exists yet. Database errors
        propagate so the caller can apply its own fallback.
        """
        async with self.get_session() as session:
            stmt = select(AppSettings).where(AppSettings.id == APP_SETTINGS_ID)
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return row.cache_images_enabled if row else None

    async def set_cache_images_enabled(self, enabled: bool) -> Optional[bool]:
        """Persist the cache flag, creating the settings row on first write.

        Returns the value it replaced (True when no row existed yet), or None
        when the write failed.
        """
        try:
            async with self.get_session() as session:
                stmt = select(AppSettings).where(AppSettings.id == APP_SETTINGS_ID)
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()

                previous = row.cache_images_enabled if row else True
                if row:
                    row.cache_images_enabled = enabled
                else:
                    session.add(AppSettings(id=APP_SETTINGS_ID, cache_images_enabled=enabled))

                await session.commit()
                logger.info("Cache images setting saved", enabled=enabled, previous=previous)
                return previous

        except Exception as e:
            logger.error("Failed to save cache images setting", enabled=enabled, error=str(e))
            return None
