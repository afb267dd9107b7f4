"""SQLModel database models and tables."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import func

APP_SETTINGS_ID = "singleton"


class AppSettings(SQLModel, table=True):
    """Application-wide settings; a single row keyed by APP_SETTINGS_ID."""

    __tablename__ = "app_settings"

    id: str = Field(default=APP_SETTINGS_ID, primary_key=True, max_length=32)
    cache_images_enabled: bool = Field(default=True)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    )
