"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from models.cache import CachePolicy


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Key-value store (Redis)
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: int = Field(default=5)

    # Application settings database (holds the cache-enabled flag)
    database_url: str = Field(default="sqlite+aiosqlite:///./data/cache_core.db")
    database_echo: bool = Field(default=False)

    # Image cache
    image_cache_dir: Path = Field(default=Path("/tmp/helprr-image-cache"))
    image_cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60)  # 7 days
    image_cache_stale_seconds: int = Field(default=30 * 24 * 60 * 60)  # 30 days
    image_upstream_fetch_timeout_ms: int = Field(default=5_000)

    # Metadata API cache
    api_cache_default_ttl_seconds: int = Field(default=10 * 60)
    api_cache_discover_ttl_seconds: int = Field(default=10 * 60)
    api_cache_details_ttl_seconds: int = Field(default=24 * 60 * 60)
    api_cache_static_ttl_seconds: int = Field(default=7 * 24 * 60 * 60)
    api_cache_stale_seconds: int = Field(default=30 * 24 * 60 * 60)

    # Coordination
    cache_lock_ttl_ms: int = Field(default=10_000)
    cache_enabled_refresh_seconds: int = Field(default=5)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator(
        "redis_socket_timeout",
        "image_cache_ttl_seconds",
        "image_cache_stale_seconds",
        "image_upstream_fetch_timeout_ms",
        "api_cache_default_ttl_seconds",
        "api_cache_discover_ttl_seconds",
        "api_cache_details_ttl_seconds",
        "api_cache_static_ttl_seconds",
        "api_cache_stale_seconds",
        "cache_lock_ttl_ms",
        "cache_enabled_refresh_seconds",
        mode="before",
    )
    @classmethod
    def positive_int_or_default(cls, v, info):
        """Fall back to the declared default for unparsable or non-positive values."""
        default = cls.model_fields[info.field_name].default
        if v is None:
            return default
        try:
            parsed = int(str(v).strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def image_upstream_timeout_seconds(self) -> float:
        return self.image_upstream_fetch_timeout_ms / 1000

    @property
    def default_api_cache_policy(self) -> CachePolicy:
        return CachePolicy(
            ttl_seconds=self.api_cache_default_ttl_seconds,
            stale_seconds=self.api_cache_stale_seconds,
        )

    def api_cache_policy(self, name: str) -> CachePolicy:
        """Resolve a named call-site policy (discover, details, static).

        Unknown names resolve to the default policy.
        """
        ttl = {
            "discover": self.api_cache_discover_ttl_seconds,
            "details": self.api_cache_details_ttl_seconds,
            "static": self.api_cache_static_ttl_seconds,
        }.get(name, self.api_cache_default_ttl_seconds)
        return CachePolicy(ttl_seconds=ttl, stale_seconds=self.api_cache_stale_seconds)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
