"""Cache records, results and policies.

All records stored in Redis are serialized with camelCase field names so the
stored layout matches what the web client and older instances expect.
"""

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds, the unit of every stored timestamp."""
    return int(time.time() * 1000)


class CacheStatus(str, Enum):
    """Outcome of a request-path cache lookup.

    BYPASS       caching disabled, served straight from upstream
    HIT          fresh entry served, upstream not contacted
    MISS         no entry existed, upstream consulted
    REVALIDATED  an expired entry existed, upstream consulted
    STALE        expired entry served (lock contention or upstream failure)
    """
    BYPASS = "BYPASS"
    HIT = "HIT"
    MISS = "MISS"
    REVALIDATED = "REVALIDATED"
    STALE = "STALE"


class PurgeStatus(str, Enum):
    IDLE = "idle"
    PURGING = "purging"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class CachePolicy(BaseModel):
    """Per-call TTL and stale windows, in seconds."""
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    stale_seconds: Optional[int] = Field(default=None, ge=0)


class TimedEntry(CamelModel):
    """Freshness window shared by every cached record (epoch milliseconds)."""
    fetched_at: int
    expires_at: int
    stale_until: int

    def is_fresh(self, now_ms: int) -> bool:
        return now_ms < self.expires_at

    def is_stale_eligible(self, now_ms: int) -> bool:
        return now_ms < self.stale_until

    def redis_ttl_seconds(self, now_ms: int) -> int:
        """Seconds until the record is useless even as a stale copy (>= 1)."""
        remaining_ms = self.stale_until - now_ms
        return max(1, -(-remaining_ms // 1000))


class ImageCacheMeta(TimedEntry):
    """Metadata for one cached blob; the bytes live on disk at relative_path."""
    generation: int
    relative_path: str
    content_type: str
    size_bytes: int = 0


class ApiCacheEntry(TimedEntry):
    """One cached JSON payload, stored inline."""
    endpoint: str
    key_hash: str
    payload: Any


class UpstreamImageResponse(BaseModel):
    status: int
    ok: bool
    body: Optional[bytes] = None
    content_type: Optional[str] = None


class CachedImageResult(BaseModel):
    """What a route handler gets back from the image cache."""
    status: int
    body: Optional[bytes] = None
    content_type: Optional[str] = None
    cache_status: CacheStatus


class CacheUsageSummary(CamelModel):
    image_bytes: int = 0
    image_files: int = 0
    api_bytes: int = 0
    api_entries: int = 0
    total_bytes: int = 0


class CachePurgeResult(CamelModel):
    generation: int
    deleted_image_bytes: int = 0
    deleted_image_files: int = 0
    deleted_api_bytes: int = 0
    deleted_api_entries: int = 0
    deleted_total_bytes: int = 0
    purged_at: str


class CacheMaintenanceMeta(CamelModel):
    status: PurgeStatus = PurgeStatus.IDLE
    last_purged_at: Optional[str] = None
