"""Shared fixtures for the cache core test suite.

Redis is replaced by ``InMemoryRedis``, a test double implementing only the
commands the core issues, driven by the same fake clock as the services so
TTLs and freshness windows can be stepped through deterministically.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.cache import CacheService
from core.cache_state import CacheStateRegistry
from core.config import Settings
from core.locks import AdvisoryLockCoordinator
from services.api_cache import ApiCacheService
from services.cache_admin import CacheAdminService
from services.image_cache import ImageCacheService

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 2048


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def seconds(self) -> float:
        return self.now / 1000

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class InMemoryRedis:
    """Minimal async Redis stand-in with expiry and a switchable outage."""

    def __init__(self, clock: Callable[[], int]):
        self._clock = clock
        self.data: Dict[str, Tuple[str, Optional[int]]] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _live(self, key: str) -> Optional[Tuple[str, Optional[int]]]:
        entry = self.data.get(key)
        if entry and entry[1] is not None and entry[1] <= self._clock():
            del self.data[key]
            return None
        return entry

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key, value, ex=None, px=None, nx=False):
        self._check()
        if nx and self._live(key):
            return None
        expires_at = None
        if ex is not None:
            expires_at = self._clock() + int(ex) * 1000
        elif px is not None:
            expires_at = self._clock() + int(px)
        self.data[key] = (str(value), expires_at)
        return True

    async def incr(self, key: str) -> int:
        self._check()
        entry = self._live(key)
        value = int(entry[0]) + 1 if entry else 1
        self.data[key] = (str(value), entry[1] if entry else None)
        return value

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self._live(key):
                del self.data[key]
                deleted += 1
        return deleted

    async def strlen(self, key: str) -> int:
        self._check()
        entry = self._live(key)
        return len(entry[0].encode("utf-8")) if entry else 0

    async def scan_iter(self, match: str = "*", count: Optional[int] = None):
        self._check()
        for key in list(self.data):
            if self._live(key) and fnmatch.fnmatchcase(key, match):
                yield key

    async def eval(self, script: str, numkeys: int, *args):
        # Only script the core runs: compare-and-delete
        self._check()
        key, token = args[0], args[1]
        entry = self._live(key)
        if entry and entry[0] == token:
            del self.data[key]
            return 1
        return 0

    async def aclose(self) -> None:
        return None

    def keys_matching(self, pattern: str) -> List[str]:
        return [k for k in list(self.data) if self._live(k) and fnmatch.fnmatchcase(k, pattern)]


class UpstreamStub:
    """httpx.MockTransport handler with a scripted response and a call log."""

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.status = 200
        self.body = PNG_BYTES
        self.content_type: Optional[str] = "image/png"
        self.raise_error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        if self.status >= 400:
            return httpx.Response(self.status, content=b"error")
        headers = {"content-type": self.content_type} if self.content_type else {}
        return httpx.Response(self.status, content=self.body, headers=headers)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        image_cache_dir=tmp_path / "image-cache",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'db' / 'settings.db'}",
        _env_file=None,
    )


@pytest.fixture
def fake_redis(clock: FakeClock) -> InMemoryRedis:
    return InMemoryRedis(clock)


@pytest.fixture
def store(settings: Settings, fake_redis: InMemoryRedis) -> CacheService:
    return CacheService(settings, client=fake_redis)


@pytest.fixture
def settings_db() -> AsyncMock:
    """Application settings store reporting caching enabled (stored row and last write)."""
    database = AsyncMock()
    database.get_cache_images_enabled.return_value = True
    database.set_cache_images_enabled.return_value = True
    return database


@pytest.fixture
def state(store: CacheService, settings_db: AsyncMock, settings: Settings,
          clock: FakeClock) -> CacheStateRegistry:
    return CacheStateRegistry(store, settings_db, settings, clock=clock.seconds)


@pytest.fixture
def locks(store: CacheService, settings: Settings) -> AdvisoryLockCoordinator:
    return AdvisoryLockCoordinator(store, settings)


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
async def http_client(upstream: UpstreamStub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def image_cache(settings, store, state, locks, http_client, clock) -> ImageCacheService:
    return ImageCacheService(settings, store, state, locks, http_client=http_client, clock=clock)


@pytest.fixture
def api_cache(settings, store, state, locks, clock) -> ApiCacheService:
    return ApiCacheService(settings, store, state, locks, clock=clock)


@pytest.fixture
def cache_admin(settings, store, state) -> CacheAdminService:
    return CacheAdminService(settings, store, state)
