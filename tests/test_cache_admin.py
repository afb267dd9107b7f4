"""Tests for usage accounting and generation purges."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from constants import CACHE_GENERATION_KEY
from core.keys import api_entry_key, image_meta_key, sha256_hex
from models.cache import CacheStatus, ImageCacheMeta, PurgeStatus
from services.api_cache import build_cache_seed
from services.image_cache import ImageCacheService


def seed_generation(settings, fake_redis, generation, files=1):
    """Lay down blob files and records for ``generation`` without the request path."""
    directory = Path(settings.image_cache_dir) / f"v{generation}"
    directory.mkdir(parents=True, exist_ok=True)
    for index in range(files):
        (directory / f"{index}.bin").write_bytes(b"x" * 100)
        fake_redis.data[image_meta_key(generation, f"k{index}")] = ("{}", None)
    fake_redis.data[api_entry_key(generation, "seed")] = ('{"payload":1}', None)


async def fill_active(image_cache, api_cache):
    await image_cache.fetch_cached_binary("poster:1", "https://img.example/p1.jpg")
    await api_cache.fetch_cached_json(
        "/movie/1", AsyncMock(return_value={"id": 1}), credential_seed="key",
    )


class TestUsage:

    async def test_empty_cache_reports_zeros(self, cache_admin):
        usage = await cache_admin.usage()
        assert usage.total_bytes == 0
        assert (usage.image_files, usage.api_entries) == (0, 0)

    async def test_counts_active_generation(self, cache_admin, image_cache, api_cache, fake_redis,
                                           upstream):
        await fill_active(image_cache, api_cache)
        usage = await cache_admin.usage()

        api_keys = fake_redis.keys_matching("helprr:cache:tmdb:v1:*")
        expected_api_bytes = sum([await fake_redis.strlen(k) for k in api_keys])
        assert usage.image_files == 1
        assert usage.image_bytes == len(upstream.body)
        assert usage.api_entries == 1
        assert usage.api_bytes == expected_api_bytes > 0
        assert usage.total_bytes == usage.image_bytes + usage.api_bytes

    async def test_other_generations_are_not_counted(self, cache_admin, settings, fake_redis):
        seed_generation(settings, fake_redis, generation=4, files=3)
        assert (await cache_admin.usage()).total_bytes == 0
        assert (await cache_admin.usage(generation=4)).image_files == 3

    async def test_store_down_zeroes_only_the_kv_side(self, cache_admin, image_cache, api_cache, fake_redis):
        await fill_active(image_cache, api_cache)
        fake_redis.down = True

        usage = await cache_admin.usage()
        assert usage.image_files == 1
        assert (usage.api_entries, usage.api_bytes) == (0, 0)

    async def test_serialized_with_camel_case(self, cache_admin):
        dumped = (await cache_admin.usage()).model_dump(by_alias=True)
        assert set(dumped) == {"imageBytes", "imageFiles", "apiBytes", "apiEntries", "totalBytes"}


class TestPurgeActive:

    async def test_removes_everything_and_keeps_generation(self, cache_admin, image_cache, api_cache,
                                                           fake_redis, settings):
        await fill_active(image_cache, api_cache)
        before = await cache_admin.usage()

        result = await cache_admin.purge_active()
        assert result.generation == 1
        assert result.deleted_image_files == 1
        assert result.deleted_api_entries == 1
        assert result.deleted_total_bytes == before.total_bytes

        assert (await cache_admin.usage()).total_bytes == 0
        assert fake_redis.keys_matching("helprr:cache:image:v1:*") == []
        assert fake_redis.keys_matching("helprr:cache:tmdb:v1:*") == []
        assert not (Path(settings.image_cache_dir) / "v1").exists()
        assert await fake_redis.get(CACHE_GENERATION_KEY) == "1"

    async def test_next_request_is_a_miss(self, cache_admin, image_cache):
        await image_cache.fetch_cached_binary("poster:1", "https://img.example/p1.jpg")
        await cache_admin.purge_active()
        result = await image_cache.fetch_cached_binary("poster:1", "https://img.example/p1.jpg")
        assert result.cache_status == CacheStatus.MISS

    async def test_records_purge_timestamp(self, cache_admin):
        result = await cache_admin.purge_active()
        meta = await cache_admin.maintenance_meta()
        assert meta.status == PurgeStatus.IDLE
        assert meta.last_purged_at == result.purged_at

    async def test_status_is_purging_while_running(self, cache_admin, state, monkeypatch):
        seen = []
        original = cache_admin._purge_generation

        async def observe(generation):
            seen.append(await state.get_purge_status())
            return await original(generation)

        monkeypatch.setattr(cache_admin, "_purge_generation", observe)
        await cache_admin.purge_active()
        assert seen == [PurgeStatus.PURGING]
        assert await state.get_purge_status() == PurgeStatus.IDLE

    async def test_status_resets_to_idle_on_failure(self, cache_admin, state, store, monkeypatch):
        monkeypatch.setattr(store, "scan_keys", AsyncMock(side_effect=RuntimeError("boom")))
        with pytest.raises(RuntimeError):
            await cache_admin.purge_active()
        assert await state.get_purge_status() == PurgeStatus.IDLE


class TestDisableAndPurge:

    async def test_advances_and_purges_previous(self, cache_admin, image_cache, api_cache,
                                                state, fake_redis, settings):
        await fill_active(image_cache, api_cache)

        result = await cache_admin.disable_and_purge()
        assert result.generation == 1
        assert result.deleted_image_files == 1
        assert await state.current_generation() == 2
        assert fake_redis.keys_matching("helprr:cache:*:v1:*") == []
        assert not (Path(settings.image_cache_dir) / "v1").exists()

    async def test_new_generation_data_survives(self, cache_admin, settings, fake_redis):
        # Writes that already landed in the next generation
        seed_generation(settings, fake_redis, generation=2)

        await cache_admin.disable_and_purge()
        assert (Path(settings.image_cache_dir) / "v2" / "0.bin").exists()
        assert fake_redis.keys_matching("helprr:cache:tmdb:v2:*")
        assert (await cache_admin.usage()).image_files == 1

    async def test_in_flight_image_write_lands_in_new_generation(self, cache_admin, settings, store,
                                                                 state, locks, clock, fake_redis):
        started, release = asyncio.Event(), asyncio.Event()
        body = b"\x89PNG\r\n\x1a\n" + b"\x02" * 512

        async def slow_upstream(request):
            started.set()
            await release.wait()
            return httpx.Response(200, content=body, headers={"content-type": "image/png"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_upstream)) as client:
            service = ImageCacheService(settings, store, state, locks, http_client=client, clock=clock)
            request = asyncio.create_task(
                service.fetch_cached_binary("poster:9", "https://img.example/p9.jpg")
            )
            await started.wait()
            await cache_admin.disable_and_purge()
            release.set()
            result = await request

        assert result.cache_status == CacheStatus.MISS
        assert await fake_redis.get(image_meta_key(1, "poster:9")) is None
        meta = ImageCacheMeta.model_validate_json(await fake_redis.get(image_meta_key(2, "poster:9")))
        assert meta.generation == 2
        assert meta.relative_path == f"v2/{sha256_hex('poster:9')}.bin"

        cache_dir = Path(settings.image_cache_dir)
        assert not (cache_dir / "v1").exists()
        assert (cache_dir / meta.relative_path).read_bytes() == body

    async def test_in_flight_json_write_lands_in_new_generation(self, cache_admin, api_cache, fake_redis):
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_fetcher():
            started.set()
            await release.wait()
            return {"id": 9}

        request = asyncio.create_task(
            api_cache.fetch_cached_json("/movie/9", slow_fetcher, credential_seed="key")
        )
        await started.wait()
        await cache_admin.disable_and_purge()
        release.set()
        assert await request == {"id": 9}

        seed = build_cache_seed("/movie/9", None, "key")
        assert await fake_redis.get(api_entry_key(1, seed)) is None
        assert await fake_redis.get(api_entry_key(2, seed)) is not None

    async def test_status_returns_to_idle(self, cache_admin, state):
        await cache_admin.disable_and_purge()
        assert await state.get_purge_status() == PurgeStatus.IDLE
        assert await state.get_last_purged_at() is not None


class TestOrphanedGenerations:

    async def test_collects_generations_older_than_previous(self, cache_admin, settings, fake_redis):
        for generation in (1, 2, 3, 4):
            seed_generation(settings, fake_redis, generation)
        await fake_redis.set(CACHE_GENERATION_KEY, "4")

        results = await cache_admin.purge_orphaned_generations()
        assert [r.generation for r in results] == [1, 2]

        remaining = sorted(p.name for p in Path(settings.image_cache_dir).iterdir())
        assert remaining == ["v3", "v4"]
        assert fake_redis.keys_matching("helprr:cache:*:v1:*") == []
        assert fake_redis.keys_matching("helprr:cache:tmdb:v3:*")

    async def test_finds_generations_present_only_in_redis(self, cache_admin, fake_redis):
        fake_redis.data[api_entry_key(1, "seed")] = ("{}", None)
        await fake_redis.set(CACHE_GENERATION_KEY, "5")

        results = await cache_admin.purge_orphaned_generations()
        assert [r.generation for r in results] == [1]
        assert fake_redis.keys_matching("helprr:cache:tmdb:*") == []

    async def test_nothing_to_do(self, cache_admin, state):
        assert await cache_admin.purge_orphaned_generations() == []
        assert await state.get_last_purged_at() is None


async def test_maintenance_meta_with_store_down(cache_admin, fake_redis):
    fake_redis.down = True
    meta = await cache_admin.maintenance_meta()
    assert meta.status == PurgeStatus.IDLE
    assert meta.last_purged_at is None
