"""Tests for the in-process and Redis eligibility caches."""

import fakeredis.aioredis
import pytest

from tenantauth.db.models import Plan
from tenantauth.services.cache import MemoryEligibilityCache, RedisEligibilityCache
from tenantauth.services.eligibility import EligibilityResult

ELIGIBLE = EligibilityResult(eligible=True)
DENIED = EligibilityResult(eligible=False, reasons=["nope"], suggested_plan=Plan.PRO)


@pytest.fixture
def memory_cache() -> MemoryEligibilityCache:
    return MemoryEligibilityCache(ttl_seconds=60, max_entries=3)


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def redis_cache(redis_client) -> RedisEligibilityCache:
    return RedisEligibilityCache(redis_client, ttl_seconds=60)


@pytest.fixture(params=["memory", "redis"])
def cache(request, memory_cache, redis_cache):
    return memory_cache if request.param == "memory" else redis_cache


# ---------------------------------------------------------------------------
# Behaviour shared by both backends
# ---------------------------------------------------------------------------


class TestCacheContract:
    async def test_miss_then_hit(self, cache) -> None:
        gen = await cache.generation("ws")
        assert await cache.get("ws", gen, "m", "free") is None
        await cache.set("ws", gen, "m", "free", DENIED)
        cached = await cache.get("ws", gen, "m", "free")
        assert cached == DENIED

    async def test_plan_is_part_of_key(self, cache) -> None:
        gen = await cache.generation("ws")
        await cache.set("ws", gen, "m", "free", DENIED)
        assert await cache.get("ws", gen, "m", "pro") is None

    async def test_invalidate_bumps_generation(self, cache) -> None:
        gen = await cache.generation("ws")
        await cache.set("ws", gen, "m", "free", ELIGIBLE)
        await cache.invalidate_workspace("ws")

        new_gen = await cache.generation("ws")
        assert new_gen > gen
        assert await cache.get("ws", new_gen, "m", "free") is None
        assert await cache.get("ws", gen, "m", "free") is None

    async def test_invalidate_leaves_other_workspaces(self, cache) -> None:
        await cache.set("ws-a", 0, "m", "free", ELIGIBLE)
        await cache.set("ws-b", 0, "m", "free", ELIGIBLE)
        await cache.invalidate_workspace("ws-a")
        assert await cache.get("ws-b", 0, "m", "free") == ELIGIBLE


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class TestMemoryCache:
    async def test_stale_generation_write_is_dropped(self, memory_cache) -> None:
        gen = await memory_cache.generation("ws")
        await memory_cache.invalidate_workspace("ws")
        await memory_cache.set("ws", gen, "m", "free", ELIGIBLE)
        assert len(memory_cache) == 0

    async def test_bounded_size(self, memory_cache) -> None:
        for i in range(5):
            await memory_cache.set("ws", 0, f"m{i}", "free", ELIGIBLE)
        assert len(memory_cache) == 3
        assert await memory_cache.get("ws", 0, "m0", "free") is None
        assert await memory_cache.get("ws", 0, "m4", "free") == ELIGIBLE

    async def test_ttl_expiry(self) -> None:
        now = [1000.0]
        cache = MemoryEligibilityCache(ttl_seconds=10, timer=lambda: now[0])
        await cache.set("ws", 0, "m", "free", ELIGIBLE)
        now[0] += 11
        assert await cache.get("ws", 0, "m", "free") is None

    async def test_returns_copies(self, memory_cache) -> None:
        await memory_cache.set("ws", 0, "m", "free", DENIED)
        first = await memory_cache.get("ws", 0, "m", "free")
        first.reasons.append("mutated")
        second = await memory_cache.get("ws", 0, "m", "free")
        assert second.reasons == ["nope"]

    async def test_generations_are_bounded(self, memory_cache) -> None:
        for i in range(10):
            await memory_cache.invalidate_workspace(f"ws-{i}")
        assert len(memory_cache._generations) == 3

    async def test_stale_write_dropped_after_generation_is_forgotten(self, memory_cache) -> None:
        gen = await memory_cache.generation("ws")
        await memory_cache.invalidate_workspace("ws")
        for i in range(3):
            await memory_cache.invalidate_workspace(f"other-{i}")

        assert await memory_cache.generation("ws") > gen
        await memory_cache.set("ws", gen, "m", "free", ELIGIBLE)
        assert len(memory_cache) == 0

        fresh = await memory_cache.generation("ws")
        await memory_cache.set("ws", fresh, "m", "free", ELIGIBLE)
        assert await memory_cache.get("ws", fresh, "m", "free") == ELIGIBLE


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class TestRedisCache:
    async def test_key_layout(self, redis_cache, redis_client) -> None:
        await redis_cache.set("ws", 0, "m", "free", ELIGIBLE)
        keys = [k async for k in redis_client.scan_iter(match="tenantauth:elig:*")]
        assert keys == ["tenantauth:elig:ws:0:m:free"]
        assert await redis_client.ttl(keys[0]) > 0

    async def test_unreadable_entry_is_a_miss(self, redis_cache, redis_client) -> None:
        await redis_client.set("tenantauth:elig:ws:0:m:free", "{not json")
        assert await redis_cache.get("ws", 0, "m", "free") is None

    async def test_errors_degrade_to_miss(self) -> None:
        class BrokenRedis:
            async def get(self, *args, **kwargs):
                raise ConnectionError("down")

            async def set(self, *args, **kwargs):
                raise ConnectionError("down")

        cache = RedisEligibilityCache(BrokenRedis())
        gen = await cache.generation("ws")
        assert gen == -1
        assert await cache.get("ws", gen, "m", "free") is None
        await cache.set("ws", gen, "m", "free", ELIGIBLE)
