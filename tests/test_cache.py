"""Tests for KeyedCache over the in-memory Redis stand-in.

Covers:
- JSON round trips, batches and counters
- Disabled mode behaving like a permanently cold cache
- Backend errors and timeouts degrading to misses
- get_or_set_with_lock single flight and contention fallback
- Pattern deletion across SCAN pages
"""

import asyncio
from datetime import datetime, timezone

import pytest

from fake_redis import FakeRedis

from authcore.storage.cache import KeyedCache


@pytest.fixture
def cache(fake_redis):
    return KeyedCache(client=fake_redis, operation_timeout=1.0, lock_wait_seconds=0.2)


class SlowRedis(FakeRedis):
    async def get(self, key):
        await asyncio.sleep(0.5)
        return await super().get(key)


async def test_json_round_trip_with_datetimes(cache):
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert await cache.set("user:1", {"id": "1", "created_at": stamp}, ttl=60)
    assert await cache.get("user:1") == {"id": "1", "created_at": stamp.isoformat()}
    assert await cache.get("user:missing") is None


async def test_set_refuses_none(cache, fake_redis):
    assert await cache.set("k", None) is False
    assert fake_redis.keys() == []


async def test_ttl_and_expiry(cache, fake_redis):
    await cache.set("k", "v", ttl=30)
    assert 0 < await cache.ttl("k") <= 30
    fake_redis.advance(31)
    assert await cache.get("k") is None
    assert await cache.ttl("k") == -2


async def test_counters(cache):
    assert await cache.increment("c") == 1
    assert await cache.increment("c", 4) == 5
    assert await cache.decrement("c", 2) == 3
    assert await cache.expire("c", 10)
    assert await cache.exists("c")


async def test_batches(cache):
    assert await cache.set_batch({"a": 1, "b": {"x": 2}}, ttl=60)
    found = await cache.get_batch(["a", "b", "c"])
    assert found == {"a": 1, "b": {"x": 2}}
    assert await cache.delete_batch(["a", "b", "c"]) == 2
    assert await cache.get_batch(["a", "b"]) == {}


async def test_delete_pattern_spans_scan_pages(cache, fake_redis):
    await cache.set_batch({f"user:{i}": i for i in range(250)}, ttl=60)
    await cache.set("token:abc", "keep", ttl=60)
    removed = await cache.delete_pattern("user:*")
    assert removed == 250
    assert fake_redis.keys("user:*") == []
    assert await cache.get("token:abc") == "keep"


async def test_disabled_mode_is_a_cold_cache():
    cache = KeyedCache()
    assert cache.mode == "disabled"
    assert await cache.set("k", "v") is False
    assert await cache.get("k") is None
    assert await cache.delete("k") is False
    assert await cache.exists("k") is False
    assert await cache.exists("k", default=True) is True
    assert await cache.increment("k") is None
    assert await cache.acquire_lock("k") is False
    assert await cache.health_check() is False

    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        return {"n": calls}

    assert await cache.get_or_set_with_lock("k", fetcher, ttl=10) == {"n": 1}
    assert await cache.get_or_set_with_lock("k", fetcher, ttl=10) == {"n": 2}


async def test_backend_errors_degrade_to_misses(cache, fake_redis):
    await cache.set("k", "v")
    fake_redis.fail = True
    assert await cache.get("k") is None
    assert await cache.set("k", "w") is False
    assert await cache.exists("k", default=True) is True
    assert await cache.increment("k") is None
    assert await cache.ttl("k") == -2
    assert await cache.health_check() is False


async def test_timeouts_degrade_to_misses():
    slow = SlowRedis()
    cache = KeyedCache(client=slow, operation_timeout=0.05)
    await slow.set("k", '"v"')
    assert await cache.get("k") is None


async def test_get_or_set_with_lock_single_flight(cache):
    calls = 0

    async def slow_fetcher():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return {"value": "fresh"}

    results = await asyncio.gather(
        *[cache.get_or_set_with_lock("user:42", slow_fetcher, ttl=60) for _ in range(10)]
    )

    assert calls == 1
    assert all(result == {"value": "fresh"} for result in results)
    assert await cache.get("user:42") == {"value": "fresh"}


async def test_lock_contention_falls_back_to_uncached_fetch(fake_redis):
    cache = KeyedCache(client=fake_redis, lock_wait_seconds=0.01)
    assert await cache.acquire_lock("user:7", ttl=30)

    async def fetcher():
        return {"id": "7"}

    assert await cache.get_or_set_with_lock("user:7", fetcher, ttl=60) == {"id": "7"}
    # The holder still owns the slot, so the local result was not stored
    assert await cache.get("user:7") is None


async def test_lock_released_when_fetcher_fails(cache, fake_redis):
    async def broken():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await cache.get_or_set_with_lock("user:9", broken, ttl=60)
    assert fake_redis.keys("lock:*") == []
    assert await cache.acquire_lock("user:9")


async def test_get_or_set_reads_through(cache):
    calls = []

    async def fetcher():
        calls.append(1)
        return {"id": "3"}

    assert await cache.get_or_set("user:3", fetcher, ttl=60) == {"id": "3"}
    assert await cache.get_or_set("user:3", fetcher, ttl=60) == {"id": "3"}
    assert len(calls) == 1
