from __future__ import annotations

import asyncio

import pytest

from notifyflow.services.cache import (
    GENERATION_COUNTER_KEY,
    LIST_GENERATION_KEY,
    CacheService,
    notification_generation_key,
    notification_item_key,
    notification_list_key,
)
from notifyflow.services.telemetry import get_counter
from notifyflow.tests.utils.fakes import FakeRedis


@pytest.mark.asyncio
async def test_set_and_get_json_with_ttl() -> None:
    redis = FakeRedis()
    cache = CacheService(redis, default_ttl_s=300)
    assert await cache.get_json("missing") is None
    assert await cache.set_json("k", {"a": 1}) is True
    assert await cache.get_json("k") == {"a": 1}
    assert redis.ttls["k"] == 300
    await cache.set_json("item", [1, 2], ttl_s=3600)
    assert redis.ttls["item"] == 3600
    assert get_counter("cache_hits_total") == 1
    assert get_counter("cache_misses_total") == 1


@pytest.mark.asyncio
async def test_corrupt_entry_is_dropped() -> None:
    redis = FakeRedis()
    cache = CacheService(redis)
    redis.values["k"] = "{not json"
    assert await cache.get_json("k") is None
    assert "k" not in redis.values


@pytest.mark.asyncio
async def test_cache_degrades_when_redis_is_down() -> None:
    redis = FakeRedis()
    cache = CacheService(redis)
    redis.down = True
    assert await cache.get_json("k") is None
    assert await cache.set_json("k", {"a": 1}) is False
    assert await cache.delete("k") is False
    assert await cache.generation(LIST_GENERATION_KEY) is None
    assert await cache.advance_generation(LIST_GENERATION_KEY) is False
    assert await cache.publish("notifications", {"kind": "created"}) is False
    assert await cache.ping() is False


@pytest.mark.asyncio
async def test_generation_keys_separate_pages_and_items() -> None:
    assert notification_list_key(None, 50, 0, 3) == "notifications:recent:v3:all:50:0"
    assert notification_list_key("user-1", 10, 20) == "notifications:recent:v0:user-1:10:20"
    assert notification_item_key("n-1", 7) == "notification:n-1:v7"
    assert notification_generation_key("n-1") == "notification:n-1:generation"


@pytest.mark.asyncio
async def test_advance_generation_never_reuses_a_value() -> None:
    redis = FakeRedis()
    cache = CacheService(redis)
    item = notification_generation_key("n-1")
    assert await cache.generation(item) == 0
    assert await cache.advance_generation(item, ttl_s=7200) is True
    first = await cache.generation(item)
    assert first == 1 and redis.ttls[item] == 7200

    # An expired item generation restarts from the shared counter, not from zero.
    await cache.advance_generation(LIST_GENERATION_KEY)
    del redis.values[item]
    assert await cache.generation(item) == 0
    await cache.advance_generation(item, ttl_s=7200)
    assert await cache.generation(item) == 3
    assert await cache.generation(LIST_GENERATION_KEY) == 2
    assert LIST_GENERATION_KEY not in redis.ttls
    assert redis.values[GENERATION_COUNTER_KEY] == "3"


@pytest.mark.asyncio
async def test_corrupt_generation_bypasses_cache() -> None:
    redis = FakeRedis()
    cache = CacheService(redis)
    redis.values[LIST_GENERATION_KEY] = "not-a-number"
    assert await cache.generation(LIST_GENERATION_KEY) is None


@pytest.mark.asyncio
async def test_listen_yields_published_messages() -> None:
    redis = FakeRedis()
    cache = CacheService(redis)
    received: list[dict] = []

    async def consume() -> None:
        async for message in cache.listen("notifications"):
            received.append(message)
            break

    task = asyncio.create_task(consume())
    for _ in range(50):
        if redis._subscribers.get("notifications"):
            break
        await asyncio.sleep(0.005)
    assert await cache.publish("notifications", {"kind": "created", "id": "n-1"}) is True
    await asyncio.wait_for(task, timeout=1.0)
    assert received == [{"kind": "created", "id": "n-1"}]
