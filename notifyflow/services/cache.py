from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import RedisError

from notifyflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RECENT_NOTIFICATIONS_KEY = "notifications:recent"
LIST_GENERATION_KEY = f"{RECENT_NOTIFICATIONS_KEY}:generation"
GENERATION_COUNTER_KEY = "cache:generation"


def notification_list_key(owner_id: str | None, limit: int, offset: int, generation: int = 0) -> str:
    return f"{RECENT_NOTIFICATIONS_KEY}:v{generation}:{owner_id or 'all'}:{limit}:{offset}"


def notification_item_key(notification_id: str, generation: int = 0) -> str:
    return f"notification:{notification_id}:v{generation}"


def notification_generation_key(notification_id: str) -> str:
    return f"notification:{notification_id}:generation"


class CacheService:
    """Best-effort JSON cache and pub/sub fan-out over Redis.

    Every operation degrades to a miss (or a ``False`` result) when Redis is
    unavailable; callers fall through to the durable store.
    """

    def __init__(self, redis: Redis, *, default_ttl_s: int = 300) -> None:
        self._redis = redis
        self._default_ttl_s = default_ttl_s

    async def get_json(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("cache_get_failed key=%s", key, exc_info=exc)
            return None
        if raw is None:
            increment_counter("cache_misses_total")
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("cache_entry_corrupt key=%s", key)
            await self.delete(key)
            return None
        increment_counter("cache_hits_total")
        return value

    async def set_json(self, key: str, value: Any, *, ttl_s: int | None = None) -> bool:
        ttl = int(ttl_s if ttl_s is not None else self._default_ttl_s)
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as exc:
            logger.warning("cache_set_failed key=%s", key, exc_info=exc)
            return False
        return True

    async def delete(self, *keys: str) -> bool:
        if not keys:
            return True
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("cache_delete_failed keys=%s", ",".join(keys), exc_info=exc)
            return False
        return True

    async def generation(self, key: str) -> int | None:
        """Read the generation stamped on ``key``; a missing key is generation 0.

        Returns ``None`` when the value cannot be read, in which case callers
        bypass the cache for that request.
        """
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("cache_generation_failed key=%s", key, exc_info=exc)
            return None
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            logger.warning("cache_generation_corrupt key=%s", key)
            return None

    async def advance_generation(self, *keys: str, ttl_s: int | None = None) -> bool:
        # Values come from one shared counter, so a generation is never reused after its key expires.
        if not keys:
            return True
        try:
            value = int(await self._redis.incr(GENERATION_COUNTER_KEY))
            for key in keys:
                await self._redis.set(key, value, ex=ttl_s)
        except RedisError as exc:
            logger.warning("cache_generation_advance_failed keys=%s", ",".join(keys), exc_info=exc)
            return False
        return True

    async def publish(self, channel: str, payload: dict[str, Any]) -> bool:
        try:
            await self._redis.publish(channel, json.dumps(payload, default=str))
        except RedisError as exc:
            logger.warning("cache_publish_failed channel=%s", channel, exc_info=exc)
            return False
        return True

    async def listen(self, channel: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages published on ``channel`` until the caller stops iterating."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for item in pubsub.listen():
                if item.get("type") != "message":
                    continue
                try:
                    yield json.loads(item["data"])
                except ValueError:
                    logger.warning("cache_pubsub_message_invalid channel=%s", channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False
