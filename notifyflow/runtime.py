from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings
from redis.asyncio import Redis
from redis.exceptions import RedisError

from notifyflow.core.config import Settings
from notifyflow.persistence.db import Store
from notifyflow.services.batch_handlers import HandlerContext, UserSync, noop_user_sync
from notifyflow.services.batch_jobs import BatchJobEngine, JobQueue
from notifyflow.services.cache import CacheService
from notifyflow.services.delivery import NotificationConsumer
from notifyflow.services.events import EventLogService
from notifyflow.services.notifications import NotificationService
from notifyflow.services.scheduler import Scheduler
from notifyflow.services.stream import StreamService
from notifyflow.services.transport import Transport, build_transport


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-wide service handles, built once at startup and closed on shutdown."""

    settings: Settings
    store: Store
    redis: Redis
    cache: CacheService
    stream: StreamService
    events: EventLogService
    notifications: NotificationService
    scheduler: Scheduler
    consumer: NotificationConsumer
    batch_jobs: BatchJobEngine
    job_queue: JobQueue | None = None
    _owned: set[str] = field(default_factory=set)

    async def close(self) -> None:
        grace = self.settings.shutdown_grace_s
        await self.consumer.close(grace)
        await self.stream.close(grace)
        # Flush confirmations and retry republishes while connections are still open.
        await self.scheduler.close(grace)
        if "job_queue" in self._owned and self.job_queue is not None:
            await _close_quietly(self.job_queue)
        if "redis" in self._owned:
            await _close_quietly(self.redis)
        if "store" in self._owned:
            await self.store.dispose()
        logger.info("runtime_closed")


async def _close_quietly(client: Any) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("runtime_client_close_failed client=%s", type(client).__name__, exc_info=exc)


async def create_job_queue(settings: Settings) -> JobQueue | None:
    # Batch enqueue degrades to JobQueueError when Redis is unavailable at startup.
    try:
        return await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=settings.batch_queue_name,
        )
    except (RedisError, OSError) as exc:
        logger.warning("job_queue_unavailable", exc_info=exc)
        return None


async def build_runtime(
    settings: Settings,
    *,
    store: Store | None = None,
    redis: Redis | None = None,
    transport: Transport | None = None,
    job_queue: JobQueue | None = None,
    user_sync: UserSync | None = None,
    create_queue: bool = True,
) -> Runtime:
    owned: set[str] = set()
    if store is None:
        store = Store.from_settings(settings)
        owned.add("store")
    if redis is None:
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        owned.add("redis")
    if job_queue is None and create_queue:
        job_queue = await create_job_queue(settings)
        if job_queue is not None:
            owned.add("job_queue")

    cache = CacheService(redis, default_ttl_s=settings.cache_list_ttl_s)
    stream = StreamService.from_settings(redis, settings)
    events = EventLogService(store, stream, source=settings.stream_client_id)
    notifications = NotificationService(store, cache, stream, events, settings)
    scheduler = Scheduler(name="notifyflow")
    consumer = NotificationConsumer(
        notifications,
        stream,
        transport or build_transport(settings),
        scheduler,
        settings,
    )
    batch_jobs = BatchJobEngine(
        store,
        events,
        job_queue,
        HandlerContext(notifications=notifications, events=events, user_sync=user_sync or noop_user_sync),
        settings,
    )
    return Runtime(
        settings=settings,
        store=store,
        redis=redis,
        cache=cache,
        stream=stream,
        events=events,
        notifications=notifications,
        scheduler=scheduler,
        consumer=consumer,
        batch_jobs=batch_jobs,
        job_queue=job_queue,
        _owned=owned,
    )
