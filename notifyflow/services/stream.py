from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from notifyflow.core.config import Settings
from notifyflow.core.errors import StreamError
from notifyflow.core.timeutil import utc_now
from notifyflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

NOTIFICATIONS_TOPIC = "notifications"
EVENTS_TOPIC = "events"
BATCH_JOBS_TOPIC = "batch-jobs"
DEAD_LETTER_TOPIC = "dead-letter-queue"

_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


@dataclass(frozen=True)
class StreamEntry:
    topic: str
    partition: int
    entry_id: str
    key: str | None
    raw: str
    message: dict[str, Any]


StreamHandler = Callable[[StreamEntry], Awaitable[Any]]


@dataclass(eq=False)
class Subscription:
    topic: str
    group_name: str
    partitions: list[int]
    tasks: list[asyncio.Task] = field(default_factory=list)
    stopping: bool = False


def partition_for(key: str | None, partitions: int) -> int:
    # Stable hash so every message for one key lands on the same partition across processes.
    if not key or partitions <= 1:
        return 0
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % partitions


def reconnect_delay_ms(attempt: int, *, base_ms: int, max_ms: int) -> int:
    # Capped exponential backoff between reconnect attempts.
    return min(max_ms, base_ms * (2 ** max(0, attempt - 1)))


class StreamService:
    """Partitioned, consumer-group event stream on Redis Streams.

    Each topic is split into ``partitions`` streams named
    ``{prefix}:{topic}:{partition}``. Publishing is at-least-once; a
    subscriber runs one reader per owned partition so messages sharing a key
    are handled in publish order.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "notifyflow",
        partitions: int = 4,
        client_id: str = "notifyflow",
        maxlen: int | None = 100_000,
        read_count: int = 10,
        block_ms: int = 1000,
        group_start_id: str = "0",
        reconnect_max_attempts: int = 8,
        reconnect_base_ms: int = 100,
        reconnect_max_ms: int = 2000,
        consumer_name: str | None = None,
    ) -> None:
        self._redis = redis
        self.prefix = prefix
        self.partitions = max(1, int(partitions))
        self.client_id = client_id
        self._maxlen = maxlen
        self._read_count = max(1, int(read_count))
        self._block_ms = max(1, int(block_ms))
        self._group_start_id = group_start_id
        self._reconnect_max_attempts = max(1, int(reconnect_max_attempts))
        self._reconnect_base_ms = max(1, int(reconnect_base_ms))
        self._reconnect_max_ms = max(self._reconnect_base_ms, int(reconnect_max_ms))
        self.consumer_name = consumer_name or f"{client_id}-{socket.gethostname()}-{uuid4().hex[:8]}"
        self._connected = True
        self._closing = False
        self._subscriptions: list[Subscription] = []

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings) -> "StreamService":
        return cls(
            redis,
            prefix=settings.stream_prefix,
            partitions=settings.stream_partitions,
            client_id=settings.stream_client_id,
            maxlen=settings.stream_maxlen or None,
            read_count=settings.stream_read_count,
            block_ms=settings.stream_block_ms,
            group_start_id=settings.stream_group_start_id,
            reconnect_max_attempts=settings.stream_reconnect_max_attempts,
            reconnect_base_ms=settings.stream_reconnect_base_ms,
            reconnect_max_ms=settings.stream_reconnect_max_ms,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def stream_key(self, topic: str, partition: int) -> str:
        return f"{self.prefix}:{topic}:{partition}"

    async def connect(self) -> None:
        await self._call("connect", self._redis.ping, reconnect=True)

    async def _call(self, op: str, func: Callable[[], Awaitable[Any]], *, reconnect: bool = False) -> Any:
        # Bounded retry on connection loss; once exhausted the service stays disconnected until a call succeeds.
        attempts = self._reconnect_max_attempts if (self._connected or reconnect) else 1
        attempt = 1
        while True:
            try:
                result = await func()
            except _TRANSIENT_ERRORS as exc:
                if attempt >= attempts:
                    if self._connected:
                        logger.error("stream_disconnected op=%s attempts=%s", op, attempt, exc_info=exc)
                    self._connected = False
                    increment_counter("stream_unavailable_total")
                    raise StreamError(f"stream unavailable during {op}: {exc}") from exc
                delay_ms = reconnect_delay_ms(
                    attempt, base_ms=self._reconnect_base_ms, max_ms=self._reconnect_max_ms
                )
                logger.warning("stream_reconnect_retry op=%s attempt=%s delay_ms=%s", op, attempt, delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1
                continue
            except RedisError as exc:
                raise StreamError(f"stream {op} failed: {exc}") from exc
            if not self._connected:
                logger.info("stream_reconnected op=%s", op)
            self._connected = True
            return result

    def _encode(self, message: dict[str, Any]) -> str:
        stamped = dict(message)
        stamped["timestamp"] = utc_now().isoformat()
        stamped["source"] = self.client_id
        return json.dumps(stamped, default=str)

    def _xadd_kwargs(self) -> dict[str, Any]:
        if not self._maxlen:
            return {}
        return {"maxlen": int(self._maxlen), "approximate": True}

    async def publish(self, topic: str, message: dict[str, Any], key: str | None = None) -> str:
        stream = self.stream_key(topic, partition_for(key, self.partitions))
        fields = {"key": key or "", "value": self._encode(message)}
        entry_id = await self._call(
            f"publish:{topic}",
            lambda: self._redis.xadd(stream, fields, **self._xadd_kwargs()),
        )
        increment_counter(f"stream_published_total.{topic}")
        return str(entry_id)

    async def publish_batch(
        self, topic: str, messages: Iterable[tuple[str | None, dict[str, Any]]]
    ) -> list[str]:
        """Publish ``(key, message)`` pairs in one transactional pipeline; failure covers the whole batch."""
        items = [(key, self._encode(message)) for key, message in messages]
        if not items:
            return []

        async def _send() -> list[Any]:
            async with self._redis.pipeline(transaction=True) as pipe:
                for key, value in items:
                    stream = self.stream_key(topic, partition_for(key, self.partitions))
                    pipe.xadd(stream, {"key": key or "", "value": value}, **self._xadd_kwargs())
                return await pipe.execute()

        entry_ids = await self._call(f"publish_batch:{topic}", _send)
        increment_counter(f"stream_published_total.{topic}", len(items))
        return [str(entry_id) for entry_id in entry_ids]

    async def publish_dead_letter(
        self,
        original_topic: str,
        raw: str,
        error: str,
        *,
        key: str | None = None,
        offset: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "originalTopic": original_topic,
            "message": raw,
            "error": error,
            "timestamp": utc_now().isoformat(),
        }
        if offset is not None:
            payload["offset"] = offset
        entry_id = await self.publish(DEAD_LETTER_TOPIC, payload, key=key)
        increment_counter("dead_letters_total")
        return entry_id

    async def read_topic(self, topic: str, *, count: int = 100) -> list[StreamEntry]:
        """Read the newest entries of every partition without a consumer group (inspection only)."""
        entries: list[StreamEntry] = []
        for partition in range(self.partitions):
            stream = self.stream_key(topic, partition)
            rows = await self._call(f"read:{topic}", lambda s=stream: self._redis.xrange(s, count=count))
            for entry_id, fields in rows or []:
                entries.append(self._to_entry(topic, partition, entry_id, fields))
        return entries

    def _to_entry(self, topic: str, partition: int, entry_id: str, fields: dict[str, Any]) -> StreamEntry:
        raw = str(fields.get("value") or "")
        message = json.loads(raw)
        if not isinstance(message, dict):
            raise ValueError("stream message must be a JSON object")
        return StreamEntry(
            topic=topic,
            partition=partition,
            entry_id=str(entry_id),
            key=fields.get("key") or None,
            raw=raw,
            message=message,
        )

    async def _ensure_group(self, stream: str, group_name: str) -> None:
        try:
            await self._call(
                "group_create",
                lambda: self._redis.xgroup_create(stream, group_name, id=self._group_start_id, mkstream=True),
            )
        except StreamError as exc:
            # BUSYGROUP means another consumer already created it.
            if "BUSYGROUP" not in str(exc):
                raise

    async def subscribe(
        self,
        topic: str,
        handler: StreamHandler,
        group_name: str,
        *,
        partitions: Iterable[int] | None = None,
    ) -> Subscription:
        if self._closing:
            raise StreamError("stream service closing; subscribe rejected")
        owned = sorted(set(partitions)) if partitions is not None else list(range(self.partitions))
        for partition in owned:
            await self._ensure_group(self.stream_key(topic, partition), group_name)
        subscription = Subscription(topic=topic, group_name=group_name, partitions=owned)
        subscription.tasks = [
            asyncio.create_task(
                self._read_partition(subscription, partition, handler),
                name=f"stream-reader:{topic}:{partition}",
            )
            for partition in owned
        ]
        self._subscriptions.append(subscription)
        logger.info(
            "stream_subscribed topic=%s group=%s partitions=%s consumer=%s",
            topic,
            group_name,
            ",".join(str(p) for p in owned),
            self.consumer_name,
        )
        return subscription

    async def _read_partition(self, subscription: Subscription, partition: int, handler: StreamHandler) -> None:
        topic = subscription.topic
        group_name = subscription.group_name
        stream = self.stream_key(topic, partition)
        # Drain this consumer's pending entries from a previous run before taking new ones.
        cursor = "0"
        while not (self._closing or subscription.stopping):
            try:
                response = await self._call(
                    f"read:{topic}",
                    lambda c=cursor: self._redis.xreadgroup(
                        group_name,
                        self.consumer_name,
                        {stream: c},
                        count=self._read_count,
                        block=None if c != ">" else self._block_ms,
                    ),
                )
            except StreamError:
                logger.exception("stream_read_failed topic=%s partition=%s", topic, partition)
                await asyncio.sleep(self._reconnect_max_ms / 1000.0)
                continue
            rows = response[0][1] if response else []
            if cursor != ">" and not rows:
                cursor = ">"
                continue
            for entry_id, fields in rows:
                if self._closing or subscription.stopping:
                    break
                await self._dispatch(topic, partition, stream, group_name, entry_id, fields, handler)
                if cursor != ">":
                    cursor = str(entry_id)

    async def _dispatch(
        self,
        topic: str,
        partition: int,
        stream: str,
        group_name: str,
        entry_id: str,
        fields: dict[str, Any],
        handler: StreamHandler,
    ) -> None:
        raw = str(fields.get("value") or "")
        key = fields.get("key") or None
        try:
            await handler(self._to_entry(topic, partition, entry_id, fields))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - handler failures are parked, never retried in place
            logger.warning(
                "stream_handler_failed topic=%s entry_id=%s error=%s", topic, entry_id, exc, exc_info=exc
            )
            try:
                await self.publish_dead_letter(
                    topic, raw, str(exc) or type(exc).__name__, key=key, offset=str(entry_id)
                )
            except StreamError:
                # Leave unacked so the pending-entry drain redelivers it after recovery.
                logger.error("stream_dead_letter_failed topic=%s entry_id=%s", topic, entry_id)
                return
        try:
            await self._call("ack", lambda: self._redis.xack(stream, group_name, entry_id))
        except StreamError:
            logger.error("stream_ack_failed topic=%s entry_id=%s", topic, entry_id)

    async def unsubscribe(self, subscription: Subscription, grace_s: float = 10.0) -> None:
        # Stop reading new entries, let in-flight handlers finish within the grace period, then cancel.
        subscription.stopping = True
        tasks = [task for task in subscription.tasks if not task.done()]
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_s))
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        logger.info("stream_unsubscribed topic=%s group=%s", subscription.topic, subscription.group_name)

    async def close(self, grace_s: float = 10.0) -> None:
        self._closing = True
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription, grace_s)
        logger.info("stream_closed consumer=%s", self.consumer_name)
