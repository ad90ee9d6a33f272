from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from notifyflow.core.config import Settings
from notifyflow.core.errors import ExhaustionError, StreamError, TransportError, ValidationError
from notifyflow.core.timeutil import utc_now
from notifyflow.domain.models import TERMINAL_NOTIFICATION_STATUSES, NotificationStatus
from notifyflow.domain.payloads import NotificationMessage, NotificationView
from notifyflow.services.notifications import NotificationService
from notifyflow.services.scheduler import Scheduler
from notifyflow.services.stream import NOTIFICATIONS_TOPIC, StreamEntry, StreamService, Subscription
from notifyflow.services.telemetry import increment_counter
from notifyflow.services.transport import Transport


logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SweepResult:
    batches: int = 0
    scanned: int = 0
    errors: int = 0
    outcomes: Counter = field(default_factory=Counter)


def retry_delay_s(retry_count: int, *, base_s: float) -> float:
    # Linear in the attempt number: base, 2*base, 3*base...
    return max(0.0, float(base_s)) * max(1, int(retry_count))


class NotificationConsumer:
    """Drives notifications through delivery, confirmation, retry and dead-lettering.

    Both entry points (stream messages and the periodic sweep) share one
    attempt path. Status changes go through ``NotificationService`` so every
    transition is conditional on the current state; racing attempts settle on
    a single terminal status and only the path that performs the FAILED
    transition publishes the dead letter.
    """

    def __init__(
        self,
        notifications: NotificationService,
        stream: StreamService,
        transport: Transport,
        scheduler: Scheduler,
        settings: Settings,
        *,
        topic: str = NOTIFICATIONS_TOPIC,
    ) -> None:
        self._notifications = notifications
        self._stream = stream
        self._transport = transport
        self._scheduler = scheduler
        self._settings = settings
        self.topic = topic
        self.retry_topic = settings.retry_topic(topic)
        self.max_attempts = max(1, int(settings.notify_max_attempts))
        self._subscriptions: list[Subscription] = []
        self._sweep_lock = asyncio.Lock()

    async def start(self) -> None:
        group = self._settings.notify_consumer_group
        partitions = self._settings.owned_partitions()
        self._subscriptions.append(
            await self._stream.subscribe(self.topic, self.handle_entry, group, partitions=partitions)
        )
        if self.retry_topic != self.topic:
            self._subscriptions.append(
                await self._stream.subscribe(self.retry_topic, self.handle_entry, group, partitions=partitions)
            )
        logger.info(
            "notification_consumer_started topic=%s retry_topic=%s group=%s", self.topic, self.retry_topic, group
        )

    async def close(self, grace_s: float | None = None) -> None:
        grace = self._settings.shutdown_grace_s if grace_s is None else grace_s
        for subscription in self._subscriptions:
            await self._stream.unsubscribe(subscription, grace)
        self._subscriptions.clear()
        logger.info("notification_consumer_stopped topic=%s", self.topic)

    async def handle_entry(self, entry: StreamEntry) -> AttemptOutcome:
        return await self.handle_message(entry.message, topic=entry.topic, raw=entry.raw, offset=entry.entry_id)

    async def handle_message(
        self,
        message: dict[str, Any] | NotificationMessage,
        *,
        topic: str | None = None,
        raw: str | None = None,
        offset: str | None = None,
    ) -> AttemptOutcome:
        if isinstance(message, NotificationMessage):
            parsed = message
        else:
            try:
                parsed = NotificationMessage.model_validate(message)
            except PydanticValidationError as exc:
                # Raising lets the stream dead-letter the malformed payload.
                raise ValidationError(f"invalid notification message: {exc.errors()}") from exc
        return await self._attempt(parsed, topic=topic or self.topic, raw=raw, offset=offset, trigger="stream")

    def _raw_payload(self, message: NotificationMessage) -> str:
        return json.dumps(message.model_dump(by_alias=True, exclude_none=True), default=str)

    async def _attempt(
        self,
        message: NotificationMessage,
        *,
        topic: str,
        raw: str | None,
        offset: str | None,
        trigger: str,
    ) -> AttemptOutcome:
        current = await self._notifications.get_by_id(message.id, cached=False)
        if current is None:
            logger.warning("notification_unknown notification_id=%s trigger=%s", message.id, trigger)
            return AttemptOutcome.SKIPPED
        if current.status in TERMINAL_NOTIFICATION_STATUSES:
            logger.debug("notification_already_terminal notification_id=%s status=%s", current.id, current.status)
            return AttemptOutcome.SKIPPED
        if current.status == NotificationStatus.SENT.value:
            # Delivered to the carrier already; only the confirmation may be outstanding.
            self._schedule_confirmation(current.id)
            return AttemptOutcome.SKIPPED
        if current.retry_count >= self.max_attempts:
            # A previous attempt counted the last failure but never recorded FAILED.
            cause = await self._notifications.last_failure_cause(current.id)
            return await self._exhaust(
                current,
                message,
                topic=topic,
                raw=raw,
                offset=offset,
                cause=cause or "attempts exhausted",
            )

        try:
            await self._transport.deliver(message)
        except TransportError as exc:
            return await self._handle_failure(current, message, topic=topic, raw=raw, offset=offset, cause=str(exc))

        sent = await self._notifications.update_status(current.id, NotificationStatus.SENT)
        if sent is None:
            return AttemptOutcome.SKIPPED
        increment_counter("notifications_delivered_to_transport_total")
        logger.info("notification_sent notification_id=%s trigger=%s", current.id, trigger)
        self._schedule_confirmation(current.id)
        return AttemptOutcome.SENT

    def _schedule_confirmation(self, notification_id: str) -> None:
        self._scheduler.call_later(
            self._settings.notify_confirm_delay_s,
            self._confirm_delivery,
            notification_id,
            name=f"confirm:{notification_id}",
        )

    async def _confirm_delivery(self, notification_id: str) -> None:
        delivered = await self._notifications.update_status(notification_id, NotificationStatus.DELIVERED)
        if delivered is not None:
            logger.info("notification_delivered notification_id=%s", notification_id)

    async def _handle_failure(
        self,
        current: NotificationView,
        message: NotificationMessage,
        *,
        topic: str,
        raw: str | None,
        offset: str | None,
        cause: str,
    ) -> AttemptOutcome:
        logger.warning("notification_delivery_failed notification_id=%s error=%s", current.id, cause)
        count = await self._notifications.record_failed_attempt(current.id, max_attempts=self.max_attempts)
        if count is None:
            latest = await self._notifications.get_by_id(current.id, cached=False)
            if (
                latest is not None
                and latest.status not in TERMINAL_NOTIFICATION_STATUSES
                and latest.retry_count >= self.max_attempts
            ):
                return await self._exhaust(latest, message, topic=topic, raw=raw, offset=offset, cause=cause)
            return AttemptOutcome.SKIPPED
        if count >= self.max_attempts:
            return await self._exhaust(current, message, topic=topic, raw=raw, offset=offset, cause=cause)

        delay_s = retry_delay_s(count, base_s=self._settings.notify_backoff_base_s)
        await self._notifications.record_retry_scheduled(current, retry_count=count, delay_s=delay_s, error=cause)
        self._scheduler.call_later(
            delay_s,
            self._republish,
            message,
            name=f"retry:{current.id}:{count}",
        )
        increment_counter("notification_retries_total")
        logger.info(
            "notification_retry_scheduled notification_id=%s retry_count=%s delay_s=%s topic=%s",
            current.id,
            count,
            delay_s,
            self.retry_topic,
        )
        return AttemptOutcome.RETRY_SCHEDULED

    async def _exhaust(
        self,
        current: NotificationView,
        message: NotificationMessage,
        *,
        topic: str,
        raw: str | None,
        offset: str | None,
        cause: str,
    ) -> AttemptOutcome:
        failed = await self._notifications.update_status(current.id, NotificationStatus.FAILED, error_message=cause)
        if failed is None:
            # Another path already finished this notification.
            return AttemptOutcome.SKIPPED
        exhausted = ExhaustionError(current.id, failed.retry_count, cause)
        logger.error(
            "notification_exhausted notification_id=%s attempts=%s", current.id, failed.retry_count, exc_info=exhausted
        )
        payload = raw if raw is not None else self._raw_payload(message)
        try:
            await self._stream.publish_dead_letter(topic, payload, cause, key=current.id, offset=offset)
        except StreamError as exc:
            logger.error(
                "notification_dead_letter_failed notification_id=%s payload=%s", current.id, payload, exc_info=exc
            )
        increment_counter("notifications_failed_total")
        return AttemptOutcome.FAILED

    async def _republish(self, message: NotificationMessage) -> None:
        try:
            await self._stream.publish(
                self.retry_topic, message.model_dump(by_alias=True, exclude_none=True), key=message.id
            )
        except StreamError as exc:
            # The record is still PENDING; the sweep picks it up once stale.
            logger.warning("notification_republish_failed notification_id=%s", message.id, exc_info=exc)

    async def sweep(self) -> SweepResult:
        """Re-drive stale PENDING notifications, oldest-created first, with bounded concurrency."""
        result = SweepResult()
        if self._sweep_lock.locked():
            logger.info("notification_sweep_skipped reason=already_running")
            return result
        async with self._sweep_lock:
            stale_before = utc_now() - timedelta(seconds=self._settings.sweep_stale_after_s())
            batch_size = max(1, int(self._settings.notify_sweep_batch_size))
            semaphore = asyncio.Semaphore(max(1, int(self._settings.notify_sweep_concurrency)))
            seen: set[str] = set()

            async def _drive(view: NotificationView) -> AttemptOutcome:
                async with semaphore:
                    return await self._attempt(
                        view.to_message(), topic=self.topic, raw=None, offset=None, trigger="sweep"
                    )

            for _ in range(max(1, int(self._settings.notify_sweep_max_batches))):
                batch = [
                    view
                    for view in await self._notifications.pending_batch(batch_size, stale_before)
                    if view.id not in seen
                ]
                if not batch:
                    break
                seen.update(view.id for view in batch)
                result.batches += 1
                result.scanned += len(batch)
                outcomes = await asyncio.gather(*(_drive(view) for view in batch), return_exceptions=True)
                for view, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        result.errors += 1
                        logger.error("notification_sweep_item_failed notification_id=%s", view.id, exc_info=outcome)
                    else:
                        result.outcomes[outcome.value] += 1
                if len(batch) < batch_size:
                    break
        increment_counter("notification_sweeps_total")
        if result.scanned:
            logger.info(
                "notification_sweep_completed batches=%s scanned=%s errors=%s outcomes=%s",
                result.batches,
                result.scanned,
                result.errors,
                dict(result.outcomes),
            )
        return result
