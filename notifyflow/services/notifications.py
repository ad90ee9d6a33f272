from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from notifyflow.core.config import Settings
from notifyflow.core.errors import StoreError, StreamError, ValidationError
from notifyflow.domain.models import (
    NOTIFICATION_STATUS_EVENTS,
    AggregateType,
    EventType,
    NotificationStatus,
)
from notifyflow.domain.payloads import NotificationView
from notifyflow.persistence.db import Store
from notifyflow.persistence.repos import notifications as notifications_repo
from notifyflow.services.cache import (
    LIST_GENERATION_KEY,
    CacheService,
    notification_generation_key,
    notification_item_key,
    notification_list_key,
)
from notifyflow.services.events import EventLogService, event_metadata
from notifyflow.services.stream import NOTIFICATIONS_TOPIC, StreamService
from notifyflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_STATUS_KEYS = tuple(status.value for status in NotificationStatus)


class NotificationService:
    """Owns the notification record: creation, reads, and every status change."""

    def __init__(
        self,
        store: Store,
        cache: CacheService,
        stream: StreamService,
        events: EventLogService,
        settings: Settings,
    ) -> None:
        self._store = store
        self._cache = cache
        self._stream = stream
        self._events = events
        self._settings = settings

    def validate(
        self,
        message: Any,
        type: Any,
        metadata: Any,
    ) -> tuple[str, str, dict[str, Any] | None]:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message must be a non-empty string")
        trimmed = message.strip()
        max_length = int(self._settings.notify_message_max_length)
        if len(trimmed) > max_length:
            raise ValidationError(f"message must be at most {max_length} characters")
        kind = str(type or "info").strip().lower()
        allowed = self._settings.allowed_notification_types()
        if kind not in allowed:
            raise ValidationError(f"type must be one of: {', '.join(sorted(allowed))}")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object")
        return trimmed, kind, dict(metadata) if metadata is not None else None

    async def create(
        self,
        message: str,
        type: str = "info",
        owner_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> NotificationView:
        text, kind, meta = self.validate(message, type, metadata)
        try:
            async with self._store.session() as session:
                row = await notifications_repo.create_notification(
                    session, message=text, type=kind, owner_id=owner_id, metadata_json=meta
                )
                view = NotificationView.from_row(row)
                event = self._events.record(
                    session,
                    event_type=EventType.NOTIFICATION_CREATED.value,
                    aggregate_id=view.id,
                    aggregate_type=AggregateType.NOTIFICATION.value,
                    payload=view.model_dump(mode="json"),
                    metadata=event_metadata(
                        source=self._events.source, correlation_id=correlation_id, extra={"owner_id": owner_id}
                    ),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("notification_create_failed type=%s", kind, exc_info=exc)
            raise StoreError(f"notification create failed: {exc}") from exc

        logger.info("notification_created notification_id=%s type=%s", view.id, view.type)
        await self.invalidate(view.id)
        increment_counter(f"notifications_sent_total.{view.type}")
        await self._events.forward(event)
        try:
            await self._stream.publish(
                NOTIFICATIONS_TOPIC,
                view.to_message().model_dump(by_alias=True, exclude_none=True),
                key=view.id,
            )
        except StreamError as exc:
            # The record stays PENDING; the periodic sweep re-drives it.
            logger.error("notification_publish_failed notification_id=%s", view.id, exc_info=exc)
            raise StreamError(
                f"notification {view.id} stored but not published: {exc}", notification_id=view.id
            ) from exc
        await self._cache.publish(
            self._settings.cache_channel, {"kind": "created", "notification": view.model_dump(mode="json")}
        )
        return view

    async def invalidate(self, notification_id: str | None = None) -> None:
        # Readers pin a generation before querying, so a stale load lands under a retired key.
        if notification_id:
            await self._cache.advance_generation(
                notification_generation_key(notification_id), ttl_s=2 * int(self._settings.cache_item_ttl_s)
            )
        await self._cache.advance_generation(LIST_GENERATION_KEY)

    async def list(
        self,
        limit: int = 50,
        offset: int = 0,
        owner_id: str | None = None,
    ) -> tuple[list[NotificationView], int]:
        limit = min(max(1, int(limit)), int(self._settings.notify_list_max_limit))
        offset = max(0, int(offset))
        generation = await self._cache.generation(LIST_GENERATION_KEY)
        key = None if generation is None else notification_list_key(owner_id, limit, offset, generation)
        if key is not None:
            cached = await self._cache.get_json(key)
            if isinstance(cached, dict) and "items" in cached:
                return [NotificationView.model_validate(item) for item in cached["items"]], int(cached.get("total", 0))
        try:
            async with self._store.session() as session:
                rows, total = await notifications_repo.list_notifications(
                    session, limit=limit, offset=offset, owner_id=owner_id
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"notification list failed: {exc}") from exc
        items = [NotificationView.from_row(row) for row in rows]
        if key is not None:
            await self._cache.set_json(
                key,
                {"items": [item.model_dump(mode="json") for item in items], "total": total},
                ttl_s=self._settings.cache_list_ttl_s,
            )
        return items, total

    async def get_by_id(self, notification_id: str, *, cached: bool = True) -> NotificationView | None:
        key = None
        if cached:
            generation = await self._cache.generation(notification_generation_key(notification_id))
            if generation is not None:
                key = notification_item_key(notification_id, generation)
        if key is not None:
            hit = await self._cache.get_json(key)
            if isinstance(hit, dict):
                return NotificationView.model_validate(hit)
        try:
            async with self._store.session() as session:
                row = await notifications_repo.get_notification(session, notification_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"notification read failed: {exc}") from exc
        if row is None:
            return None
        view = NotificationView.from_row(row)
        if key is not None:
            await self._cache.set_json(key, view.model_dump(mode="json"), ttl_s=self._settings.cache_item_ttl_s)
        return view

    async def update_status(
        self,
        notification_id: str,
        status: str | NotificationStatus,
        error_message: str | None = None,
        *,
        retry_count: int | None = None,
        causation_id: str | None = None,
    ) -> NotificationView | None:
        """Apply one state-machine transition and record its event atomically.

        Returns the updated view, or ``None`` when the record is missing or
        already at (or past) the requested state; such calls change nothing.
        """
        target = status.value if isinstance(status, NotificationStatus) else str(status)
        event_type = NOTIFICATION_STATUS_EVENTS.get(target)
        if event_type is None:
            raise ValidationError(f"status {target!r} cannot be set directly")
        try:
            async with self._store.session() as session:
                applied = await notifications_repo.transition_status(
                    session,
                    notification_id,
                    status=target,
                    error_message=error_message,
                    retry_count=retry_count,
                )
                if not applied:
                    await session.rollback()
                    logger.debug(
                        "notification_transition_skipped notification_id=%s status=%s", notification_id, target
                    )
                    return None
                row = await notifications_repo.get_notification(session, notification_id)
                view = NotificationView.from_row(row)
                payload = view.model_dump(mode="json")
                event = self._events.record(
                    session,
                    event_type=event_type.value,
                    aggregate_id=notification_id,
                    aggregate_type=AggregateType.NOTIFICATION.value,
                    payload=payload,
                    metadata=event_metadata(source=self._events.source, causation_id=causation_id),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "notification_transition_failed notification_id=%s status=%s", notification_id, target, exc_info=exc
            )
            raise StoreError(f"notification status update failed: {exc}") from exc

        logger.info("notification_status_changed notification_id=%s status=%s", notification_id, target)
        await self.invalidate(notification_id)
        await self._events.forward(event)
        await self._cache.publish(self._settings.cache_channel, {"kind": "status", "notification": payload})
        return view

    async def record_failed_attempt(self, notification_id: str, *, max_attempts: int) -> int | None:
        try:
            async with self._store.session() as session:
                count = await notifications_repo.increment_retry_count(
                    session, notification_id, max_attempts=max_attempts
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"retry count update failed: {exc}") from exc
        if count is not None:
            await self.invalidate(notification_id)
        return count

    async def record_retry_scheduled(
        self, view: NotificationView, *, retry_count: int, delay_s: float, error: str
    ) -> None:
        await self._events.append(
            EventType.NOTIFICATION_RETRY_SCHEDULED.value,
            view.id,
            AggregateType.NOTIFICATION.value,
            {"id": view.id, "retryCount": retry_count, "delaySeconds": delay_s, "error": error},
            metadata=event_metadata(source=self._events.source),
        )

    async def last_failure_cause(self, notification_id: str) -> str | None:
        """Return the error recorded by the most recent retry_scheduled event, if any."""
        history = await self._events.for_aggregate(notification_id, AggregateType.NOTIFICATION.value)
        for event in reversed(history):
            if event.event_type != EventType.NOTIFICATION_RETRY_SCHEDULED.value:
                continue
            error = (event.payload or {}).get("error")
            if error:
                return str(error)
        return None

    async def pending_batch(self, limit: int, stale_before: datetime) -> list[NotificationView]:
        async with self._store.session() as session:
            rows = await notifications_repo.list_pending(session, limit=limit, stale_before=stale_before)
        return [NotificationView.from_row(row) for row in rows]

    async def stats(self, owner_id: str | None = None) -> dict[str, int]:
        async with self._store.session() as session:
            counts = await notifications_repo.count_by_status(session, owner_id=owner_id)
        result = {key: int(counts.get(key, 0)) for key in _STATUS_KEYS}
        result["total"] = sum(result.values())
        return result

    async def digest_for_owner(self, owner_id: str, since: datetime) -> dict[str, Any]:
        async with self._store.session() as session:
            rows = await notifications_repo.list_sent_since(session, owner_id=owner_id, since=since)
        by_type: dict[str, int] = defaultdict(int)
        for row in rows:
            by_type[row.type] += 1
        return {
            "total": len(rows),
            "byType": dict(by_type),
            "notificationIds": [row.id for row in rows],
        }

    async def report_counts(self, start: datetime, end: datetime) -> dict[str, Any]:
        async with self._store.session() as session:
            rows = await notifications_repo.count_by_type_and_status(session, start=start, end=end)
        by_type: dict[str, dict[str, int]] = defaultdict(dict)
        by_status: dict[str, int] = defaultdict(int)
        for kind, status, count in rows:
            by_type[kind][status] = count
            by_status[status] += count
        return {"total": sum(by_status.values()), "byType": dict(by_type), "byStatus": dict(by_status)}

    async def purge_terminal_before(self, cutoff: datetime) -> int:
        async with self._store.session() as session:
            deleted = await notifications_repo.delete_terminal_before(session, cutoff=cutoff)
            await session.commit()
        if deleted:
            await self.invalidate()
            logger.info("notifications_purged count=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted
