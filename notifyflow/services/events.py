from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyflow.core.errors import StoreError, StreamError
from notifyflow.domain.models import Event
from notifyflow.domain.payloads import EventView
from notifyflow.persistence.db import Store
from notifyflow.persistence.repos import events as events_repo
from notifyflow.services.stream import EVENTS_TOPIC, StreamService


logger = logging.getLogger(__name__)


def event_metadata(
    *,
    source: str,
    correlation_id: str | None = None,
    causation_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"source": source}
    if correlation_id:
        metadata["correlation_id"] = correlation_id
    if causation_id:
        metadata["causation_id"] = causation_id
    if extra:
        metadata.update({k: v for k, v in extra.items() if v is not None})
    return metadata


class EventLogService:
    """Append-only domain event log backed by the store, mirrored to the events topic."""

    def __init__(self, store: Store, stream: StreamService, *, source: str = "notifyflow") -> None:
        self._store = store
        self._stream = stream
        self.source = source

    def record(
        self,
        session: AsyncSession,
        *,
        event_type: str,
        aggregate_id: str,
        aggregate_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Stage an event inside the caller's transaction; forward it after commit."""
        return events_repo.add_event(
            session,
            event_type=event_type,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            payload_json=payload,
            metadata_json=metadata if metadata is not None else {"source": self.source},
        )

    async def forward(self, event: Event | EventView) -> bool:
        # The store copy is authoritative; a lost stream copy is logged, never rolled back.
        view = event if isinstance(event, EventView) else EventView.from_row(event)
        try:
            await self._stream.publish(EVENTS_TOPIC, view.to_stream_message(), key=view.aggregate_id)
        except StreamError as exc:
            logger.warning(
                "event_forward_failed event_id=%s event_type=%s", view.id, view.event_type, exc_info=exc
            )
            return False
        return True

    async def append(
        self,
        event_type: str,
        aggregate_id: str,
        aggregate_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> EventView:
        try:
            async with self._store.session() as session:
                row = self.record(
                    session,
                    event_type=event_type,
                    aggregate_id=aggregate_id,
                    aggregate_type=aggregate_type,
                    payload=payload,
                    metadata=metadata,
                )
                await session.commit()
                view = EventView.from_row(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"event append failed: {exc}") from exc
        await self.forward(view)
        return view

    async def stream_since(
        self,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        event_types: Iterable[str] | None = None,
        *,
        limit: int | None = None,
    ) -> list[EventView]:
        async with self._store.session() as session:
            rows = await events_repo.list_events(
                session, from_time=from_time, to_time=to_time, event_types=event_types, limit=limit
            )
        return [EventView.from_row(row) for row in rows]

    async def for_aggregate(self, aggregate_id: str, aggregate_type: str | None = None) -> list[EventView]:
        async with self._store.session() as session:
            rows = await events_repo.list_for_aggregate(
                session, aggregate_id=aggregate_id, aggregate_type=aggregate_type
            )
        return [EventView.from_row(row) for row in rows]

    async def unprocessed(self, limit: int = 100) -> list[EventView]:
        async with self._store.session() as session:
            rows = await events_repo.list_unprocessed(session, limit=max(1, int(limit)))
        return [EventView.from_row(row) for row in rows]

    async def mark_processed(self, event_id: str) -> bool:
        async with self._store.session() as session:
            updated = await events_repo.mark_processed(session, event_id)
            await session.commit()
        return updated

    async def purge_processed_before(self, cutoff: datetime) -> int:
        async with self._store.session() as session:
            deleted = await events_repo.delete_processed_before(session, cutoff=cutoff)
            await session.commit()
        if deleted:
            logger.info("events_purged count=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted
