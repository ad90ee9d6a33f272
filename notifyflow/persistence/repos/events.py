from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notifyflow.core.timeutil import utc_now
from notifyflow.domain.models import Event


def add_event(
    session: AsyncSession,
    *,
    event_type: str,
    aggregate_id: str,
    aggregate_type: str,
    payload_json: dict[str, Any],
    metadata_json: dict[str, Any] | None = None,
) -> Event:
    # Caller owns the transaction so the event commits with the state change it describes.
    row = Event(
        event_type=event_type,
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        payload_json=payload_json,
        metadata_json=metadata_json,
        processed=False,
        created_at=utc_now(),
    )
    session.add(row)
    return row


async def list_events(
    session: AsyncSession,
    *,
    from_time: datetime | None = None,
    to_time: datetime | None = None,
    event_types: Iterable[str] | None = None,
    limit: int | None = None,
) -> list[Event]:
    stmt = select(Event)
    if from_time is not None:
        stmt = stmt.where(Event.created_at >= from_time)
    if to_time is not None:
        stmt = stmt.where(Event.created_at <= to_time)
    types = [item for item in (event_types or []) if item]
    if types:
        stmt = stmt.where(Event.event_type.in_(types))
    stmt = stmt.order_by(Event.created_at.asc(), Event.id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_for_aggregate(
    session: AsyncSession, *, aggregate_id: str, aggregate_type: str | None = None
) -> list[Event]:
    stmt = select(Event).where(Event.aggregate_id == aggregate_id)
    if aggregate_type:
        stmt = stmt.where(Event.aggregate_type == aggregate_type)
    result = await session.execute(stmt.order_by(Event.created_at.asc(), Event.id.asc()))
    return list(result.scalars().all())


async def list_unprocessed(session: AsyncSession, *, limit: int) -> list[Event]:
    result = await session.execute(
        select(Event)
        .where(Event.processed.is_(False))
        .order_by(Event.created_at.asc(), Event.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_processed(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(
        update(Event)
        .where(Event.id == event_id, Event.processed.is_(False))
        .values(processed=True, processed_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def delete_processed_before(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(
        delete(Event)
        .where(Event.processed.is_(True), Event.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
