from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notifyflow.core.timeutil import utc_now
from notifyflow.domain.models import (
    NOTIFICATION_TRANSITIONS,
    TERMINAL_NOTIFICATION_STATUSES,
    Notification,
    NotificationStatus,
)


async def create_notification(
    session: AsyncSession,
    *,
    message: str,
    type: str,
    owner_id: str | None,
    metadata_json: dict[str, Any] | None,
) -> Notification:
    row = Notification(
        message=message,
        type=type,
        status=NotificationStatus.PENDING.value,
        owner_id=owner_id,
        metadata_json=metadata_json,
        retry_count=0,
    )
    session.add(row)
    await session.flush()
    return row


async def get_notification(session: AsyncSession, notification_id: str) -> Notification | None:
    # Always reload so conditional updates made in this session are visible.
    result = await session.execute(
        select(Notification)
        .where(Notification.id == notification_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_notifications(
    session: AsyncSession,
    *,
    limit: int,
    offset: int,
    owner_id: str | None = None,
) -> tuple[list[Notification], int]:
    stmt = select(Notification)
    count_stmt = select(func.count()).select_from(Notification)
    if owner_id:
        stmt = stmt.where(Notification.owner_id == owner_id)
        count_stmt = count_stmt.where(Notification.owner_id == owner_id)
    result = await session.execute(
        stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
    )
    total = int((await session.execute(count_stmt)).scalar() or 0)
    return list(result.scalars().all()), total


async def transition_status(
    session: AsyncSession,
    notification_id: str,
    *,
    status: str,
    error_message: str | None = None,
    retry_count: int | None = None,
) -> bool:
    # Conditional update keyed on the allowed source statuses; the row count is the serialization point.
    sources = NOTIFICATION_TRANSITIONS.get(status)
    if not sources:
        return False
    now = utc_now()
    values: dict[str, Any] = {"status": status, "updated_at": now}
    if status == NotificationStatus.SENT.value:
        values["sent_at"] = now
    elif status == NotificationStatus.DELIVERED.value:
        values["delivered_at"] = now
    elif status == NotificationStatus.FAILED.value:
        values["error_message"] = error_message
    if retry_count is not None:
        values["retry_count"] = retry_count
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status.in_(sorted(sources)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def increment_retry_count(
    session: AsyncSession,
    notification_id: str,
    *,
    max_attempts: int,
) -> int | None:
    # Compare-and-set so concurrent failure paths never push the count past the limit.
    current = await get_notification(session, notification_id)
    if current is None or current.status in TERMINAL_NOTIFICATION_STATUSES:
        return None
    previous = int(current.retry_count or 0)
    if previous >= max_attempts:
        return None
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.retry_count == previous,
            Notification.status.not_in(sorted(TERMINAL_NOTIFICATION_STATUSES)),
        )
        .values(retry_count=previous + 1, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        return None
    return previous + 1


async def list_pending(
    session: AsyncSession,
    *,
    limit: int,
    stale_before: datetime,
) -> list[Notification]:
    # Oldest-created first so the sweep is fair to long-waiting notifications.
    result = await session.execute(
        select(Notification)
        .where(
            Notification.status == NotificationStatus.PENDING.value,
            Notification.updated_at <= stale_before,
        )
        .order_by(Notification.created_at.asc(), Notification.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession, *, owner_id: str | None = None) -> dict[str, int]:
    stmt = select(Notification.status, func.count()).group_by(Notification.status)
    if owner_id:
        stmt = stmt.where(Notification.owner_id == owner_id)
    rows = (await session.execute(stmt)).all()
    return {str(status): int(count) for status, count in rows}


async def list_sent_since(session: AsyncSession, *, owner_id: str, since: datetime) -> list[Notification]:
    result = await session.execute(
        select(Notification)
        .where(
            Notification.owner_id == owner_id,
            Notification.status.in_([NotificationStatus.SENT.value, NotificationStatus.DELIVERED.value]),
            Notification.created_at >= since,
        )
        .order_by(Notification.created_at.asc())
    )
    return list(result.scalars().all())


async def count_by_type_and_status(
    session: AsyncSession, *, start: datetime, end: datetime
) -> list[tuple[str, str, int]]:
    rows = (
        await session.execute(
            select(Notification.type, Notification.status, func.count())
            .where(Notification.created_at >= start, Notification.created_at <= end)
            .group_by(Notification.type, Notification.status)
            .order_by(Notification.type, Notification.status)
        )
    ).all()
    return [(str(kind), str(status), int(count)) for kind, status, count in rows]


async def delete_terminal_before(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(
        delete(Notification)
        .where(
            Notification.status.in_(sorted(TERMINAL_NOTIFICATION_STATUSES)),
            Notification.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
