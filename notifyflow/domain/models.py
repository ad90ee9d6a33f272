from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from notifyflow.core.timeutil import utc_now


# JSONB on Postgres, plain JSON elsewhere so tests can run on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_NOTIFICATION_STATUSES = frozenset({NotificationStatus.DELIVERED.value, NotificationStatus.FAILED.value})

# Allowed source statuses per target status; anything else is a no-op.
NOTIFICATION_TRANSITIONS: dict[str, frozenset[str]] = {
    NotificationStatus.SENT.value: frozenset({NotificationStatus.PENDING.value}),
    NotificationStatus.DELIVERED.value: frozenset({NotificationStatus.SENT.value}),
    NotificationStatus.FAILED.value: frozenset({NotificationStatus.PENDING.value, NotificationStatus.SENT.value}),
}


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    IN_APP = "in_app"


class EventType(str, Enum):
    NOTIFICATION_CREATED = "notification.created"
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_DELIVERED = "notification.delivered"
    NOTIFICATION_FAILED = "notification.failed"
    NOTIFICATION_RETRY_SCHEDULED = "notification.retry_scheduled"
    BATCH_JOB_STARTED = "batch_job.started"
    BATCH_JOB_COMPLETED = "batch_job.completed"
    BATCH_JOB_FAILED = "batch_job.failed"
    BATCH_JOB_CANCELLED = "batch_job.cancelled"


NOTIFICATION_STATUS_EVENTS: dict[str, EventType] = {
    NotificationStatus.SENT.value: EventType.NOTIFICATION_SENT,
    NotificationStatus.DELIVERED.value: EventType.NOTIFICATION_DELIVERED,
    NotificationStatus.FAILED.value: EventType.NOTIFICATION_FAILED,
}


class AggregateType(str, Enum):
    NOTIFICATION = "notification"
    BATCH_JOB = "batch_job"


class BatchJobType(str, Enum):
    NOTIFICATION_DIGEST = "notification_digest"
    DATA_CLEANUP = "data_cleanup"
    REPORT_GENERATION = "report_generation"
    USER_SYNC = "user_sync"


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Base(DeclarativeBase):
    pass


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # Sweep and listing both scan by status then creation order.
        Index("ix_notifications_status_created_at", "status", "created_at"),
        Index("ix_notifications_owner_created_at", "owner_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    message: Mapped[str] = mapped_column(String(500))
    type: Mapped[str] = mapped_column(String(32), default=NotificationType.INFO.value)
    status: Mapped[str] = mapped_column(String(16), default=NotificationStatus.PENDING.value, index=True)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Timestamps come from Python so ordering resolves to the microsecond on every backend.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_aggregate", "aggregate_id", "aggregate_type"),
        Index("ix_events_processed_created_at", "processed", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    aggregate_id: Mapped[str] = mapped_column(String)
    aggregate_type: Mapped[str] = mapped_column(String(32))
    # Snapshot of the aggregate at emission time; never rewritten.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(16), default=BatchJobStatus.PENDING.value, index=True)
    parameters_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
