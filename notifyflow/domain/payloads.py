from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from notifyflow.core.timeutil import ensure_utc
from notifyflow.domain.models import BatchJob, Event, Notification


class NotificationMessage(BaseModel):
    # Wire shape on the notifications topic; stream stamps (timestamp, source) pass through.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    message: str
    type: str = "info"
    owner_id: str | None = Field(default=None, alias="ownerId")
    metadata: dict[str, Any] | None = None
    status: str | None = None


class DeadLetterMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_topic: str = Field(alias="originalTopic")
    # Raw original payload so operators can replay it byte-for-byte.
    message: str
    error: str
    offset: str | None = None
    timestamp: str


class BatchJobWorkItem(BaseModel):
    # Job queue handoff between the engine and the arq worker.
    model_config = ConfigDict(populate_by_name=True)

    batch_job_id: str = Field(alias="batchJobId")
    type: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class DigestParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    period_hours: int = Field(default=24, alias="periodHours", ge=1)


class CleanupParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    retention_days: int = Field(default=30, alias="retentionDays", ge=1)


class ReportParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report_type: str = Field(default="summary", alias="reportType")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")


class UserSyncParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    source: str = "directory"


class NotificationView(BaseModel):
    id: str
    message: str
    type: str
    status: str
    owner_id: str | None = None
    metadata: dict[str, Any] | None = None
    retry_count: int = 0
    error_message: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Notification) -> "NotificationView":
        return cls(
            id=row.id,
            message=row.message,
            type=row.type,
            status=row.status,
            owner_id=row.owner_id,
            metadata=row.metadata_json,
            retry_count=int(row.retry_count or 0),
            error_message=row.error_message,
            sent_at=ensure_utc(row.sent_at),
            delivered_at=ensure_utc(row.delivered_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def to_message(self) -> NotificationMessage:
        return NotificationMessage(
            id=self.id,
            message=self.message,
            type=self.type,
            owner_id=self.owner_id,
            metadata=self.metadata,
            status=self.status,
        )


class EventView(BaseModel):
    id: str
    event_type: str
    aggregate_id: str
    aggregate_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    processed: bool = False
    processed_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Event) -> "EventView":
        return cls(
            id=row.id,
            event_type=row.event_type,
            aggregate_id=row.aggregate_id,
            aggregate_type=row.aggregate_type,
            payload=row.payload_json or {},
            metadata=row.metadata_json,
            processed=bool(row.processed),
            processed_at=ensure_utc(row.processed_at),
            created_at=ensure_utc(row.created_at),
        )

    def to_stream_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "eventType": self.event_type,
            "aggregateId": self.aggregate_id,
            "aggregateType": self.aggregate_type,
            "payload": self.payload,
            "metadata": self.metadata or {},
            "createdAt": self.created_at.isoformat(),
        }


class BatchJobView(BaseModel):
    id: str
    type: str
    status: str
    parameters: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    processed_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    error_message: str | None = None
    attempts: int = 0
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def progress(self) -> int:
        if self.total_count <= 0:
            return 0
        return round(self.processed_count / self.total_count * 100)

    @classmethod
    def from_row(cls, row: BatchJob) -> "BatchJobView":
        return cls(
            id=row.id,
            type=row.type,
            status=row.status,
            parameters=row.parameters_json,
            result=row.result_json,
            processed_count=int(row.processed_count or 0),
            failed_count=int(row.failed_count or 0),
            total_count=int(row.total_count or 0),
            error_message=row.error_message,
            attempts=int(row.attempts or 0),
            scheduled_at=ensure_utc(row.scheduled_at),
            started_at=ensure_utc(row.started_at),
            completed_at=ensure_utc(row.completed_at),
            duration_ms=row.duration_ms,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )
