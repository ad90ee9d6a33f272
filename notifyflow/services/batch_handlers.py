from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from notifyflow.core.errors import ValidationError
from notifyflow.core.timeutil import ensure_utc, utc_now
from notifyflow.domain.models import BatchJobType
from notifyflow.domain.payloads import (
    CleanupParameters,
    DigestParameters,
    ReportParameters,
    UserSyncParameters,
)
from notifyflow.services.events import EventLogService
from notifyflow.services.notifications import NotificationService


logger = logging.getLogger(__name__)

UserSync = Callable[[UserSyncParameters], Awaitable[dict[str, Any]]]


@dataclass
class HandlerResult:
    result: dict[str, Any]
    processed_count: int = 0
    failed_count: int = 0
    total_count: int = 0


async def noop_user_sync(parameters: UserSyncParameters) -> dict[str, Any]:
    # No directory configured; report an empty sync so the job still completes.
    return {"source": parameters.source, "usersSynced": 0, "usersFailed": 0}


@dataclass
class HandlerContext:
    notifications: NotificationService
    events: EventLogService
    user_sync: UserSync = field(default=noop_user_sync)


Handler = Callable[[dict[str, Any], HandlerContext], Awaitable[HandlerResult]]

PARAMETER_MODELS: dict[str, type[BaseModel]] = {
    BatchJobType.NOTIFICATION_DIGEST.value: DigestParameters,
    BatchJobType.DATA_CLEANUP.value: CleanupParameters,
    BatchJobType.REPORT_GENERATION.value: ReportParameters,
    BatchJobType.USER_SYNC.value: UserSyncParameters,
}


def parse_parameters(job_type: str, parameters: dict[str, Any] | None) -> BaseModel:
    model = PARAMETER_MODELS.get(job_type)
    if model is None:
        raise ValidationError(f"unknown batch job type: {job_type}")
    try:
        parsed = model.model_validate(parameters or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid parameters for {job_type}: {exc.errors()}") from exc
    if isinstance(parsed, ReportParameters):
        if ensure_utc(parsed.end_date) < ensure_utc(parsed.start_date):
            raise ValidationError("endDate must not be before startDate")
    return parsed


async def notification_digest(parameters: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    params = parse_parameters(BatchJobType.NOTIFICATION_DIGEST.value, parameters)
    since = utc_now() - timedelta(hours=params.period_hours)
    digest = await ctx.notifications.digest_for_owner(params.user_id, since)
    total = int(digest["total"])
    return HandlerResult(
        result={
            "userId": params.user_id,
            "periodHours": params.period_hours,
            "totalNotifications": total,
            "byType": digest["byType"],
            "generatedAt": utc_now().isoformat(),
        },
        processed_count=total,
        total_count=total,
    )


async def data_cleanup(parameters: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    params = parse_parameters(BatchJobType.DATA_CLEANUP.value, parameters)
    cutoff = utc_now() - timedelta(days=params.retention_days)
    notifications_deleted = await ctx.notifications.purge_terminal_before(cutoff)
    events_deleted = await ctx.events.purge_processed_before(cutoff)
    total = notifications_deleted + events_deleted
    logger.info(
        "data_cleanup_completed retention_days=%s notifications=%s events=%s",
        params.retention_days,
        notifications_deleted,
        events_deleted,
    )
    return HandlerResult(
        result={
            "retentionDays": params.retention_days,
            "notificationsDeleted": notifications_deleted,
            "eventsDeleted": events_deleted,
            "totalDeleted": total,
            "completedAt": utc_now().isoformat(),
        },
        processed_count=total,
        total_count=total,
    )


async def report_generation(parameters: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    params = parse_parameters(BatchJobType.REPORT_GENERATION.value, parameters)
    start = ensure_utc(params.start_date)
    end = ensure_utc(params.end_date)
    counts = await ctx.notifications.report_counts(start, end)
    return HandlerResult(
        result={
            "reportType": params.report_type,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "total": counts["total"],
            "byType": counts["byType"],
            "byStatus": counts["byStatus"],
            "generatedAt": utc_now().isoformat(),
        },
        processed_count=int(counts["total"]),
        total_count=int(counts["total"]),
    )


async def user_sync(parameters: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    params = parse_parameters(BatchJobType.USER_SYNC.value, parameters)
    outcome = await ctx.user_sync(params)
    synced = int(outcome.get("usersSynced", 0))
    failed = int(outcome.get("usersFailed", 0))
    return HandlerResult(
        result={**outcome, "completedAt": utc_now().isoformat()},
        processed_count=synced,
        failed_count=failed,
        total_count=synced + failed,
    )


HANDLERS: dict[str, Handler] = {
    BatchJobType.NOTIFICATION_DIGEST.value: notification_digest,
    BatchJobType.DATA_CLEANUP.value: data_cleanup,
    BatchJobType.REPORT_GENERATION.value: report_generation,
    BatchJobType.USER_SYNC.value: user_sync,
}
