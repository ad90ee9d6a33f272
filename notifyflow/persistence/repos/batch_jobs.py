from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notifyflow.core.timeutil import ensure_utc, utc_now
from notifyflow.domain.models import BatchJob, BatchJobStatus


async def create_batch_job(
    session: AsyncSession,
    *,
    type: str,
    parameters_json: dict[str, Any] | None,
    scheduled_at: datetime | None,
) -> BatchJob:
    row = BatchJob(
        type=type,
        status=BatchJobStatus.PENDING.value,
        parameters_json=parameters_json,
        scheduled_at=scheduled_at,
    )
    session.add(row)
    await session.flush()
    return row


async def get_batch_job(session: AsyncSession, job_id: str) -> BatchJob | None:
    result = await session.execute(
        select(BatchJob).where(BatchJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_batch_jobs(
    session: AsyncSession, *, limit: int, status: str | None = None
) -> list[BatchJob]:
    stmt = select(BatchJob)
    if status:
        stmt = stmt.where(BatchJob.status == status)
    result = await session.execute(stmt.order_by(BatchJob.created_at.desc(), BatchJob.id.desc()).limit(limit))
    return list(result.scalars().all())


async def mark_running(session: AsyncSession, job_id: str, *, attempt: int) -> bool:
    # Re-runs clear the previous attempt's outcome; completed and cancelled jobs never restart.
    result = await session.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.status.in_(
                [BatchJobStatus.PENDING.value, BatchJobStatus.RUNNING.value, BatchJobStatus.FAILED.value]
            ),
        )
        .values(
            status=BatchJobStatus.RUNNING.value,
            started_at=utc_now(),
            completed_at=None,
            duration_ms=None,
            error_message=None,
            result_json=None,
            attempts=attempt,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _duration_ms(started_at: datetime | None, completed_at: datetime) -> int | None:
    started = ensure_utc(started_at)
    if started is None:
        return None
    return max(0, int((completed_at - started).total_seconds() * 1000))


def mark_completed(
    job: BatchJob,
    *,
    result: dict[str, Any],
    processed_count: int,
    failed_count: int,
    total_count: int,
) -> BatchJob:
    completed_at = utc_now()
    job.status = BatchJobStatus.COMPLETED.value
    job.result_json = result
    job.processed_count = processed_count
    job.failed_count = failed_count
    job.total_count = total_count
    job.completed_at = completed_at
    job.duration_ms = _duration_ms(job.started_at, completed_at)
    job.error_message = None
    return job


def mark_failed(job: BatchJob, *, error_message: str) -> BatchJob:
    completed_at = utc_now()
    job.status = BatchJobStatus.FAILED.value
    job.error_message = error_message
    job.result_json = None
    job.completed_at = completed_at
    job.duration_ms = _duration_ms(job.started_at, completed_at)
    return job


async def mark_cancelled(session: AsyncSession, job_id: str) -> bool:
    result = await session.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status == BatchJobStatus.PENDING.value)
        .values(status=BatchJobStatus.CANCELLED.value, completed_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1
