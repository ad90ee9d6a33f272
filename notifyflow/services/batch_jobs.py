from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from notifyflow.core.config import Settings
from notifyflow.core.errors import JobQueueError, StoreError, ValidationError
from notifyflow.core.timeutil import ensure_utc
from notifyflow.domain.models import AggregateType, BatchJobStatus, EventType
from notifyflow.domain.payloads import BatchJobView, BatchJobWorkItem
from notifyflow.persistence.db import Store
from notifyflow.persistence.repos import batch_jobs as batch_jobs_repo
from notifyflow.services.batch_handlers import HANDLERS, Handler, HandlerContext, parse_parameters
from notifyflow.services.events import EventLogService, event_metadata


logger = logging.getLogger(__name__)

RUN_BATCH_JOB = "run_batch_job"
_SKIP_STATUSES = {BatchJobStatus.COMPLETED.value, BatchJobStatus.CANCELLED.value}


class JobQueue(Protocol):
    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any) -> Any:
        ...


class BatchJobEngine:
    """Records batch jobs, hands them to the arq queue and runs them on the worker side."""

    def __init__(
        self,
        store: Store,
        events: EventLogService,
        job_queue: JobQueue | None,
        handler_context: HandlerContext,
        settings: Settings,
        *,
        handlers: dict[str, Handler] | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._queue = job_queue
        self._ctx = handler_context
        self._settings = settings
        self._handlers = dict(handlers or HANDLERS)

    @property
    def handlers(self) -> dict[str, Handler]:
        return self._handlers

    async def enqueue(
        self,
        type: str,
        parameters: dict[str, Any] | None = None,
        *,
        scheduled_at: datetime | None = None,
    ) -> str:
        if type not in self._handlers:
            raise ValidationError(f"unknown batch job type: {type}")
        if parameters is not None and not isinstance(parameters, dict):
            raise ValidationError("parameters must be an object")
        params = dict(parameters or {})
        parse_parameters(type, params)
        when = ensure_utc(scheduled_at)
        try:
            async with self._store.session() as session:
                row = await batch_jobs_repo.create_batch_job(
                    session, type=type, parameters_json=params, scheduled_at=when
                )
                job_id = row.id
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"batch job create failed: {exc}") from exc

        if self._queue is None:
            raise JobQueueError("batch job queue not configured")
        item = BatchJobWorkItem(batch_job_id=job_id, type=type, parameters=params)
        kwargs: dict[str, Any] = {"_job_id": job_id, "_queue_name": self._settings.batch_queue_name}
        if when is not None:
            kwargs["_defer_until"] = when
        try:
            job = await self._queue.enqueue_job(RUN_BATCH_JOB, item.model_dump(by_alias=True), **kwargs)
        except (RedisError, OSError) as exc:
            # The PENDING row stays behind for inspection.
            logger.error("batch_job_enqueue_failed batch_job_id=%s type=%s", job_id, type, exc_info=exc)
            raise JobQueueError(f"batch job {job_id} recorded but not queued: {exc}") from exc
        if job is None:
            logger.warning("batch_job_enqueue_duplicate batch_job_id=%s", job_id)
        logger.info("batch_job_enqueued batch_job_id=%s type=%s", job_id, type)
        return job_id

    async def execute(
        self,
        batch_job_id: str,
        type: str,
        parameters: dict[str, Any] | None = None,
        *,
        attempt: int = 1,
    ) -> dict[str, Any] | None:
        """Run one delivery of a work item.

        Handler failures mark the job FAILED and re-raise so the queue's own
        attempt budget decides whether it runs again.
        """
        handler = self._handlers.get(type)
        if handler is None:
            raise ValidationError(f"unknown batch job type: {type}")
        async with self._store.session() as session:
            job = await batch_jobs_repo.get_batch_job(session, batch_job_id)
            if job is None:
                logger.warning("batch_job_missing batch_job_id=%s", batch_job_id)
                return None
            if job.status in _SKIP_STATUSES:
                logger.info("batch_job_skipped batch_job_id=%s status=%s", batch_job_id, job.status)
                return None
            started = await batch_jobs_repo.mark_running(session, batch_job_id, attempt=attempt)
            await session.commit()
        if not started:
            return None
        await self._append(EventType.BATCH_JOB_STARTED, batch_job_id, {"type": type, "attempt": attempt})

        try:
            outcome = await handler(dict(parameters or {}), self._ctx)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            async with self._store.session() as session:
                job = await batch_jobs_repo.get_batch_job(session, batch_job_id)
                if job is not None:
                    batch_jobs_repo.mark_failed(job, error_message=message)
                    await session.commit()
            logger.warning(
                "batch_job_failed batch_job_id=%s type=%s attempt=%s error=%s", batch_job_id, type, attempt, message
            )
            await self._append(
                EventType.BATCH_JOB_FAILED, batch_job_id, {"type": type, "attempt": attempt, "error": message}
            )
            raise

        async with self._store.session() as session:
            job = await batch_jobs_repo.get_batch_job(session, batch_job_id)
            if job is None:
                return outcome.result
            batch_jobs_repo.mark_completed(
                job,
                result=outcome.result,
                processed_count=outcome.processed_count,
                failed_count=outcome.failed_count,
                total_count=outcome.total_count,
            )
            await session.commit()
            duration_ms = job.duration_ms
        logger.info("batch_job_completed batch_job_id=%s type=%s duration_ms=%s", batch_job_id, type, duration_ms)
        await self._append(
            EventType.BATCH_JOB_COMPLETED,
            batch_job_id,
            {"type": type, "attempt": attempt, "durationMs": duration_ms, "result": outcome.result},
        )
        return outcome.result

    async def cancel(self, batch_job_id: str) -> BatchJobView | None:
        async with self._store.session() as session:
            cancelled = await batch_jobs_repo.mark_cancelled(session, batch_job_id)
            await session.commit()
        if not cancelled:
            return None
        await self._append(EventType.BATCH_JOB_CANCELLED, batch_job_id, {})
        return await self.get(batch_job_id)

    async def get(self, batch_job_id: str) -> BatchJobView | None:
        async with self._store.session() as session:
            row = await batch_jobs_repo.get_batch_job(session, batch_job_id)
        return BatchJobView.from_row(row) if row is not None else None

    async def list(self, limit: int = 50, status: str | None = None) -> list[BatchJobView]:
        async with self._store.session() as session:
            rows = await batch_jobs_repo.list_batch_jobs(session, limit=max(1, min(int(limit), 200)), status=status)
        return [BatchJobView.from_row(row) for row in rows]

    async def _append(self, event_type: EventType, batch_job_id: str, payload: dict[str, Any]) -> None:
        try:
            await self._events.append(
                event_type.value,
                batch_job_id,
                AggregateType.BATCH_JOB.value,
                {"batchJobId": batch_job_id, **payload},
                metadata=event_metadata(source=self._events.source),
            )
        except StoreError as exc:
            logger.warning(
                "batch_job_event_failed batch_job_id=%s event_type=%s", batch_job_id, event_type.value, exc_info=exc
            )
