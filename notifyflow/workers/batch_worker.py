from __future__ import annotations

import logging
from typing import Any

from arq import Retry, cron
from arq.connections import RedisSettings

from notifyflow.core.config import get_settings
from notifyflow.core.errors import ValidationError
from notifyflow.core.logging import configure_logging
from notifyflow.domain.models import BatchJobType
from notifyflow.domain.payloads import BatchJobWorkItem
from notifyflow.runtime import Runtime, build_runtime
from notifyflow.services.resilience import TokenBucket, exponential_backoff_s


logger = logging.getLogger(__name__)


async def run_batch_job(ctx, payload: dict) -> dict[str, Any] | None:
    # Validate the work item at the worker boundary; malformed items are not retried.
    item = BatchJobWorkItem.model_validate(payload)
    runtime: Runtime = ctx["runtime"]
    settings = runtime.settings
    attempt = int(ctx.get("job_try", 1))
    await ctx["rate_limiter"].acquire()
    try:
        return await runtime.batch_jobs.execute(item.batch_job_id, item.type, item.parameters, attempt=attempt)
    except ValidationError as exc:
        logger.warning("batch_job_rejected batch_job_id=%s error=%s", item.batch_job_id, exc)
        return None
    except Exception as exc:  # noqa: BLE001 - arq owns redelivery; only the backoff is decided here
        max_tries = max(1, int(settings.batch_max_attempts))
        if attempt < max_tries:
            defer_s = exponential_backoff_s(attempt, base_s=settings.batch_backoff_base_s)
            logger.info(
                "batch_job_retry batch_job_id=%s attempt=%s defer_s=%s", item.batch_job_id, attempt, defer_s
            )
            raise Retry(defer=defer_s) from exc
        raise


async def scheduled_cleanup(ctx) -> str:
    # Daily retention run; goes through the queue like any ad hoc job.
    runtime: Runtime = ctx["runtime"]
    return await runtime.batch_jobs.enqueue(
        BatchJobType.DATA_CLEANUP.value,
        {"retentionDays": runtime.settings.batch_cleanup_retention_days},
    )


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    # Reuse arq's own pool for enqueueing maintenance jobs.
    runtime = await build_runtime(settings, job_queue=ctx["redis"], create_queue=False)
    ctx["runtime"] = runtime
    ctx["rate_limiter"] = TokenBucket(settings.batch_rate_limit_per_s)
    # Sweep runs alongside the batch worker so recovery continues when API traffic is idle.
    runtime.scheduler.every(settings.notify_sweep_interval_s, runtime.consumer.sweep, name="notification-sweep")
    logger.info(
        "batch_worker_started queue=%s max_jobs=%s sweep_interval_s=%s",
        settings.batch_queue_name,
        settings.batch_max_concurrency,
        settings.notify_sweep_interval_s,
    )


async def _shutdown(ctx) -> None:
    runtime: Runtime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.batch_queue_name
    max_tries = max(1, int(settings.batch_max_attempts))
    max_jobs = max(1, int(settings.batch_max_concurrency))
    functions = [run_batch_job]
    cron_jobs = [
        cron(
            scheduled_cleanup,
            name="data-cleanup",
            hour={int(settings.batch_cleanup_hour_utc)},
            minute={0},
            second={0},
            run_at_startup=False,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
