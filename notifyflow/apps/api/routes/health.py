from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from notifyflow.apps.api.deps import get_runtime
from notifyflow.apps.api.response import success_response
from notifyflow.runtime import Runtime
from notifyflow.services.telemetry import counters_snapshot, delivery_stats, p95_latency

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/health")
async def health(request: Request, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    # Report each dependency; the cache is best-effort and never fails the check.
    try:
        database = await runtime.store.ping()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        database = False
    cache = await runtime.cache.ping()
    stream = runtime.stream.is_connected
    status = "ok" if database and stream else "degraded"
    data = {
        "status": status,
        "checks": {"database": database, "cache": cache, "stream": stream},
    }
    return JSONResponse(content=success_response(request=request, data=data), status_code=200 if status == "ok" else 503)


@router.get("/metrics/counters")
async def metric_counters(request: Request) -> dict:
    return success_response(request=request, data=counters_snapshot())


@router.get("/metrics/latency")
async def metric_latency(request: Request, window_s: int = Query(default=300, ge=1, le=3600)) -> dict:
    data = {
        "window_s": window_s,
        "request_p95_ms": p95_latency(window_s, path_prefix="/v1"),
        "delivery": delivery_stats(window_s),
    }
    return success_response(request=request, data=data)
