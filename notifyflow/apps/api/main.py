from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyflow.apps.api.errors import (
    http_exception_handler,
    notifyflow_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from notifyflow.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from notifyflow.apps.api.routes.batch_jobs import router as batch_jobs_router
from notifyflow.apps.api.routes.events import router as events_router
from notifyflow.apps.api.routes.health import router as health_router
from notifyflow.apps.api.routes.notifications import router as notifications_router
from notifyflow.core.config import get_settings
from notifyflow.core.errors import NotifyFlowError, StreamError
from notifyflow.core.logging import configure_logging
from notifyflow.runtime import Runtime, build_runtime
from notifyflow.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    configure_logging()
    settings = runtime.settings if runtime is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # An injected runtime belongs to the caller; only a self-built one is closed here.
        owned = runtime is None
        active = runtime if runtime is not None else await build_runtime(settings)
        if settings.db_auto_create_schema:
            await active.store.create_schema()
        try:
            await active.stream.connect()
        except StreamError as exc:
            # Start degraded; publishes fail fast with 503 until the stream heals.
            logger.warning("api_stream_unavailable", exc_info=exc)
        app.state.runtime = active
        logger.info("api_started app=%s", settings.app_name)
        try:
            yield
        finally:
            if owned:
                await active.close()
            logger.info("api_stopped app=%s", settings.app_name)

    app = FastAPI(title="NotifyFlow API", lifespan=lifespan)
    app.state.settings = settings
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(NotifyFlowError)
    async def _notifyflow_exception_handler(request: Request, exc: NotifyFlowError):
        return await notifyflow_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(batch_jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Unversioned health stays available for load balancer probes.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
