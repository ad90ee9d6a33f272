from __future__ import annotations

from fastapi import Request

from notifyflow.runtime import Runtime
from notifyflow.services.batch_jobs import BatchJobEngine
from notifyflow.services.events import EventLogService
from notifyflow.services.notifications import NotificationService


def get_runtime(request: Request) -> Runtime:
    # The app lifespan owns the runtime; handlers only borrow it.
    return request.app.state.runtime


def get_notifications(request: Request) -> NotificationService:
    return get_runtime(request).notifications


def get_events(request: Request) -> EventLogService:
    return get_runtime(request).events


def get_batch_jobs(request: Request) -> BatchJobEngine:
    return get_runtime(request).batch_jobs
