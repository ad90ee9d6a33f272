from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from notifyflow.apps.api.deps import get_events, get_notifications
from notifyflow.apps.api.response import (
    Envelope,
    NotificationPage,
    error_responses,
    request_id_for,
    success_response,
)
from notifyflow.core.errors import NotFoundError
from notifyflow.domain.models import AggregateType
from notifyflow.domain.payloads import EventView, NotificationView
from notifyflow.services.events import EventLogService
from notifyflow.services.notifications import NotificationService

router = APIRouter(tags=["notifications"])


class CreateNotificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Content rules (trim, length, allowed types) are enforced by the service.
    message: str
    type: str = "info"
    owner_id: str | None = Field(default=None, alias="ownerId")
    metadata: dict[str, Any] | None = None


@router.post(
    "/notifications",
    status_code=201,
    response_model=Envelope[NotificationView],
    responses=error_responses(400, 503),
)
async def create_notification(
    payload: CreateNotificationRequest,
    request: Request,
    notifications: NotificationService = Depends(get_notifications),
) -> JSONResponse:
    view = await notifications.create(
        payload.message,
        payload.type,
        payload.owner_id,
        payload.metadata,
        correlation_id=request_id_for(request),
    )
    return JSONResponse(content=success_response(request=request, data=view), status_code=201)


@router.get("/notifications", response_model=Envelope[NotificationPage])
async def list_notifications(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    owner_id: str | None = Query(default=None, alias="ownerId"),
    notifications: NotificationService = Depends(get_notifications),
) -> dict:
    items, total = await notifications.list(limit=limit, offset=offset, owner_id=owner_id)
    data = {
        "items": [item.model_dump(mode="json") for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
    return success_response(request=request, data=data)


@router.get("/notifications/stats")
async def notification_stats(
    request: Request,
    owner_id: str | None = Query(default=None, alias="ownerId"),
    notifications: NotificationService = Depends(get_notifications),
) -> dict:
    return success_response(request=request, data=await notifications.stats(owner_id))


@router.get(
    "/notifications/{notification_id}",
    response_model=Envelope[NotificationView],
    responses=error_responses(404),
)
async def get_notification(
    notification_id: str,
    request: Request,
    notifications: NotificationService = Depends(get_notifications),
) -> dict:
    view = await notifications.get_by_id(notification_id)
    if view is None:
        raise NotFoundError(f"notification {notification_id} not found")
    return success_response(request=request, data=view)


@router.get("/notifications/{notification_id}/events", response_model=Envelope[list[EventView]])
async def notification_events(
    notification_id: str,
    request: Request,
    events: EventLogService = Depends(get_events),
) -> dict:
    items = await events.for_aggregate(notification_id, AggregateType.NOTIFICATION.value)
    return success_response(request=request, data=items)
