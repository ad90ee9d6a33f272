from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request

from notifyflow.apps.api.deps import get_events
from notifyflow.apps.api.response import success_response
from notifyflow.core.errors import NotFoundError
from notifyflow.services.events import EventLogService

router = APIRouter(tags=["events"])


@router.get("/events")
async def list_events(
    request: Request,
    from_time: datetime | None = Query(default=None, alias="from"),
    to_time: datetime | None = Query(default=None, alias="to"),
    types: str | None = Query(default=None, description="Comma-delimited event types"),
    limit: int = Query(default=500, ge=1, le=5000),
    events: EventLogService = Depends(get_events),
) -> dict:
    # Replay window in creation order; consumers page forward using the last created_at seen.
    event_types = [item.strip() for item in (types or "").split(",") if item.strip()]
    items = await events.stream_since(from_time, to_time, event_types or None, limit=limit)
    return success_response(request=request, data=items)


@router.get("/events/unprocessed")
async def unprocessed_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    events: EventLogService = Depends(get_events),
) -> dict:
    return success_response(request=request, data=await events.unprocessed(limit))


@router.post("/events/{event_id}/processed")
async def mark_event_processed(
    event_id: str,
    request: Request,
    events: EventLogService = Depends(get_events),
) -> dict:
    updated = await events.mark_processed(event_id)
    if not updated:
        raise NotFoundError(f"event {event_id} not found or already processed")
    return success_response(request=request, data={"id": event_id, "processed": True})
