from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from notifyflow.apps.api.deps import get_batch_jobs
from notifyflow.apps.api.response import Envelope, error_responses, success_response
from notifyflow.core.errors import NotFoundError
from notifyflow.domain.payloads import BatchJobView
from notifyflow.services.batch_jobs import BatchJobEngine

router = APIRouter(tags=["batch-jobs"])


class CreateBatchJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    parameters: dict[str, Any] | None = None
    scheduled_at: datetime | None = Field(default=None, alias="scheduledAt")


@router.post(
    "/batch-jobs",
    status_code=202,
    response_model=Envelope[BatchJobView],
    responses=error_responses(400, 503),
)
async def create_batch_job(
    payload: CreateBatchJobRequest,
    request: Request,
    batch_jobs: BatchJobEngine = Depends(get_batch_jobs),
) -> JSONResponse:
    job_id = await batch_jobs.enqueue(payload.type, payload.parameters, scheduled_at=payload.scheduled_at)
    view = await batch_jobs.get(job_id)
    return JSONResponse(content=success_response(request=request, data=view), status_code=202)


@router.get("/batch-jobs", response_model=Envelope[list[BatchJobView]])
async def list_batch_jobs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    status: str | None = Query(default=None),
    batch_jobs: BatchJobEngine = Depends(get_batch_jobs),
) -> dict:
    return success_response(request=request, data=await batch_jobs.list(limit, status))


@router.get("/batch-jobs/{job_id}", response_model=Envelope[BatchJobView], responses=error_responses(404))
async def get_batch_job(
    job_id: str,
    request: Request,
    batch_jobs: BatchJobEngine = Depends(get_batch_jobs),
) -> dict:
    view = await batch_jobs.get(job_id)
    if view is None:
        raise NotFoundError(f"batch job {job_id} not found")
    return success_response(request=request, data=view)


@router.post(
    "/batch-jobs/{job_id}/cancel",
    response_model=Envelope[BatchJobView],
    responses=error_responses(404, 409),
)
async def cancel_batch_job(
    job_id: str,
    request: Request,
    batch_jobs: BatchJobEngine = Depends(get_batch_jobs),
) -> dict:
    view = await batch_jobs.cancel(job_id)
    if view is None:
        existing = await batch_jobs.get(job_id)
        if existing is None:
            raise NotFoundError(f"batch job {job_id} not found")
        raise HTTPException(
            status_code=409,
            detail={"code": "CONFLICT", "message": f"batch job is {existing.status}; only pending jobs can be cancelled"},
        )
    return success_response(request=request, data=view)
