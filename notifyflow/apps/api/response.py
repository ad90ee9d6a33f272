from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from notifyflow.domain.payloads import NotificationView


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Echoed on every versioned response so clients can quote it when reporting issues.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class Envelope(BaseModel, Generic[T]):
    """Versioned success body; used as ``response_model`` so the schema documents ``data``."""

    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class NotificationPage(BaseModel):
    items: list[NotificationView]
    total: int
    limit: int
    offset: int


def error_responses(*status_codes: int) -> dict[int | str, dict[str, Any]]:
    """OpenAPI ``responses`` entries for the error envelopes a route can return."""
    return {status_code: {"model": ErrorEnvelope} for status_code in status_codes}


def request_id_for(request: Request) -> str:
    # The middleware stamps each request; handlers called outside it fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    return data


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Unversioned routes (load balancer health) return the bare payload.
    data = _jsonable(data)
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(request_id=request_id_for(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=request_id_for(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
