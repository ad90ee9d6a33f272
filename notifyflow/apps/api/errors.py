from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyflow.apps.api.response import error_response, is_versioned_request
from notifyflow.core.errors import (
    JobQueueError,
    NotFoundError,
    NotifyFlowError,
    StoreError,
    StreamError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors map to a status and a stable code; order matters for subclasses.
_DOMAIN_ERRORS: tuple[tuple[type[NotifyFlowError], int, str], ...] = (
    (ValidationError, 400, "VALIDATION_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (StreamError, 503, "STREAM_UNAVAILABLE"),
    (StoreError, 503, "STORE_UNAVAILABLE"),
    (JobQueueError, 503, "JOB_QUEUE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


def _expose_details(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(getattr(settings, "expose_error_details", False))


async def notifyflow_exception_handler(request: Request, exc: NotifyFlowError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_type, mapped_status, mapped_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    # Client errors carry their own message; server-side causes stay internal unless diagnostics are on.
    if status_code < 500 or _expose_details(request):
        message = str(exc)
    else:
        message = "Service temporarily unavailable" if status_code == 503 else "Internal server error"
    details: dict[str, Any] | None = None
    notification_id = getattr(exc, "notification_id", None)
    if notification_id:
        details = {"notification_id": notification_id}
    if status_code >= 500:
        logger.warning("api_domain_error code=%s path=%s", code, request.url.path, exc_info=exc)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    message = str(exc) if _expose_details(request) else "Internal server error"
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message=message)
    return JSONResponse(content=payload, status_code=500)
