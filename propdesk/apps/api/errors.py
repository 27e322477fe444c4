from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from propdesk.apps.api.response import error_response
from propdesk.core.errors import (
    AuditTrailWriteError,
    DataClientError,
    EntityNotFoundError,
    InvalidStatusError,
    LeaseValidationError,
    PropdeskError,
    StorageError,
    TransitionNotAllowedError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "DATASTORE_ERROR",
}


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


def domain_error_status(exc: PropdeskError) -> tuple[int, str, dict[str, Any] | None]:
    """Map a domain exception to (status, code, details)."""
    if isinstance(exc, EntityNotFoundError):
        return 404, "NOT_FOUND", {"entity": exc.entity, "id": exc.entity_id}
    if isinstance(exc, LeaseValidationError):
        return 422, "LEASE_VALIDATION_ERROR", None
    if isinstance(exc, InvalidStatusError):
        return 422, "INVALID_STATUS", None
    if isinstance(exc, TransitionNotAllowedError):
        return 409, "TRANSITION_NOT_ALLOWED", {"from_status": exc.from_status, "to_status": exc.to_status}
    if isinstance(exc, AuditTrailWriteError):
        request_id = (exc.request or {}).get("id")
        return 500, "AUDIT_TRAIL_WRITE_FAILED", {"request_id": request_id, "status_written": True}
    if isinstance(exc, DataClientError):
        return 502, "DATASTORE_ERROR", {"relation": exc.relation} if exc.relation else None
    if isinstance(exc, StorageError):
        return 502, "STORAGE_ERROR", None
    return 500, "INTERNAL_ERROR", None


async def propdesk_exception_handler(request: Request, exc: PropdeskError) -> JSONResponse:
    status_code, code, details = domain_error_status(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for UI parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; log them and return a stable envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
