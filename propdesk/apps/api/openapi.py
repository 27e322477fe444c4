from __future__ import annotations

from typing import Any

from propdesk.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _response(
        "Not found",
        _error_example(
            code="NOT_FOUND",
            message="Lease with ID 7f3a not found",
            details={"entity": "Lease", "id": "7f3a"},
        ),
    ),
    409: _response(
        "Transition not allowed",
        _error_example(
            code="TRANSITION_NOT_ALLOWED",
            message="Transition from resolved to open is not allowed",
            details={"from_status": "resolved", "to_status": "open"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal server error",
        _error_example(
            code="AUDIT_TRAIL_WRITE_FAILED",
            message="history insert failed",
            details={"request_id": "mr_1", "status_written": True},
        ),
    ),
    502: _response(
        "Datastore error",
        _error_example(code="DATASTORE_ERROR", message="relation \"leases\" does not exist"),
    ),
}
