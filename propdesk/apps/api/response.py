from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


def request_id_for(request: Request) -> str:
    # The middleware normally assigns one; handlers outside it fall back to the header or a fresh id.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    # Set for collection payloads (lease and request listings, assignee directory).
    count: int | None = None

    @classmethod
    def for_request(cls, request: Request, *, count: int | None = None) -> ResponseMeta:
        return cls(request_id=request_id_for(request), count=count)

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    count = len(data) if isinstance(data, Sequence) and not isinstance(data, (str, bytes)) else None
    return {"data": data, "meta": ResponseMeta.for_request(request, count=count).as_payload()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": ResponseMeta.for_request(request).as_payload()}
