from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from propdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from propdesk.apps.api.response import SuccessEnvelope, success_response
from propdesk.core.config import get_settings
from propdesk.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str
    # Pool counters are null until the first datastore call opens the engine.
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", service=get_settings().app_name, db_pool=pool_stats())
    return success_response(request=request, data=payload)
