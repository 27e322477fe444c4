from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Request

from propdesk.apps.api.deps import get_actor, get_dashboard_aggregator
from propdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from propdesk.apps.api.response import SuccessEnvelope, success_response
from propdesk.services.dashboard import DashboardAggregator, DashboardSnapshot
from propdesk.services.lifecycle import Actor


router = APIRouter(tags=["dashboard"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/dashboard", response_model=SuccessEnvelope[DashboardSnapshot])
async def get_dashboard(
    request: Request,
    today: date | None = None,
    actor: Actor = Depends(get_actor),
    aggregator: DashboardAggregator = Depends(get_dashboard_aggregator),
) -> dict:
    # Reminders are scoped to the calling actor's notifications.
    snapshot = await aggregator.load_dashboard(actor.id, today=today)
    return success_response(request=request, data=snapshot)
