from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from pydantic import BaseModel, Field

from propdesk.apps.api.deps import get_actor, get_maintenance_service
from propdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from propdesk.apps.api.response import SuccessEnvelope, success_response
from propdesk.domain.views import (
    AssigneeView,
    CostStatusView,
    MaintenanceAttachmentView,
    MaintenanceCommentView,
    MaintenanceRequestView,
    MaintenanceSummary,
    StatusHistoryEntry,
)
from propdesk.persistence.repos.maintenance import MaintenanceFilters
from propdesk.services.lifecycle import Actor
from propdesk.services.maintenance import MaintenanceService


router = APIRouter(prefix="/maintenance", tags=["maintenance"], responses=DEFAULT_ERROR_RESPONSES)

MaintenancePriority = Literal["low", "medium", "high", "urgent"]
MaintenanceType = Literal[
    "plumbing",
    "electrical",
    "hvac",
    "appliance",
    "cleaning",
    "landscaping",
    "security",
    "general",
    "other",
]
AssigneeType = Literal["internal", "external"]

_REQUIRED_REQUEST_FIELDS = ("title", "description", "type", "priority", "status")


class MaintenanceCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    type: MaintenanceType = "general"
    priority: MaintenancePriority = "medium"
    property_id: str | None = None
    unit_id: str | None = None
    requested_by_id: str | None = None
    assigned_to_id: str | None = None
    assigned_to_type: AssigneeType | None = None
    estimated_cost: float | None = Field(default=None, ge=0)
    due_date: date | None = None
    tags: list[str] = Field(default_factory=list)


class MaintenanceUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    type: MaintenanceType | None = None
    priority: MaintenancePriority | None = None
    status: str | None = None
    # Recorded on the history entry when the status changes.
    note: str | None = None
    property_id: str | None = None
    unit_id: str | None = None
    assigned_to_id: str | None = None
    assigned_to_type: AssigneeType | None = None
    estimated_cost: float | None = Field(default=None, ge=0)
    actual_cost: float | None = Field(default=None, ge=0)
    due_date: date | None = None
    resolution_notes: str | None = None
    tags: list[str] | None = None


class TransitionRequest(BaseModel):
    status: str
    note: str | None = None


class CommentCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    is_internal: bool = False


class ItemListRequest(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)


@router.get("/requests", response_model=SuccessEnvelope[list[MaintenanceRequestView]])
async def list_requests(
    request: Request,
    status: str | None = None,
    priority: str | None = None,
    type: str | None = None,
    property_id: str | None = None,
    unit_id: str | None = None,
    assigned_to_id: str | None = None,
    requested_by_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    search: str | None = None,
    tags: list[str] | None = Query(default=None),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    filters = MaintenanceFilters(
        status=status,
        priority=priority,
        type=type,
        property_id=property_id,
        unit_id=unit_id,
        assigned_to_id=assigned_to_id,
        requested_by_id=requested_by_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        tags=tuple(tags or ()),
    )
    requests = await service.list_requests(filters)
    return success_response(request=request, data=requests)


@router.post("/requests", status_code=201, response_model=SuccessEnvelope[MaintenanceRequestView])
async def create_request(
    request: Request,
    payload: MaintenanceCreateRequest,
    actor: Actor = Depends(get_actor),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    created = await service.create_request(payload.model_dump(exclude_none=True), actor)
    return success_response(request=request, data=created)


@router.get("/summary", response_model=SuccessEnvelope[MaintenanceSummary])
async def get_summary(request: Request, service: MaintenanceService = Depends(get_maintenance_service)) -> dict:
    summary = await service.summary()
    return success_response(request=request, data=summary)


@router.get("/assignees", response_model=SuccessEnvelope[list[AssigneeView]])
async def list_assignees(request: Request, service: MaintenanceService = Depends(get_maintenance_service)) -> dict:
    assignees = await service.list_assignees()
    return success_response(request=request, data=assignees)


@router.get("/requests/{request_id}", response_model=SuccessEnvelope[MaintenanceRequestView])
async def get_request(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    view = await service.get_request(request_id)
    return success_response(request=request, data=view)


@router.patch("/requests/{request_id}", response_model=SuccessEnvelope[MaintenanceRequestView])
async def update_request(
    request: Request,
    request_id: str,
    payload: MaintenanceUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    fields = payload.model_dump(exclude_unset=True)
    # Sent fields are written, nulls included; a null on a required column is ignored.
    for name in _REQUIRED_REQUEST_FIELDS:
        if fields.get(name, True) is None:
            fields.pop(name)
    updated = await service.update_request(request_id, fields, actor)
    return success_response(request=request, data=updated)


@router.delete("/requests/{request_id}", status_code=204)
async def delete_request(
    request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> Response:
    await service.delete_request(request_id)
    return Response(status_code=204)


@router.post("/requests/{request_id}/transition", response_model=SuccessEnvelope[MaintenanceRequestView])
async def transition_request(
    request: Request,
    request_id: str,
    payload: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    updated = await service.transition(request_id, payload.status, actor, payload.note)
    return success_response(request=request, data=updated)


@router.get("/requests/{request_id}/history", response_model=SuccessEnvelope[list[StatusHistoryEntry]])
async def get_history(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    history = await service.history(request_id)
    return success_response(request=request, data=history)


@router.get("/requests/{request_id}/cost", response_model=SuccessEnvelope[CostStatusView])
async def get_cost(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    cost = await service.cost(request_id)
    return success_response(request=request, data=cost)


@router.get("/requests/{request_id}/comments", response_model=SuccessEnvelope[list[MaintenanceCommentView]])
async def list_comments(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    comments = await service.comments(request_id)
    return success_response(request=request, data=comments)


@router.post(
    "/requests/{request_id}/comments",
    status_code=201,
    response_model=SuccessEnvelope[MaintenanceCommentView],
)
async def add_comment(
    request: Request,
    request_id: str,
    payload: CommentCreateRequest,
    actor: Actor = Depends(get_actor),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    comment = await service.add_comment(request_id, payload.content, actor, is_internal=payload.is_internal)
    return success_response(request=request, data=comment)


@router.get("/requests/{request_id}/materials", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def get_materials(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    return success_response(request=request, data=await service.materials(request_id))


@router.put("/requests/{request_id}/materials", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def replace_materials(
    request: Request,
    request_id: str,
    payload: ItemListRequest,
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    return success_response(request=request, data=await service.replace_materials(request_id, payload.items))


@router.get("/requests/{request_id}/equipment", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def get_equipment(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    return success_response(request=request, data=await service.equipment(request_id))


@router.put("/requests/{request_id}/equipment", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def replace_equipment(
    request: Request,
    request_id: str,
    payload: ItemListRequest,
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    return success_response(request=request, data=await service.replace_equipment(request_id, payload.items))


@router.get(
    "/requests/{request_id}/attachments",
    response_model=SuccessEnvelope[list[MaintenanceAttachmentView]],
)
async def list_attachments(
    request: Request, request_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> dict:
    return success_response(request=request, data=await service.attachments(request_id))


@router.post(
    "/requests/{request_id}/attachments",
    status_code=201,
    response_model=SuccessEnvelope[MaintenanceAttachmentView],
)
async def upload_attachment(
    request: Request,
    request_id: str,
    file: UploadFile = File(...),
    name: str | None = Form(default=None),
    actor: Actor = Depends(get_actor),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict:
    data = await file.read()
    attachment = await service.upload_attachment(
        request_id,
        actor,
        filename=file.filename or "attachment",
        data=data,
        content_type=file.content_type,
        name=name,
    )
    return success_response(request=request, data=attachment)


@router.delete("/attachments/{attachment_id}", status_code=204)
async def delete_attachment(
    attachment_id: str, service: MaintenanceService = Depends(get_maintenance_service)
) -> Response:
    await service.delete_attachment(attachment_id)
    return Response(status_code=204)
