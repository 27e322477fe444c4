from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile
from pydantic import BaseModel, Field

from propdesk.apps.api.deps import get_lease_service
from propdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from propdesk.apps.api.response import SuccessEnvelope, success_response
from propdesk.domain.views import LeaseAttachmentView, LeaseView
from propdesk.services.leases import LeaseService


router = APIRouter(prefix="/leases", tags=["leases"], responses=DEFAULT_ERROR_RESPONSES)

_REQUIRED_LEASE_FIELDS = ("is_draft",)


class LeaseCreateRequest(BaseModel):
    unit_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    rent_amount: float | None = Field(default=None, ge=0)
    deposit_amount: float | None = Field(default=None, ge=0)
    notes: str | None = None
    is_draft: bool = False
    # Ordered; the first tenant becomes the primary tenant.
    tenant_ids: list[str] = Field(default_factory=list)


class LeaseUpdateRequest(BaseModel):
    unit_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    rent_amount: float | None = Field(default=None, ge=0)
    deposit_amount: float | None = Field(default=None, ge=0)
    notes: str | None = None
    is_draft: bool | None = None
    status: str | None = None


@router.get("", response_model=SuccessEnvelope[list[LeaseView]])
async def list_leases(request: Request, service: LeaseService = Depends(get_lease_service)) -> dict:
    leases = await service.list_leases()
    return success_response(request=request, data=leases)


@router.post("", status_code=201, response_model=SuccessEnvelope[LeaseView])
async def create_lease(
    request: Request,
    payload: LeaseCreateRequest,
    service: LeaseService = Depends(get_lease_service),
) -> dict:
    fields = payload.model_dump(exclude={"tenant_ids"}, exclude_none=True)
    lease = await service.create_lease(fields, payload.tenant_ids)
    return success_response(request=request, data=lease)


@router.get("/{lease_id}", response_model=SuccessEnvelope[LeaseView])
async def get_lease(request: Request, lease_id: str, service: LeaseService = Depends(get_lease_service)) -> dict:
    lease = await service.get_lease(lease_id)
    return success_response(request=request, data=lease)


@router.patch("/{lease_id}", response_model=SuccessEnvelope[LeaseView])
async def update_lease(
    request: Request,
    lease_id: str,
    payload: LeaseUpdateRequest,
    service: LeaseService = Depends(get_lease_service),
) -> dict:
    fields = payload.model_dump(exclude_unset=True)
    # Sent fields are written, nulls included; a null on a required column is ignored.
    for name in _REQUIRED_LEASE_FIELDS:
        if fields.get(name, True) is None:
            fields.pop(name)
    lease = await service.update_lease(lease_id, fields)
    return success_response(request=request, data=lease)


@router.delete("/{lease_id}", status_code=204)
async def delete_lease(lease_id: str, service: LeaseService = Depends(get_lease_service)) -> Response:
    await service.delete_lease(lease_id)
    return Response(status_code=204)


@router.post("/{lease_id}/attachments", status_code=201, response_model=SuccessEnvelope[LeaseAttachmentView])
async def upload_lease_attachment(
    request: Request,
    lease_id: str,
    file: UploadFile = File(...),
    name: str | None = Form(default=None),
    service: LeaseService = Depends(get_lease_service),
) -> dict:
    data = await file.read()
    attachment = await service.upload_attachment(
        lease_id,
        filename=file.filename or "attachment",
        data=data,
        content_type=file.content_type,
        name=name,
    )
    return success_response(request=request, data=attachment)


@router.delete("/{lease_id}/attachments/{attachment_id}", status_code=204)
async def delete_lease_attachment(
    lease_id: str,
    attachment_id: str,
    service: LeaseService = Depends(get_lease_service),
) -> Response:
    await service.delete_attachment(lease_id, attachment_id)
    return Response(status_code=204)
