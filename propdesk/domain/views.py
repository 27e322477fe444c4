from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


# Dates stay loosely typed: drifted rows may carry text the status deriver rejects.
DateLike = date | str | None
DateTimeLike = datetime | str | None


class PropertySummary(BaseModel):
    id: str
    name: str | None = None
    address: str | None = None


class UnitSummary(BaseModel):
    id: str
    name: str | None = None
    property_id: str | None = None
    property: PropertySummary | None = None


class TenantSummary(BaseModel):
    id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    is_company: bool | None = None
    company_name: str | None = None

    @property
    def display_name(self) -> str:
        if self.is_company and self.company_name:
            return self.company_name
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "Unknown Tenant"


class LeaseAttachmentView(BaseModel):
    id: str
    lease_id: str | None = None
    name: str
    file_url: str
    file_type: str | None = None
    created_at: DateTimeLike = None


class LeaseView(BaseModel):
    id: str
    unit_id: str | None = None
    start_date: DateLike = None
    end_date: DateLike = None
    rent_amount: float | None = None
    deposit_amount: float | None = None
    notes: str | None = None
    is_draft: bool = False
    # Raw stored value; ``status`` is the effective one.
    stored_status: str | None = None
    status: str
    created_at: DateTimeLike = None
    updated_at: DateTimeLike = None
    unit: UnitSummary | None = None
    tenants: list[TenantSummary] = Field(default_factory=list)
    primary_tenant: TenantSummary | None = None
    attachments: list[LeaseAttachmentView] = Field(default_factory=list)


class AssigneeView(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    specialties: list[str] = Field(default_factory=list)
    # internal | external
    type: str


class StatusHistoryEntry(BaseModel):
    id: str
    request_id: str
    from_status: str | None = None
    to_status: str
    changed_by_id: str
    changed_by_type: str
    notes: str | None = None
    created_at: DateTimeLike = None


class MaintenanceCommentView(BaseModel):
    id: str
    request_id: str
    user_id: str
    user_type: str
    content: str
    is_internal: bool = False
    created_at: DateTimeLike = None


class MaintenanceAttachmentView(BaseModel):
    id: str
    request_id: str
    name: str
    file_url: str
    file_path: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    uploaded_by_id: str | None = None
    uploaded_by_type: str | None = None
    created_at: DateTimeLike = None


class CostStatusView(BaseModel):
    status: str
    estimated: float
    actual: float
    variance: float
    variance_pct: float


class MaintenanceRequestView(BaseModel):
    id: str
    title: str
    description: str | None = None
    status: str
    priority: str | None = None
    type: str | None = None
    property_id: str | None = None
    unit_id: str | None = None
    requested_by_id: str | None = None
    assigned_to_id: str | None = None
    assigned_to_type: str | None = None
    estimated_cost: float | None = None
    actual_cost: float | None = None
    due_date: DateLike = None
    resolved_at: DateTimeLike = None
    resolution_notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    materials: list[dict[str, Any]] = Field(default_factory=list)
    equipment: list[dict[str, Any]] = Field(default_factory=list)
    created_at: DateTimeLike = None
    updated_at: DateTimeLike = None
    property: PropertySummary | None = None
    unit: UnitSummary | None = None
    requested_by: TenantSummary | None = None
    assigned_to: AssigneeView | None = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    comments: list[MaintenanceCommentView] = Field(default_factory=list)
    attachments: list[MaintenanceAttachmentView] = Field(default_factory=list)
    cost: CostStatusView | None = None


class MaintenanceSummary(BaseModel):
    total_requests: int
    open_requests: int
    in_progress_requests: int
    resolved_this_month: int
    overdue_requests: int
    avg_resolution_time: float
