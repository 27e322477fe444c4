from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from propdesk.core.clock import Clock, utc_now
from propdesk.core.errors import DataClientError
from propdesk.domain.views import (
    AssigneeView,
    CostStatusView,
    MaintenanceAttachmentView,
    MaintenanceCommentView,
    MaintenanceRequestView,
    MaintenanceSummary,
    PropertySummary,
    StatusHistoryEntry,
    TenantSummary,
    UnitSummary,
)
from propdesk.persistence.client import DataClient, Predicate, Row, eq, gte, in_, lte
from propdesk.services.status import derive_maintenance_cost_status, parse_date


logger = logging.getLogger(__name__)

T = TypeVar("T")

ASSIGNEE_INTERNAL = "internal"
ASSIGNEE_EXTERNAL = "external"

_SEARCH_FIELDS = ("title", "description", "id", "status", "priority", "type")


@dataclass(frozen=True)
class MaintenanceFilters:
    status: str | None = None
    priority: str | None = None
    type: str | None = None
    property_id: str | None = None
    unit_id: str | None = None
    assigned_to_id: str | None = None
    requested_by_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    tags: tuple[str, ...] = ()

    def predicates(self) -> list[Predicate]:
        predicates: list[Predicate] = []
        for column in (
            "status",
            "priority",
            "type",
            "property_id",
            "unit_id",
            "assigned_to_id",
            "requested_by_id",
        ):
            value = getattr(self, column)
            if value:
                predicates.append(eq(column, value))
        if self.date_from is not None:
            predicates.append(gte("created_at", self.date_from))
        if self.date_to is not None:
            predicates.append(lte("created_at", self.date_to))
        return predicates


def matches_search(row: Row, search: str) -> bool:
    # Case-insensitive substring match over the user-visible text fields.
    needle = search.strip().lower()
    if not needle:
        return True
    return any(needle in str(row.get(field) or "").lower() for field in _SEARCH_FIELDS)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _naive_utc(value: datetime) -> datetime:
    # sqlite hands back naive timestamps; compare everything as naive UTC.
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _view(model: type[T], row: Any) -> T | None:
    if not isinstance(row, dict):
        return None
    try:
        return model.model_validate(row)  # type: ignore[attr-defined]
    except ValidationError as exc:
        logger.warning("relation_row_invalid model=%s error_count=%s", model.__name__, exc.error_count())
        return None


def _assignee_from_team_member(row: Row) -> Row:
    return {
        "id": row["id"],
        "name": row.get("name"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "role": row.get("role"),
        "type": ASSIGNEE_INTERNAL,
    }


def _assignee_from_external_contact(row: Row) -> Row:
    return {
        "id": row["id"],
        "name": row.get("company_name"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "specialties": list(row.get("services_offered") or []),
        "type": ASSIGNEE_EXTERNAL,
    }


def _assignee_from_service_provider(row: Row) -> Row:
    return {
        "id": row["id"],
        "name": row.get("name"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "specialties": list(row.get("specialties") or []),
        "type": ASSIGNEE_EXTERNAL,
    }


def order_history(rows: list[Row]) -> list[Row]:
    """Break created_at ties in chronologically sorted history rows.

    Entries sharing a timestamp are chained so each one starts from the
    status the previous entry ended on; unchained ties keep their order.
    """
    ordered: list[Row] = []
    index = 0
    while index < len(rows):
        end = index + 1
        while end < len(rows) and rows[end].get("created_at") == rows[index].get("created_at"):
            end += 1
        tied = list(rows[index:end])
        while tied:
            previous = ordered[-1].get("to_status") if ordered else None
            position = next((i for i, row in enumerate(tied) if row.get("from_status") == previous), 0)
            ordered.append(tied.pop(position))
        index = end
    return ordered


def request_view(row: Row) -> MaintenanceRequestView:
    # Flat view without relations; list endpoints use this shape.
    base = {key: value for key, value in row.items() if key not in {"materials", "equipment", "tags"}}
    base["tags"] = list(row.get("tags") or [])
    base["materials"] = list(row.get("materials") or [])
    base["equipment"] = list(row.get("equipment") or [])
    view = MaintenanceRequestView.model_validate(base)
    view.cost = CostStatusView(**vars(derive_maintenance_cost_status(row)))
    return view


class MaintenanceRepository:
    def __init__(self, client: DataClient, *, clock: Clock = utc_now) -> None:
        self._client = client
        self._clock = clock

    async def _isolated(
        self,
        relation: str,
        request_id: str,
        fetch: Callable[[], Awaitable[T]],
        default: T,
    ) -> T:
        try:
            result = await fetch()
        except DataClientError as exc:
            logger.warning(
                "maintenance_relation_fetch_failed relation=%s request_id=%s error=%s",
                relation,
                request_id,
                exc,
            )
            return default
        return default if result is None else result

    async def get_row(self, request_id: str) -> Row | None:
        return await self._client.get("maintenance_requests", request_id)

    async def resolve_assignee(self, assigned_to_id: str, assigned_to_type: str) -> AssigneeView | None:
        """Resolve the polymorphic assignee reference.

        ``internal`` reads team_members. Anything else is an external contact;
        deployments without external_contacts fall back to service_providers.
        """
        if assigned_to_type == ASSIGNEE_INTERNAL:
            row = await self._client.get("team_members", assigned_to_id)
            return _view(AssigneeView, _assignee_from_team_member(row)) if row else None
        try:
            row = await self._client.get("external_contacts", assigned_to_id)
        except DataClientError as exc:
            logger.info("external_contacts_unavailable error=%s", exc)
            row = None
        if row:
            return _view(AssigneeView, _assignee_from_external_contact(row))
        legacy = await self._client.get("service_providers", assigned_to_id)
        return _view(AssigneeView, _assignee_from_service_provider(legacy)) if legacy else None

    async def load_with_relations(self, request_id: str) -> MaintenanceRequestView | None:
        row = await self.get_row(request_id)
        if row is None:
            return None
        view = request_view(row)

        if row.get("property_id"):
            view.property = _view(
                PropertySummary,
                await self._isolated(
                    "properties", request_id, lambda: self._client.get("properties", row["property_id"]), None
                ),
            )
        if row.get("unit_id"):
            view.unit = _view(
                UnitSummary,
                await self._isolated("units", request_id, lambda: self._client.get("units", row["unit_id"]), None),
            )
        if row.get("requested_by_id"):
            view.requested_by = _view(
                TenantSummary,
                await self._isolated(
                    "tenants", request_id, lambda: self._client.get("tenants", row["requested_by_id"]), None
                ),
            )
        if row.get("assigned_to_id") and row.get("assigned_to_type"):
            view.assigned_to = await self._isolated(
                "assignee",
                request_id,
                lambda: self.resolve_assignee(row["assigned_to_id"], row["assigned_to_type"]),
                None,
            )
        history_rows: list[Row] = await self._isolated(
            "maintenance_status_history", request_id, lambda: self._history_rows(request_id), []
        )
        view.status_history = [entry for entry in (_view(StatusHistoryEntry, r) for r in history_rows) if entry]
        comment_rows: list[Row] = await self._isolated(
            "maintenance_comments", request_id, lambda: self._comment_rows(request_id), []
        )
        view.comments = [c for c in (_view(MaintenanceCommentView, r) for r in comment_rows) if c]
        attachment_rows: list[Row] = await self._isolated(
            "maintenance_attachments", request_id, lambda: self._attachment_rows(request_id), []
        )
        view.attachments = [a for a in (_view(MaintenanceAttachmentView, r) for r in attachment_rows) if a]
        return view

    async def _history_rows(self, request_id: str) -> list[Row]:
        # Chronological so the last entry mirrors the current status.
        rows = await self._client.select(
            "maintenance_status_history",
            filters=[eq("request_id", request_id)],
            order_by="created_at",
        )
        return order_history(rows)

    async def _comment_rows(self, request_id: str) -> list[Row]:
        return await self._client.select(
            "maintenance_comments",
            filters=[eq("request_id", request_id)],
            order_by="created_at",
            descending=True,
        )

    async def _attachment_rows(self, request_id: str) -> list[Row]:
        return await self._client.select(
            "maintenance_attachments",
            filters=[eq("request_id", request_id)],
            order_by="created_at",
            descending=True,
        )

    async def history(self, request_id: str) -> list[StatusHistoryEntry]:
        return [entry for entry in (_view(StatusHistoryEntry, r) for r in await self._history_rows(request_id)) if entry]

    async def comments(self, request_id: str) -> list[MaintenanceCommentView]:
        return [c for c in (_view(MaintenanceCommentView, r) for r in await self._comment_rows(request_id)) if c]

    async def attachments(self, request_id: str) -> list[MaintenanceAttachmentView]:
        rows = await self._attachment_rows(request_id)
        return [a for a in (_view(MaintenanceAttachmentView, r) for r in rows) if a]

    async def list_requests(self, filters: MaintenanceFilters | None = None) -> list[MaintenanceRequestView]:
        filters = filters or MaintenanceFilters()
        rows = await self._client.select(
            "maintenance_requests",
            filters=filters.predicates(),
            order_by="created_at",
            descending=True,
        )
        if filters.search:
            rows = [row for row in rows if matches_search(row, filters.search)]
        if filters.tags:
            wanted = set(filters.tags)
            rows = [row for row in rows if wanted.issubset(set(row.get("tags") or []))]
        views: list[MaintenanceRequestView] = []
        for row in rows:
            # One drifted row must not sink the whole listing.
            try:
                views.append(request_view(row))
            except ValidationError as exc:
                logger.warning(
                    "maintenance_row_invalid request_id=%s error_count=%s", row.get("id"), exc.error_count()
                )
        return views

    async def summary(self) -> MaintenanceSummary:
        rows = await self._client.select(
            "maintenance_requests", columns=["status", "created_at", "resolved_at", "due_date"]
        )
        return summarize_requests(rows, self._clock())

    async def list_assignees(self) -> list[AssigneeView]:
        assignees: list[AssigneeView] = []
        try:
            members = await self._client.select("team_members", filters=[eq("is_active", True)])
        except DataClientError as exc:
            logger.warning("team_members_fetch_failed error=%s", exc)
            members = []
        assignees.extend(a for a in (_view(AssigneeView, _assignee_from_team_member(m)) for m in members) if a)

        try:
            contacts = await self._client.select(
                "external_contacts",
                filters=[eq("status", "active"), in_("type", ["contractor", "service_provider"])],
            )
        except DataClientError as exc:
            logger.info("external_contacts_unavailable error=%s", exc)
            contacts = None
        if contacts is not None:
            assignees.extend(
                a for a in (_view(AssigneeView, _assignee_from_external_contact(c)) for c in contacts) if a
            )
            return assignees
        try:
            providers = await self._client.select("service_providers", filters=[eq("is_active", True)])
        except DataClientError as exc:
            logger.warning("service_providers_fetch_failed error=%s", exc)
            providers = []
        assignees.extend(
            a for a in (_view(AssigneeView, _assignee_from_service_provider(p)) for p in providers) if a
        )
        return assignees


def summarize_requests(rows: list[Row], now: datetime) -> MaintenanceSummary:
    """Fold request rows into the headline counters shown above the request table."""
    now_naive = _naive_utc(now)
    start_of_month = now_naive.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    today: date = now_naive.date()
    open_requests = sum(1 for row in rows if row.get("status") == "open")
    in_progress = sum(1 for row in rows if row.get("status") == "in_progress")
    resolved_this_month = 0
    overdue = 0
    resolution_days: list[float] = []
    for row in rows:
        status = row.get("status")
        resolved_at = _as_datetime(row.get("resolved_at"))
        if status == "resolved" and resolved_at is not None:
            resolved_naive = _naive_utc(resolved_at)
            if resolved_naive >= start_of_month:
                resolved_this_month += 1
            created_at = _as_datetime(row.get("created_at"))
            if created_at is not None:
                delta = resolved_naive - _naive_utc(created_at)
                resolution_days.append(delta.total_seconds() / 86400.0)
        due = parse_date(row.get("due_date"))
        if due is not None and due < today and status != "resolved":
            overdue += 1
    avg_resolution = sum(resolution_days) / len(resolution_days) if resolution_days else 0.0
    return MaintenanceSummary(
        total_requests=len(rows),
        open_requests=open_requests,
        in_progress_requests=in_progress,
        resolved_this_month=resolved_this_month,
        overdue_requests=overdue,
        avg_resolution_time=avg_resolution,
    )


async def load_maintenance_request_with_relations(
    client: DataClient, request_id: str, *, clock: Clock = utc_now
) -> MaintenanceRequestView | None:
    return await MaintenanceRepository(client, clock=clock).load_with_relations(request_id)
