from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
import logging
import math
from typing import Any

from pydantic import BaseModel, Field

from propdesk.core.clock import Clock, utc_now
from propdesk.core.config import Settings, get_settings
from propdesk.domain.views import LeaseView
from propdesk.persistence.client import DataClient, Embed, Row, eq, gte, lte
from propdesk.persistence.repos.leases import LeaseRepository
from propdesk.services.status import (
    LEASE_STATUS_ACTIVE,
    LEASE_STATUS_DRAFT,
    LEASE_STATUS_EXPIRED,
    LEASE_STATUS_UPCOMING,
    days_until,
    parse_date,
)


logger = logging.getLogger(__name__)

SECTION_LEASES = "leases"
SECTION_TRANSACTIONS = "transactions"
SECTION_INSPECTIONS = "inspections"
SECTION_NOTIFICATIONS = "notifications"

INSPECTION_EMBEDS = (
    Embed(name="property", relation="properties", local_column="property_id", remote_column="id"),
)


class LeaseCounts(BaseModel):
    active: int = 0
    upcoming: int = 0
    draft: int = 0
    expired: int = 0
    total: int = 0


class FinancialSummary(BaseModel):
    income_30_days: float = 0.0
    expenses_30_days: float = 0.0
    net_income_30_days: float = 0.0


class LeaseExpiration(BaseModel):
    id: str
    tenant_name: str
    unit_name: str
    property_name: str
    end_date: date
    days_until_expiry: int


class ScheduledInspection(BaseModel):
    id: str
    property_name: str
    type: str | None = None
    expiration_date: date
    days_until_due: int


class Reminder(BaseModel):
    id: str
    title: str | None = None
    description: str | None = None
    due_date: Any = None
    priority: str | None = None
    type: str | None = None


class DashboardSnapshot(BaseModel):
    today: date
    leases: LeaseCounts = Field(default_factory=LeaseCounts)
    occupancy_rate: int = 0
    financial: FinancialSummary = Field(default_factory=FinancialSummary)
    lease_expirations: list[LeaseExpiration] = Field(default_factory=list)
    scheduled_inspections: list[ScheduledInspection] = Field(default_factory=list)
    reminders: list[Reminder] = Field(default_factory=list)
    # Names of the source queries that failed and were rendered empty.
    failed_sections: list[str] = Field(default_factory=list)


def count_leases(leases: list[LeaseView]) -> LeaseCounts:
    statuses = [lease.status for lease in leases]
    return LeaseCounts(
        active=statuses.count(LEASE_STATUS_ACTIVE),
        upcoming=statuses.count(LEASE_STATUS_UPCOMING),
        draft=statuses.count(LEASE_STATUS_DRAFT),
        expired=statuses.count(LEASE_STATUS_EXPIRED),
        total=len(statuses),
    )


def occupancy_rate(counts: LeaseCounts) -> int:
    # Half-up rounding of the active share, as a whole percentage.
    return int(math.floor(counts.active / max(counts.total, 1) * 100 + 0.5))


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def summarize_transactions(rows: list[Row]) -> FinancialSummary:
    income = sum(_amount(row.get("amount")) for row in rows if row.get("type") == "income")
    expenses = sum(_amount(row.get("amount")) for row in rows if row.get("type") == "expense")
    return FinancialSummary(income_30_days=income, expenses_30_days=expenses, net_income_30_days=income - expenses)


def _tenant_name(lease: LeaseView) -> str:
    tenant = lease.primary_tenant or (lease.tenants[0] if lease.tenants else None)
    return tenant.display_name if tenant is not None else "Unknown Tenant"


def upcoming_expirations(leases: list[LeaseView], today: date, *, window_days: int, size: int) -> list[LeaseExpiration]:
    expirations: list[LeaseExpiration] = []
    for lease in leases:
        if lease.status != LEASE_STATUS_ACTIVE:
            continue
        end = parse_date(lease.end_date)
        if end is None:
            continue
        remaining = (end - today).days
        if remaining < 0 or remaining > window_days:
            continue
        unit = lease.unit
        expirations.append(
            LeaseExpiration(
                id=lease.id,
                tenant_name=_tenant_name(lease),
                unit_name=(unit.name if unit and unit.name else "Unknown Unit"),
                property_name=(
                    unit.property.name if unit and unit.property and unit.property.name else "Unknown Property"
                ),
                end_date=end,
                days_until_expiry=remaining,
            )
        )
    expirations.sort(key=lambda item: item.days_until_expiry)
    return expirations[:size]


def scheduled_inspections(rows: list[Row], today: date, *, size: int) -> list[ScheduledInspection]:
    inspections: list[ScheduledInspection] = []
    for row in rows:
        due = parse_date(row.get("expiration_date"))
        remaining = days_until(due, today)
        if due is None or remaining is None:
            continue
        property_row = row.get("property") if isinstance(row.get("property"), dict) else None
        inspections.append(
            ScheduledInspection(
                id=str(row["id"]),
                property_name=(property_row or {}).get("name") or "Unknown Property",
                type=row.get("type"),
                expiration_date=due,
                days_until_due=remaining,
            )
        )
    inspections.sort(key=lambda item: item.expiration_date)
    return inspections[:size]


def reminders_from_notifications(rows: list[Row], *, size: int) -> list[Reminder]:
    return [
        Reminder(
            id=str(row["id"]),
            title=row.get("title"),
            description=row.get("message"),
            due_date=row.get("created_at"),
            priority=row.get("priority"),
            type=row.get("type"),
        )
        for row in rows[:size]
    ]


class DashboardAggregator:
    def __init__(
        self,
        client: DataClient,
        *,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self._client = client
        self._clock = clock
        self._settings = settings or get_settings()
        self._leases = LeaseRepository(client, clock=clock)

    async def _transactions(self, now: datetime) -> list[Row]:
        since = now - timedelta(days=self._settings.dashboard_income_window_days)
        return await self._client.select(
            "transactions", filters=[gte("created_at", since)], order_by="created_at", descending=True
        )

    async def _inspections(self, today: date) -> list[Row]:
        horizon = today + timedelta(days=self._settings.dashboard_inspection_window_days)
        return await self._client.select_embedded(
            "inspections",
            INSPECTION_EMBEDS,
            filters=[lte("expiration_date", horizon)],
            order_by="expiration_date",
        )

    async def _notifications(self, user_id: str) -> list[Row]:
        return await self._client.select(
            "notifications",
            filters=[eq("user_id", user_id), eq("is_read", False)],
            order_by="created_at",
            descending=True,
            limit=self._settings.dashboard_notifications_limit,
        )

    async def load_dashboard(self, user_id: str, today: date | None = None) -> DashboardSnapshot:
        """Compose the dashboard from four independent queries run concurrently.

        A failing query renders its section empty and is named in
        ``failed_sections``; it never fails the whole dashboard.
        """
        now = self._clock()
        today = today or now.date()
        leases_repo = self._leases
        if today != now.date():
            # Derive lease statuses against the requested day, not the wall clock.
            pinned = datetime.combine(today, now.timetz())
            leases_repo = LeaseRepository(self._client, clock=lambda: pinned)
        sections = (SECTION_LEASES, SECTION_TRANSACTIONS, SECTION_INSPECTIONS, SECTION_NOTIFICATIONS)
        results = await asyncio.gather(
            leases_repo.load_all(),
            self._transactions(now),
            self._inspections(today),
            self._notifications(user_id),
            return_exceptions=True,
        )
        failed: list[str] = []
        resolved: dict[str, list[Any]] = {}
        for name, result in zip(sections, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "dashboard_section_failed section=%s user_id=%s error=%s", name, user_id, result
                )
                failed.append(name)
                resolved[name] = []
            else:
                resolved[name] = list(result)

        leases: list[LeaseView] = resolved[SECTION_LEASES]
        counts = count_leases(leases)
        size = self._settings.dashboard_section_size
        return DashboardSnapshot(
            today=today,
            leases=counts,
            occupancy_rate=occupancy_rate(counts),
            financial=summarize_transactions(resolved[SECTION_TRANSACTIONS]),
            lease_expirations=upcoming_expirations(
                leases, today, window_days=self._settings.dashboard_expiry_window_days, size=size
            ),
            scheduled_inspections=scheduled_inspections(resolved[SECTION_INSPECTIONS], today, size=size),
            reminders=reminders_from_notifications(resolved[SECTION_NOTIFICATIONS], size=size),
            failed_sections=failed,
        )
