from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import sys

from sqlalchemy import select

from propdesk.domain.models import (
    ExternalContact,
    Inspection,
    Lease,
    LeaseTenant,
    MaintenanceRequest,
    MaintenanceStatusHistory,
    Notification,
    Property,
    TeamMember,
    Tenant,
    Transaction,
    Unit,
)
from propdesk.persistence.db import create_schema, dispose_engine, get_sessionmaker


DEMO_PROPERTY_ID = "prop-demo"
DEMO_USER_ID = "system"


@dataclass(frozen=True)
class DemoLease:
    # Offsets are relative to today so the dashboard always has something to show.
    lease_id: str
    unit_id: str
    tenant_id: str
    start_offset_days: int
    end_offset_days: int
    rent_amount: float
    is_draft: bool = False


DEMO_LEASES = (
    DemoLease("lease-demo-1", "unit-demo-1", "tenant-demo-1", -300, 12, 1450.0),
    DemoLease("lease-demo-2", "unit-demo-2", "tenant-demo-2", -90, 275, 1725.0),
    DemoLease("lease-demo-3", "unit-demo-3", "tenant-demo-3", 20, 385, 1600.0),
    DemoLease("lease-demo-4", "unit-demo-4", "tenant-demo-4", 0, 365, 1500.0, is_draft=True),
)


def build_demo_rows(today: date, now: datetime) -> list[object]:
    # Deterministic ids keep the seed idempotent across runs.
    rows: list[object] = [Property(id=DEMO_PROPERTY_ID, name="Harbor View", address="1 Quay Street", user_id=DEMO_USER_ID)]
    for index, lease in enumerate(DEMO_LEASES, start=1):
        rows.append(Unit(id=lease.unit_id, property_id=DEMO_PROPERTY_ID, name=f"Unit {index}A"))
        rows.append(Tenant(id=lease.tenant_id, first_name=f"Demo{index}", last_name="Tenant", email=f"demo{index}@example.com"))
        rows.append(
            Lease(
                id=lease.lease_id,
                unit_id=lease.unit_id,
                start_date=today + timedelta(days=lease.start_offset_days),
                end_date=today + timedelta(days=lease.end_offset_days),
                rent_amount=lease.rent_amount,
                deposit_amount=lease.rent_amount,
                is_draft=lease.is_draft,
            )
        )
        rows.append(LeaseTenant(id=f"lt-demo-{index}", lease_id=lease.lease_id, tenant_id=lease.tenant_id, is_primary=True))
    rows.extend(
        [
            TeamMember(id="team_demo_1", name="Sam Porter", email="sam@example.com", role="Technician"),
            ExternalContact(
                id="ext-demo-1",
                company_name="QuickFix Plumbing",
                services_offered=["plumbing"],
                type="contractor",
                status="active",
            ),
            MaintenanceRequest(
                id="mr-demo-1",
                title="Kitchen tap leaking",
                description="Constant drip under the sink.",
                status="open",
                priority="high",
                type="plumbing",
                property_id=DEMO_PROPERTY_ID,
                unit_id="unit-demo-1",
                requested_by_id="tenant-demo-1",
                estimated_cost=120.0,
                due_date=today + timedelta(days=3),
                tags=["kitchen"],
                materials=[],
                equipment=[],
            ),
            MaintenanceStatusHistory(
                id="msh-demo-1",
                request_id="mr-demo-1",
                from_status=None,
                to_status="open",
                changed_by_id="tenant-demo-1",
                changed_by_type="tenant",
                notes="Request created",
                created_at=now,
            ),
            Transaction(id="tx-demo-1", type="income", amount=3175.0, description="Rent", created_at=now - timedelta(days=4)),
            Transaction(id="tx-demo-2", type="expense", amount=240.0, description="Gutter cleaning", created_at=now - timedelta(days=9)),
            Inspection(id="insp-demo-1", property_id=DEMO_PROPERTY_ID, type="fire_safety", expiration_date=today + timedelta(days=5)),
            Notification(
                id="notif-demo-1",
                user_id=DEMO_USER_ID,
                title="Lease ending soon",
                message="Unit 1A lease ends in 12 days",
                priority="high",
                type="lease",
                created_at=now,
            ),
        ]
    )
    return rows


async def seed_demo() -> int:
    await create_schema()
    session_factory = get_sessionmaker()
    try:
        async with session_factory() as session:
            existing = await session.execute(select(Property.id).where(Property.id == DEMO_PROPERTY_ID).limit(1))
            if existing.scalar_one_or_none() is not None:
                print("Demo portfolio already seeded; skipping.")
                return 0
            now = datetime.now(timezone.utc)
            rows = build_demo_rows(now.date(), now)
            session.add_all(rows)
            await session.commit()
            print(f"Seeded demo portfolio with {len(rows)} rows.")
            return 0
    finally:
        await dispose_engine()


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
