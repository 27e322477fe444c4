from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal, Mapping


LeaseStatus = Literal["draft", "upcoming", "active", "expired", "unknown"]
CostStatusValue = Literal["pending", "on_budget", "over_budget"]

LEASE_STATUS_UNKNOWN = "unknown"
LEASE_STATUS_DRAFT = "draft"
LEASE_STATUS_UPCOMING = "upcoming"
LEASE_STATUS_ACTIVE = "active"
LEASE_STATUS_EXPIRED = "expired"


def parse_date(value: Any) -> date | None:
    # Accept date, datetime, or ISO-8601 text; anything else is treated as absent.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _field(entity: Any, name: str) -> Any:
    if isinstance(entity, Mapping):
        return entity.get(name)
    return getattr(entity, name, None)


def derive_lease_status(lease: Any, today: date) -> str:
    """Compute the effective lifecycle status of a lease.

    Draft wins over everything, then a stored status other than ``unknown``,
    then the date window. Never raises: bad dates yield ``unknown``.
    """
    is_draft = _field(lease, "is_draft")
    if isinstance(is_draft, (bool, int)) and is_draft:
        return LEASE_STATUS_DRAFT
    stored = _field(lease, "status")
    if isinstance(stored, str) and stored.strip() and stored != LEASE_STATUS_UNKNOWN:
        return stored
    start = parse_date(_field(lease, "start_date"))
    end = parse_date(_field(lease, "end_date"))
    if start is None or end is None:
        return LEASE_STATUS_UNKNOWN
    if start > today:
        return LEASE_STATUS_UPCOMING
    if end < today:
        return LEASE_STATUS_EXPIRED
    return LEASE_STATUS_ACTIVE


def _amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class CostStatus:
    status: CostStatusValue
    estimated: float
    actual: float
    variance: float
    variance_pct: float


def derive_maintenance_cost_status(request: Any) -> CostStatus:
    # Budget tracking compares actual spend against the estimate.
    estimated = _amount(_field(request, "estimated_cost"))
    actual = _amount(_field(request, "actual_cost"))
    variance = actual - estimated
    variance_pct = (variance / estimated) * 100.0 if estimated != 0 else 0.0
    if actual == 0:
        status: CostStatusValue = "pending"
    elif actual <= estimated:
        status = "on_budget"
    else:
        status = "over_budget"
    return CostStatus(
        status=status,
        estimated=estimated,
        actual=actual,
        variance=variance,
        variance_pct=variance_pct,
    )


def days_until(target: Any, today: date) -> int | None:
    # Whole days from today to the target date; negative once it has passed.
    parsed = parse_date(target)
    if parsed is None:
        return None
    return (parsed - today).days
