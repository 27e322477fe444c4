from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Protocol
from uuid import uuid4

from propdesk.core.clock import Clock, utc_now
from propdesk.core.config import get_settings
from propdesk.core.errors import (
    AuditTrailWriteError,
    DataClientError,
    InvalidStatusError,
    MaintenanceRequestNotFoundError,
    TransitionNotAllowedError,
)
from propdesk.persistence.client import Row, SupportsTransactions
from propdesk.services.adaptive_writer import AdaptiveWriter


logger = logging.getLogger(__name__)

STATUS_OPEN = "open"
STATUS_ASSIGNED = "assigned"
STATUS_IN_PROGRESS = "in_progress"
STATUS_RESOLVED = "resolved"
STATUS_CANCELLED = "cancelled"
STATUS_REJECTED = "rejected"

MAINTENANCE_STATUSES: frozenset[str] = frozenset(
    {STATUS_OPEN, STATUS_ASSIGNED, STATUS_IN_PROGRESS, STATUS_RESOLVED, STATUS_CANCELLED, STATUS_REJECTED}
)

ACTOR_TYPES: frozenset[str] = frozenset({"tenant", "team", "vendor"})

REQUEST_CREATED_NOTE = "Request created"


def default_transition_note(from_status: str | None, to_status: str) -> str:
    return f"Status changed from {from_status} to {to_status}"


@dataclass(frozen=True)
class Actor:
    id: str
    type: str


class TransitionPolicy(Protocol):
    def check(self, from_status: str | None, to_status: str) -> None:
        ...


class PermissiveTransitionPolicy:
    # Any state may move to any other; history still records every change.
    def check(self, from_status: str | None, to_status: str) -> None:
        return None


DEFAULT_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_OPEN: frozenset({STATUS_ASSIGNED, STATUS_IN_PROGRESS, STATUS_CANCELLED, STATUS_REJECTED}),
    STATUS_ASSIGNED: frozenset({STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_CANCELLED}),
    STATUS_IN_PROGRESS: frozenset({STATUS_ASSIGNED, STATUS_RESOLVED, STATUS_CANCELLED}),
    STATUS_RESOLVED: frozenset({STATUS_IN_PROGRESS}),
    STATUS_CANCELLED: frozenset({STATUS_OPEN}),
    STATUS_REJECTED: frozenset({STATUS_OPEN}),
}


class TableTransitionPolicy:
    def __init__(self, table: Mapping[str, frozenset[str]] | None = None) -> None:
        self._table = dict(table or DEFAULT_TRANSITIONS)

    def check(self, from_status: str | None, to_status: str) -> None:
        # Same-state writes are always permitted; they never produce history.
        if from_status == to_status:
            return None
        if from_status is None or to_status not in self._table.get(from_status, frozenset()):
            raise TransitionNotAllowedError(from_status, to_status)
        return None


def policy_from_settings() -> TransitionPolicy:
    name = get_settings().maintenance_transition_policy.strip().lower()
    if name == "strict":
        return TableTransitionPolicy()
    if name != "permissive":
        logger.warning("unknown_transition_policy policy=%s fallback=permissive", name)
    return PermissiveTransitionPolicy()


def history_entry(
    request_id: str,
    from_status: str | None,
    to_status: str,
    actor: Actor,
    now: Any,
    note: str | None,
) -> dict[str, Any]:
    return {
        "id": uuid4().hex,
        "request_id": request_id,
        "from_status": from_status,
        "to_status": to_status,
        "changed_by_id": actor.id,
        "changed_by_type": actor.type,
        "notes": note,
        # Stamped explicitly so entries written in the same second keep their order.
        "created_at": now,
    }


class LifecycleEngine:
    """Owns maintenance-request status changes and the append-only history."""

    def __init__(
        self,
        writer: AdaptiveWriter,
        *,
        policy: TransitionPolicy | None = None,
        clock: Clock = utc_now,
        atomic: bool | None = None,
    ) -> None:
        self._writer = writer
        self._policy = policy or policy_from_settings()
        self._clock = clock
        self._atomic = get_settings().atomic_status_transitions if atomic is None else atomic

    def _transactional(self) -> bool:
        return self._atomic and isinstance(self._writer.client, SupportsTransactions)

    async def create_request(self, fields: Mapping[str, Any], actor: Actor) -> Row:
        now = self._clock()
        candidate = dict(fields)
        candidate.setdefault("id", uuid4().hex)
        candidate["status"] = STATUS_OPEN
        candidate.setdefault("created_at", now)
        candidate.setdefault("updated_at", now)
        if self._transactional():
            async with self._writer.client.transaction() as bound:  # type: ignore[attr-defined]
                writer = self._writer.with_client(bound)
                row = await writer.insert("maintenance_requests", candidate)
                await writer.insert(
                    "maintenance_status_history",
                    history_entry(row["id"], None, STATUS_OPEN, actor, now, REQUEST_CREATED_NOTE),
                )
            return row
        row = await self._writer.insert("maintenance_requests", candidate)
        await self._append_history(row, None, STATUS_OPEN, actor, now, REQUEST_CREATED_NOTE)
        return row

    async def transition(
        self,
        request_id: str,
        new_status: str,
        actor: Actor,
        note: str | None = None,
        *,
        extra_fields: Mapping[str, Any] | None = None,
    ) -> Row:
        current_row = await self._writer.client.get("maintenance_requests", request_id)
        if current_row is None:
            raise MaintenanceRequestNotFoundError(request_id)
        if new_status not in MAINTENANCE_STATUSES:
            raise InvalidStatusError(f"Unknown maintenance status: {new_status}")
        current_status = current_row.get("status")
        self._policy.check(current_status, new_status)
        note = note or default_transition_note(current_status, new_status)

        now = self._clock()
        updates: dict[str, Any] = dict(extra_fields or {})
        updates["status"] = new_status
        updates["updated_at"] = now
        if new_status == STATUS_RESOLVED:
            updates["resolved_at"] = now
        changed = current_status != new_status

        if self._transactional():
            async with self._writer.client.transaction() as bound:  # type: ignore[attr-defined]
                writer = self._writer.with_client(bound)
                row = await writer.update("maintenance_requests", request_id, updates)
                if changed:
                    await writer.insert(
                        "maintenance_status_history",
                        history_entry(request_id, current_status, new_status, actor, now, note),
                    )
            logger.info(
                "maintenance_status_transitioned request_id=%s from=%s to=%s atomic=true",
                request_id,
                current_status,
                new_status,
            )
            return row

        row = await self._writer.update("maintenance_requests", request_id, updates)
        if changed:
            await self._append_history(row, current_status, new_status, actor, now, note)
        logger.info(
            "maintenance_status_transitioned request_id=%s from=%s to=%s atomic=false",
            request_id,
            current_status,
            new_status,
        )
        return row

    async def _append_history(
        self,
        row: Row,
        from_status: str | None,
        to_status: str,
        actor: Actor,
        now: Any,
        note: str | None,
    ) -> None:
        # The status write already landed; a failure here is surfaced, never reconciled.
        try:
            await self._writer.insert(
                "maintenance_status_history",
                history_entry(row["id"], from_status, to_status, actor, now, note),
            )
        except DataClientError as exc:
            logger.error(
                "maintenance_history_append_failed request_id=%s from=%s to=%s error=%s",
                row.get("id"),
                from_status,
                to_status,
                exc,
            )
            raise AuditTrailWriteError(str(exc), request=row) from exc
