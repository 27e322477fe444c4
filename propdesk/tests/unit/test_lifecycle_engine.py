from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from propdesk.core.errors import (
    AuditTrailWriteError,
    InvalidStatusError,
    MaintenanceRequestNotFoundError,
    TransitionNotAllowedError,
)
from propdesk.services.adaptive_writer import AdaptiveWriter
from propdesk.services.lifecycle import (
    Actor,
    LifecycleEngine,
    PermissiveTransitionPolicy,
    TableTransitionPolicy,
    policy_from_settings,
)
from propdesk.services.schema_probe import SchemaProbe
from propdesk.tests.utils.builders import FIXED_NOW, make_client, maintenance_row


TENANT = Actor(id="t1", type="tenant")
TEAM = Actor(id="team_1", type="team")


class StepClock:
    # Each call advances one second so history timestamps are strictly ordered.
    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


def _engine(client, **kwargs) -> LifecycleEngine:
    writer = AdaptiveWriter(client, SchemaProbe(client, cache_ttl_s=0))
    kwargs.setdefault("policy", PermissiveTransitionPolicy())
    kwargs.setdefault("clock", StepClock())
    kwargs.setdefault("atomic", False)
    return LifecycleEngine(writer, **kwargs)


def _history(client, request_id: str) -> list[dict]:
    rows = [row for row in client.rows("maintenance_status_history") if row["request_id"] == request_id]
    return sorted(rows, key=lambda row: row["created_at"])


@pytest.mark.asyncio
async def test_create_request_starts_open_with_initial_history() -> None:
    client = make_client()
    engine = _engine(client)
    row = await engine.create_request({"title": "Broken window", "status": "resolved"}, TENANT)
    assert row["status"] == "open"
    history = _history(client, row["id"])
    assert len(history) == 1
    assert history[0]["from_status"] is None
    assert history[0]["to_status"] == "open"
    assert history[0]["notes"] == "Request created"
    assert (history[0]["changed_by_id"], history[0]["changed_by_type"]) == ("t1", "tenant")


@pytest.mark.asyncio
async def test_transition_sequence_keeps_history_consistent() -> None:
    client = make_client()
    engine = _engine(client)
    created = await engine.create_request({"title": "No heat"}, TENANT)
    request_id = created["id"]
    await engine.transition(request_id, "assigned", TEAM)
    await engine.transition(request_id, "in_progress", TEAM, "On site")
    resolved = await engine.transition(request_id, "resolved", TEAM)

    history = _history(client, request_id)
    assert [(h["from_status"], h["to_status"]) for h in history] == [
        (None, "open"),
        ("open", "assigned"),
        ("assigned", "in_progress"),
        ("in_progress", "resolved"),
    ]
    assert history[-1]["to_status"] == resolved["status"] == "resolved"
    assert resolved["resolved_at"] is not None
    assert history[2]["notes"] == "On site"


@pytest.mark.asyncio
async def test_resolved_at_only_set_on_resolution() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    row = await _engine(client).transition("mr1", "in_progress", TEAM)
    assert row["resolved_at"] is None


@pytest.mark.asyncio
async def test_noop_transition_writes_row_but_no_history() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    clock = StepClock()
    row = await _engine(client, clock=clock).transition("mr1", "open", TEAM)
    assert row["updated_at"] == clock.current
    assert _history(client, "mr1") == []


@pytest.mark.asyncio
async def test_transition_validation_errors() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    engine = _engine(client)
    with pytest.raises(MaintenanceRequestNotFoundError):
        await engine.transition("missing", "assigned", TEAM)
    with pytest.raises(InvalidStatusError):
        await engine.transition("mr1", "on_hold", TEAM)
    assert client.writes("update", "maintenance_requests") == []


@pytest.mark.asyncio
async def test_strict_policy_rejects_before_any_write() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="resolved"))
    engine = _engine(client, policy=TableTransitionPolicy())
    with pytest.raises(TransitionNotAllowedError) as excinfo:
        await engine.transition("mr1", "open", TEAM)
    assert (excinfo.value.from_status, excinfo.value.to_status) == ("resolved", "open")
    assert client.writes("update", "maintenance_requests") == []
    assert client.writes("insert", "maintenance_status_history") == []
    row = await engine.transition("mr1", "in_progress", TEAM)
    assert row["status"] == "in_progress"


@pytest.mark.asyncio
async def test_history_failure_surfaces_audit_error_without_rollback(caplog) -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    client.fail("insert", "maintenance_status_history", "history insert failed")
    engine = _engine(client)
    with caplog.at_level("ERROR"):
        with pytest.raises(AuditTrailWriteError) as excinfo:
            await engine.transition("mr1", "assigned", TEAM)
    assert excinfo.value.request is not None
    assert excinfo.value.request["status"] == "assigned"
    # Status write stands; the divergence is reported, never reconciled.
    assert client.rows("maintenance_requests")[0]["status"] == "assigned"
    assert "maintenance_history_append_failed" in caplog.text


@pytest.mark.asyncio
async def test_atomic_transition_rolls_back_status_on_history_failure() -> None:
    client = make_client(transactional=True)
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    client.fail("insert", "maintenance_status_history", "history insert failed")
    engine = _engine(client, atomic=True)
    with pytest.raises(Exception) as excinfo:
        await engine.transition("mr1", "assigned", TEAM)
    assert not isinstance(excinfo.value, AuditTrailWriteError)
    assert client.rows("maintenance_requests")[0]["status"] == "open"


@pytest.mark.asyncio
async def test_atomic_path_writes_status_and_history_together() -> None:
    client = make_client(transactional=True)
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    engine = _engine(client, atomic=True)
    await engine.transition("mr1", "assigned", TEAM)
    assert client.rows("maintenance_requests")[0]["status"] == "assigned"
    assert [h["to_status"] for h in _history(client, "mr1")] == ["assigned"]


def test_policy_selected_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_TRANSITION_POLICY", "strict")
    assert isinstance(policy_from_settings(), TableTransitionPolicy)
    monkeypatch.setenv("MAINTENANCE_TRANSITION_POLICY", "permissive")
    from propdesk.core.config import get_settings

    get_settings.cache_clear()
    assert isinstance(policy_from_settings(), PermissiveTransitionPolicy)


def test_table_policy_allows_same_state() -> None:
    TableTransitionPolicy().check("open", "open")
    with pytest.raises(TransitionNotAllowedError):
        TableTransitionPolicy().check(None, "resolved")


@pytest.mark.asyncio
async def test_open_to_resolved_sets_resolved_at_and_appends_entry() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    clock = StepClock()
    row = await _engine(client, clock=clock).transition("mr1", "resolved", TEAM, "Replaced washer")
    assert row["resolved_at"] == clock.current
    history = _history(client, "mr1")
    assert [(h["from_status"], h["to_status"], h["notes"]) for h in history] == [
        ("open", "resolved", "Replaced washer")
    ]
    assert history[-1]["to_status"] == client.rows("maintenance_requests")[0]["status"]
