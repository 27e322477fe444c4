from __future__ import annotations

from datetime import date

import pytest
from httpx import ASGITransport, AsyncClient

from propdesk.apps.api.deps import get_data_client, get_storage
from propdesk.apps.api.main import create_app
from propdesk.core.config import get_settings
from propdesk.tests.utils.builders import lease_row, maintenance_row, make_client, tenant_row
from propdesk.tests.utils.fakes import FakeDataClient, FakeStorageClient


TEAM_HEADERS = {"X-Actor-Id": "team_1", "X-Actor-Type": "team"}


def _apply_env(monkeypatch, **overrides: str) -> None:
    # Apply environment overrides and reset cached settings.
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()


def _client_for(data: FakeDataClient, storage: FakeStorageClient | None = None) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_data_client] = lambda: data
    app.dependency_overrides[get_storage] = lambda: storage or FakeStorageClient()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_envelope() -> None:
    async with _client_for(make_client()) as http:
        response = await http.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"]["status"] == "ok"
    assert payload["meta"]["api_version"] == "v1"
    assert payload["meta"]["request_id"] == "req-123"
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_missing_lease_is_not_found_envelope() -> None:
    async with _client_for(make_client()) as http:
        response = await http.get("/v1/leases/nope")
    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "NOT_FOUND"
    assert error["details"] == {"entity": "Lease", "id": "nope"}


@pytest.mark.asyncio
async def test_datastore_failure_maps_to_bad_gateway() -> None:
    data = make_client()
    data.fail("*", "leases", "connection refused")
    async with _client_for(data) as http:
        response = await http.get("/v1/leases/l1")
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "DATASTORE_ERROR"
    assert response.json()["error"]["details"] == {"relation": "leases"}


@pytest.mark.asyncio
async def test_create_lease_and_reject_tenantless_lease() -> None:
    data = make_client()
    data.seed("tenants", tenant_row("t1", "Ada", "Lovelace"))
    body = {"start_date": "2026-01-01", "end_date": "2026-12-31", "rent_amount": 1200, "tenant_ids": ["t1"]}
    async with _client_for(data) as http:
        created = await http.post("/v1/leases", json=body)
        rejected = await http.post("/v1/leases", json={**body, "tenant_ids": []})
    assert created.status_code == 201
    lease = created.json()["data"]
    assert lease["primary_tenant"]["id"] == "t1"
    assert rejected.status_code == 422
    assert rejected.json()["error"]["code"] == "LEASE_VALIDATION_ERROR"
    assert len(data.rows("leases")) == 1


@pytest.mark.asyncio
async def test_request_body_validation_envelope() -> None:
    async with _client_for(make_client()) as http:
        response = await http.post("/v1/maintenance/requests", json={"title": "", "priority": "whenever"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_maintenance_flow_records_history() -> None:
    data = make_client()
    async with _client_for(data) as http:
        created = await http.post(
            "/v1/maintenance/requests",
            json={"title": "No hot water", "type": "plumbing", "priority": "high"},
            headers={"X-Actor-Id": "t1", "X-Actor-Type": "tenant"},
        )
        request_id = created.json()["data"]["id"]
        moved = await http.post(
            f"/v1/maintenance/requests/{request_id}/transition",
            json={"status": "in_progress", "note": "Plumber booked"},
            headers=TEAM_HEADERS,
        )
        history = await http.get(f"/v1/maintenance/requests/{request_id}/history")
    assert created.status_code == 201
    assert created.json()["data"]["status"] == "open"
    assert moved.status_code == 200
    assert moved.json()["data"]["status"] == "in_progress"
    entries = history.json()["data"]
    assert [(entry["from_status"], entry["to_status"]) for entry in entries] == [
        (None, "open"),
        ("open", "in_progress"),
    ]
    assert entries[-1]["changed_by_type"] == "team"


@pytest.mark.asyncio
async def test_strict_policy_rejects_illegal_transition(monkeypatch) -> None:
    _apply_env(monkeypatch, MAINTENANCE_TRANSITION_POLICY="strict")
    data = make_client()
    data.seed("maintenance_requests", maintenance_row("mr1", status="resolved"))
    async with _client_for(data) as http:
        response = await http.post(
            "/v1/maintenance/requests/mr1/transition", json={"status": "open"}, headers=TEAM_HEADERS
        )
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "TRANSITION_NOT_ALLOWED"
    assert error["details"] == {"from_status": "resolved", "to_status": "open"}
    assert data.rows("maintenance_requests")[0]["status"] == "resolved"


@pytest.mark.asyncio
async def test_unknown_status_and_actor_type_rejected() -> None:
    data = make_client()
    data.seed("maintenance_requests", maintenance_row("mr1"))
    async with _client_for(data) as http:
        bad_status = await http.post(
            "/v1/maintenance/requests/mr1/transition", json={"status": "paused"}, headers=TEAM_HEADERS
        )
        bad_actor = await http.post(
            "/v1/maintenance/requests/mr1/transition",
            json={"status": "assigned"},
            headers={"X-Actor-Id": "x", "X-Actor-Type": "robot"},
        )
    assert bad_status.status_code == 422
    assert bad_status.json()["error"]["code"] == "INVALID_STATUS"
    assert bad_actor.status_code == 422
    assert bad_actor.json()["error"]["code"] == "INVALID_ACTOR_TYPE"


@pytest.mark.asyncio
async def test_audit_trail_failure_reports_written_status() -> None:
    data = make_client()
    data.seed("maintenance_requests", maintenance_row("mr1"))
    data.fail("insert", "maintenance_status_history", "history unavailable")
    async with _client_for(data) as http:
        response = await http.post(
            "/v1/maintenance/requests/mr1/transition", json={"status": "assigned"}, headers=TEAM_HEADERS
        )
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "AUDIT_TRAIL_WRITE_FAILED"
    assert error["details"] == {"request_id": "mr1", "status_written": True}


@pytest.mark.asyncio
async def test_maintenance_attachment_upload() -> None:
    data = make_client()
    data.seed("maintenance_requests", maintenance_row("mr1"))
    storage = FakeStorageClient()
    async with _client_for(data, storage) as http:
        response = await http.post(
            "/v1/maintenance/requests/mr1/attachments",
            files={"file": ("leak.png", b"\x89PNG", "image/png")},
            headers=TEAM_HEADERS,
        )
    assert response.status_code == 201
    attachment = response.json()["data"]
    assert attachment["file_size"] == 4
    assert attachment["file_type"] == "image/png"
    assert len(storage.objects) == 1


@pytest.mark.asyncio
async def test_dashboard_reports_failed_sections() -> None:
    data = make_client()
    data.seed("leases", lease_row("l1"))
    data.fail("select", "notifications", "relation notifications does not exist")
    async with _client_for(data) as http:
        response = await http.get("/v1/dashboard", params={"today": "2026-06-01"}, headers=TEAM_HEADERS)
    assert response.status_code == 200
    snapshot = response.json()["data"]
    assert snapshot["today"] == date(2026, 6, 1).isoformat()
    assert snapshot["leases"]["active"] == 1
    assert snapshot["occupancy_rate"] == 100
    assert snapshot["failed_sections"] == ["notifications"]


@pytest.mark.asyncio
async def test_patch_nulls_clear_optional_fields_and_transition_gets_default_note() -> None:
    data = make_client()
    data.seed(
        "maintenance_requests",
        maintenance_row("mr1", title="Broken lock", assigned_to_id="team_1", assigned_to_type="internal"),
    )
    async with _client_for(data) as http:
        patched = await http.patch(
            "/v1/maintenance/requests/mr1",
            json={"assigned_to_id": None, "estimated_cost": None, "title": None},
            headers=TEAM_HEADERS,
        )
        moved = await http.post(
            "/v1/maintenance/requests/mr1/transition", json={"status": "in_progress"}, headers=TEAM_HEADERS
        )
        history = await http.get("/v1/maintenance/requests/mr1/history")
    assert patched.status_code == 200
    stored = data.rows("maintenance_requests")[0]
    assert (stored["assigned_to_id"], stored["assigned_to_type"]) == (None, None)
    assert stored["title"] == "Broken lock"
    assert moved.status_code == 200
    assert history.json()["data"][-1]["notes"] == "Status changed from open to in_progress"


@pytest.mark.asyncio
async def test_collection_meta_carries_count() -> None:
    data = make_client()
    data.seed("maintenance_requests", maintenance_row("mr1"), maintenance_row("mr2"))
    async with _client_for(data) as http:
        listed = await http.get("/v1/maintenance/requests")
        single = await http.get("/v1/maintenance/requests/mr1")
    assert listed.json()["meta"]["count"] == 2
    assert len(listed.json()["data"]) == 2
    assert single.json()["meta"].get("count") is None
