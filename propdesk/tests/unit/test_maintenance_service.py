from __future__ import annotations

import pytest

from propdesk.core.errors import DataClientError, MaintenanceRequestNotFoundError, StorageError
from propdesk.persistence.repos.maintenance import MaintenanceFilters
from propdesk.services.lifecycle import Actor, PermissiveTransitionPolicy
from propdesk.services.maintenance import MaintenanceService, infer_assignee_type
from propdesk.services.notifier import MutationOutcome, RecordingNotifier
from propdesk.services.schema_probe import SchemaProbe
from propdesk.tests.utils.builders import FIXED_NOW, fixed_clock, maintenance_row, make_client
from propdesk.tests.utils.fakes import FakeStorageClient


TENANT = Actor(id="t1", type="tenant")
TEAM = Actor(id="team_1", type="team")


def _service(client, storage=None) -> tuple[MaintenanceService, RecordingNotifier]:
    notifier = RecordingNotifier()
    service = MaintenanceService(
        client,
        storage=storage,
        notifier=notifier,
        probe=SchemaProbe(client, cache_ttl_s=0),
        policy=PermissiveTransitionPolicy(),
        clock=fixed_clock,
        atomic=False,
    )
    return service, notifier


def test_assignee_type_inferred_from_id_prefix() -> None:
    assert infer_assignee_type("team_42") == "internal"
    assert infer_assignee_type("ec_9") == "external"
    assert infer_assignee_type(None) is None


@pytest.mark.asyncio
async def test_create_request_records_initial_history() -> None:
    client = make_client()
    service, notifier = _service(client)
    view = await service.create_request(
        {"title": "Leaking tap", "priority": "high", "type": "plumbing", "assigned_to_id": "team_1"}, TENANT
    )
    assert view.status == "open"
    stored = client.rows("maintenance_requests")[0]
    assert stored["assigned_to_type"] == "internal"
    assert stored["description"] == ""
    history = await service.history(view.id)
    assert [(entry.from_status, entry.to_status) for entry in history] == [(None, "open")]
    assert notifier.outcomes == [MutationOutcome.success("Maintenance request has been created successfully.")]


@pytest.mark.asyncio
async def test_update_routes_status_change_through_history() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    service, _ = _service(client)
    view = await service.update_request("mr1", {"status": "in_progress", "priority": "urgent"}, TEAM)
    assert view.status == "in_progress"
    assert view.priority == "urgent"
    history = await service.history("mr1")
    assert history[-1].notes == "Status changed from open to in_progress"
    assert (history[-1].changed_by_id, history[-1].changed_by_type) == ("team_1", "team")


@pytest.mark.asyncio
async def test_update_without_status_writes_no_history() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    service, _ = _service(client)
    view = await service.update_request("mr1", {"estimated_cost": 250.0}, TEAM)
    assert view.estimated_cost == 250.0
    assert client.rows("maintenance_status_history") == []


@pytest.mark.asyncio
async def test_update_with_null_assignee_unassigns() -> None:
    client = make_client()
    client.seed(
        "maintenance_requests",
        maintenance_row("mr1", assigned_to_id="team_1", assigned_to_type="internal", due_date=FIXED_NOW.date()),
    )
    service, _ = _service(client)
    view = await service.update_request("mr1", {"assigned_to_id": None, "due_date": None}, TEAM)
    stored = client.rows("maintenance_requests")[0]
    assert (stored["assigned_to_id"], stored["assigned_to_type"]) == (None, None)
    assert stored["due_date"] is None
    assert view.assigned_to_id is None


@pytest.mark.asyncio
async def test_transition_without_note_records_default_note() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", status="open"))
    service, _ = _service(client)
    await service.transition("mr1", "assigned", TEAM)
    history = await service.history("mr1")
    assert history[-1].notes == "Status changed from open to assigned"


@pytest.mark.asyncio
async def test_missing_request_reports_not_found() -> None:
    service, notifier = _service(make_client())
    with pytest.raises(MaintenanceRequestNotFoundError):
        await service.transition("nope", "resolved", TEAM)
    assert notifier.outcomes[-1].kind == "error"
    with pytest.raises(MaintenanceRequestNotFoundError):
        await service.cost("nope")


@pytest.mark.asyncio
async def test_cost_status_reflects_estimate_and_actual() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", estimated_cost=200.0, actual_cost=150.0))
    service, _ = _service(client)
    cost = await service.cost("mr1")
    assert cost.status == "on_budget"
    assert cost.variance == -50.0


@pytest.mark.asyncio
async def test_comments_newest_first() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    client.seed(
        "maintenance_comments",
        {"id": "c0", "request_id": "mr1", "user_id": "t1", "user_type": "tenant", "content": "first",
         "is_internal": False, "created_at": FIXED_NOW.replace(hour=8)},
    )
    service, _ = _service(client)
    comment = await service.add_comment("mr1", "On my way", TEAM, is_internal=True)
    assert comment.is_internal is True
    comments = await service.comments("mr1")
    assert [item.content for item in comments] == ["On my way", "first"]


@pytest.mark.asyncio
async def test_materials_replaced_as_whole_list() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1", materials=[{"name": "washer", "quantity": 2}]))
    service, notifier = _service(client)
    items = await service.replace_materials("mr1", [{"name": "valve", "quantity": 1, "cost": 12.5}])
    assert items == [{"name": "valve", "quantity": 1, "cost": 12.5}]
    assert await service.materials("mr1") == items
    assert await service.replace_equipment("mr1", []) == []
    assert notifier.outcomes[0].message == "Materials list has been updated successfully."


@pytest.mark.asyncio
async def test_list_requests_degrades_to_empty_on_datastore_error() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    client.fail("select", "maintenance_requests", "timeout")
    service, _ = _service(client)
    assert await service.list_requests(MaintenanceFilters(status="open")) == []


@pytest.mark.asyncio
async def test_attachment_upload_records_size_and_path() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    storage = FakeStorageClient()
    service, _ = _service(client, storage)
    attachment = await service.upload_attachment(
        "mr1", TENANT, filename="photo of leak.JPG", data=b"12345", content_type="image/jpeg"
    )
    stamp = int(FIXED_NOW.timestamp() * 1000)
    assert attachment.file_path == f"mr1/{stamp}.JPG"
    assert attachment.file_size == 5
    assert attachment.name == "photo of leak.JPG"
    assert (attachment.uploaded_by_id, attachment.uploaded_by_type) == ("t1", "tenant")
    assert ("maintenance-files", f"mr1/{stamp}.JPG") in storage.objects


@pytest.mark.asyncio
async def test_failed_attachment_record_removes_blob() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    client.fail("insert", "maintenance_attachments", "permission denied")
    storage = FakeStorageClient()
    service, _ = _service(client, storage)
    with pytest.raises(DataClientError):
        await service.upload_attachment("mr1", TENANT, filename="a.png", data=b"x")
    assert storage.objects == {}
    assert len(storage.removed) == 1


@pytest.mark.asyncio
async def test_attachment_delete_tolerates_blob_failure(caplog) -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    storage = FakeStorageClient()
    service, notifier = _service(client, storage)
    attachment = await service.upload_attachment("mr1", TEAM, filename="a.png", data=b"x")
    storage.fail_remove = "bucket unavailable"
    with caplog.at_level("WARNING"):
        await service.delete_attachment(attachment.id)
    assert client.rows("maintenance_attachments") == []
    assert notifier.outcomes[-1] == MutationOutcome.success("Attachment has been deleted successfully.")
    assert "maintenance_attachment_blob_remove_failed" in caplog.text


@pytest.mark.asyncio
async def test_upload_without_storage_configured() -> None:
    client = make_client()
    client.seed("maintenance_requests", maintenance_row("mr1"))
    service, _ = _service(client)
    with pytest.raises(StorageError):
        await service.upload_attachment("mr1", TEAM, filename="a.png", data=b"x")
