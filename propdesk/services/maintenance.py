from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Sequence
from uuid import uuid4

from propdesk.core.clock import Clock, utc_now
from propdesk.core.config import get_settings
from propdesk.core.errors import (
    DataClientError,
    EntityNotFoundError,
    MaintenanceRequestNotFoundError,
    StorageError,
)
from propdesk.domain.views import (
    AssigneeView,
    CostStatusView,
    MaintenanceAttachmentView,
    MaintenanceCommentView,
    MaintenanceRequestView,
    MaintenanceSummary,
    StatusHistoryEntry,
)
from propdesk.persistence.client import DataClient
from propdesk.persistence.repos.maintenance import (
    ASSIGNEE_EXTERNAL,
    ASSIGNEE_INTERNAL,
    MaintenanceFilters,
    MaintenanceRepository,
    request_view,
)
from propdesk.services.adaptive_writer import AdaptiveWriter
from propdesk.services.lifecycle import Actor, LifecycleEngine, TransitionPolicy
from propdesk.services.notifier import Notifier, track_mutation
from propdesk.services.schema_probe import SchemaProbe
from propdesk.services.status import derive_maintenance_cost_status
from propdesk.services.storage import StorageClient, build_object_path


logger = logging.getLogger(__name__)

REQUEST_WRITABLE_FIELDS = (
    "title",
    "description",
    "type",
    "priority",
    "property_id",
    "unit_id",
    "requested_by_id",
    "assigned_to_id",
    "assigned_to_type",
    "estimated_cost",
    "actual_cost",
    "due_date",
    "resolution_notes",
    "tags",
    "materials",
    "equipment",
)


def infer_assignee_type(assigned_to_id: str | None) -> str | None:
    # Team member ids carry a team_ prefix; everything else is an outside party.
    if not assigned_to_id:
        return None
    return ASSIGNEE_INTERNAL if assigned_to_id.startswith("team_") else ASSIGNEE_EXTERNAL


def _request_candidate(fields: Mapping[str, Any]) -> dict[str, Any]:
    candidate = {name: fields[name] for name in REQUEST_WRITABLE_FIELDS if name in fields}
    if "assigned_to_id" in candidate and not candidate.get("assigned_to_type"):
        # An explicit null assignee unassigns, clearing the type with it.
        candidate["assigned_to_type"] = infer_assignee_type(candidate["assigned_to_id"])
    return candidate


class MaintenanceService:
    def __init__(
        self,
        client: DataClient,
        *,
        storage: StorageClient | None = None,
        notifier: Notifier | None = None,
        probe: SchemaProbe | None = None,
        policy: TransitionPolicy | None = None,
        clock: Clock = utc_now,
        atomic: bool | None = None,
    ) -> None:
        self._client = client
        self._writer = AdaptiveWriter(client, probe)
        self._repo = MaintenanceRepository(client, clock=clock)
        self._engine = LifecycleEngine(self._writer, policy=policy, clock=clock, atomic=atomic)
        self._storage = storage
        self._notifier = notifier
        self._clock = clock

    @property
    def repository(self) -> MaintenanceRepository:
        return self._repo

    @property
    def engine(self) -> LifecycleEngine:
        return self._engine

    async def _require_row(self, request_id: str) -> dict[str, Any]:
        row = await self._repo.get_row(request_id)
        if row is None:
            raise MaintenanceRequestNotFoundError(request_id)
        return row

    async def get_request(self, request_id: str) -> MaintenanceRequestView:
        view = await self._repo.load_with_relations(request_id)
        if view is None:
            raise MaintenanceRequestNotFoundError(request_id)
        return view

    async def list_requests(self, filters: MaintenanceFilters | None = None) -> list[MaintenanceRequestView]:
        # Listing is a read surface; a failing datastore yields an empty list.
        try:
            return await self._repo.list_requests(filters)
        except DataClientError as exc:
            logger.warning("maintenance_list_failed error=%s", exc)
            return []

    async def summary(self) -> MaintenanceSummary:
        return await self._repo.summary()

    async def list_assignees(self) -> list[AssigneeView]:
        return await self._repo.list_assignees()

    async def create_request(self, fields: Mapping[str, Any], actor: Actor) -> MaintenanceRequestView:
        with track_mutation(
            self._notifier, "Maintenance request has been created successfully.", "Failed to create request"
        ):
            candidate = _request_candidate(fields)
            candidate.setdefault("description", "")
            candidate.setdefault("priority", "medium")
            candidate.setdefault("type", "general")
            row = await self._engine.create_request(candidate, actor)
            logger.info("maintenance_request_created request_id=%s", row.get("id"))
            return request_view(row)

    async def update_request(
        self, request_id: str, updates: Mapping[str, Any], actor: Actor
    ) -> MaintenanceRequestView:
        """Apply a generic update; a status change is routed through the lifecycle engine."""
        with track_mutation(
            self._notifier, "Maintenance request has been updated successfully.", "Failed to update request"
        ):
            await self._require_row(request_id)
            candidate = _request_candidate(updates)
            new_status = updates.get("status")
            if new_status:
                row = await self._engine.transition(
                    request_id, str(new_status), actor, updates.get("note"), extra_fields=candidate
                )
            else:
                if candidate:
                    candidate["updated_at"] = self._clock()
                row = await self._writer.update("maintenance_requests", request_id, candidate)
            return request_view(row)

    async def transition(
        self, request_id: str, new_status: str, actor: Actor, note: str | None = None
    ) -> MaintenanceRequestView:
        with track_mutation(self._notifier, f"Status updated to {new_status}", "Failed to update status"):
            row = await self._engine.transition(request_id, new_status, actor, note)
            return request_view(row)

    async def delete_request(self, request_id: str) -> None:
        with track_mutation(
            self._notifier, "Maintenance request has been deleted successfully.", "Failed to delete request"
        ):
            await self._client.delete("maintenance_requests", request_id)
            logger.info("maintenance_request_deleted request_id=%s", request_id)

    async def history(self, request_id: str) -> list[StatusHistoryEntry]:
        await self._require_row(request_id)
        return await self._repo.history(request_id)

    async def cost(self, request_id: str) -> CostStatusView:
        row = await self._require_row(request_id)
        return CostStatusView(**vars(derive_maintenance_cost_status(row)))

    async def comments(self, request_id: str) -> list[MaintenanceCommentView]:
        await self._require_row(request_id)
        return await self._repo.comments(request_id)

    async def add_comment(
        self, request_id: str, content: str, actor: Actor, *, is_internal: bool = False
    ) -> MaintenanceCommentView:
        with track_mutation(self._notifier, "Your comment has been posted successfully.", "Failed to post comment"):
            await self._require_row(request_id)
            row = await self._writer.insert(
                "maintenance_comments",
                {
                    "id": uuid4().hex,
                    "request_id": request_id,
                    "user_id": actor.id,
                    "user_type": actor.type,
                    "content": content,
                    "is_internal": is_internal,
                    "created_at": self._clock(),
                },
            )
            return MaintenanceCommentView.model_validate(row)

    async def materials(self, request_id: str) -> list[dict[str, Any]]:
        row = await self._require_row(request_id)
        return list(row.get("materials") or [])

    async def equipment(self, request_id: str) -> list[dict[str, Any]]:
        row = await self._require_row(request_id)
        return list(row.get("equipment") or [])

    async def replace_materials(self, request_id: str, materials: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        with track_mutation(self._notifier, "Materials list has been updated successfully.", "Failed to update materials"):
            return await self._replace_json_list(request_id, "materials", materials)

    async def replace_equipment(self, request_id: str, equipment: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        with track_mutation(self._notifier, "Equipment list has been updated successfully.", "Failed to update equipment"):
            return await self._replace_json_list(request_id, "equipment", equipment)

    async def _replace_json_list(
        self, request_id: str, column: str, items: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        await self._require_row(request_id)
        # Whole-list replacement; an empty list clears the column.
        row = await self._writer.update(
            "maintenance_requests", request_id, {column: [dict(item) for item in items]}
        )
        return list(row.get(column) or [])

    async def attachments(self, request_id: str) -> list[MaintenanceAttachmentView]:
        await self._require_row(request_id)
        return await self._repo.attachments(request_id)

    def _require_storage(self) -> StorageClient:
        if self._storage is None:
            raise StorageError("Blob storage is not configured")
        return self._storage

    async def upload_attachment(
        self,
        request_id: str,
        actor: Actor,
        *,
        filename: str,
        data: bytes,
        content_type: str | None = None,
        name: str | None = None,
    ) -> MaintenanceAttachmentView:
        with track_mutation(self._notifier, "Attachment has been uploaded successfully.", "Failed to upload file"):
            storage = self._require_storage()
            await self._require_row(request_id)
            now = self._clock()
            bucket = get_settings().maintenance_files_bucket
            object_path = build_object_path(request_id, filename, int(now.timestamp() * 1000), keep_name=False)
            file_url = await storage.upload(bucket, object_path, data, content_type)
            try:
                row = await self._writer.insert(
                    "maintenance_attachments",
                    {
                        "id": uuid4().hex,
                        "request_id": request_id,
                        "name": name or Path(filename).name,
                        "file_url": file_url,
                        "file_path": object_path,
                        "file_type": content_type,
                        "file_size": len(data),
                        "uploaded_by_id": actor.id,
                        "uploaded_by_type": actor.type,
                        "created_at": now,
                    },
                )
            except DataClientError:
                # Orphaned blob cleanup; the record error is what the caller sees.
                await storage.remove(bucket, [object_path])
                raise
            return MaintenanceAttachmentView.model_validate(row)

    async def delete_attachment(self, attachment_id: str) -> None:
        with track_mutation(
            self._notifier, "Attachment has been deleted successfully.", "Failed to delete attachment"
        ):
            storage = self._require_storage()
            row = await self._client.get("maintenance_attachments", attachment_id)
            if row is None:
                raise EntityNotFoundError("Maintenance attachment", attachment_id)
            # Record first; the blob removal is best-effort once the record is gone.
            await self._client.delete("maintenance_attachments", attachment_id)
            object_path = row.get("file_path")
            if not object_path:
                return
            try:
                await storage.remove(get_settings().maintenance_files_bucket, [str(object_path)])
            except StorageError as exc:
                logger.warning(
                    "maintenance_attachment_blob_remove_failed attachment_id=%s error=%s", attachment_id, exc
                )
