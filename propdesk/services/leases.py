from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence
from uuid import uuid4

from propdesk.core.clock import Clock, utc_now
from propdesk.core.config import get_settings
from propdesk.core.errors import (
    DataClientError,
    EntityNotFoundError,
    LeaseNotFoundError,
    LeaseValidationError,
    StorageError,
)
from propdesk.domain.views import LeaseAttachmentView, LeaseView
from propdesk.persistence.client import DataClient, eq
from propdesk.persistence.repos.leases import LeaseRepository
from propdesk.services.adaptive_writer import LEASE_FALLBACK_CHAINS, AdaptiveWriter
from propdesk.services.notifier import Notifier, track_mutation
from propdesk.services.schema_probe import SchemaProbe
from propdesk.services.storage import StorageClient, build_object_path, object_path_from_url


logger = logging.getLogger(__name__)

# Lease fields a caller may set directly; anything else is ignored.
LEASE_WRITABLE_FIELDS = (
    "unit_id",
    "start_date",
    "end_date",
    "rent_amount",
    "deposit_amount",
    "notes",
    "is_draft",
    "status",
)


def _lease_candidate(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {name: fields[name] for name in LEASE_WRITABLE_FIELDS if name in fields}


class LeaseService:
    def __init__(
        self,
        client: DataClient,
        *,
        storage: StorageClient | None = None,
        notifier: Notifier | None = None,
        probe: SchemaProbe | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self._writer = AdaptiveWriter(client, probe)
        self._repo = LeaseRepository(client, clock=clock)
        self._storage = storage
        self._notifier = notifier
        self._clock = clock

    @property
    def repository(self) -> LeaseRepository:
        return self._repo

    async def get_lease(self, lease_id: str) -> LeaseView:
        view = await self._repo.load_with_relations(lease_id)
        if view is None:
            raise LeaseNotFoundError(lease_id)
        return view

    async def list_leases(self) -> list[LeaseView]:
        return await self._repo.load_all()

    async def create_lease(self, fields: Mapping[str, Any], tenant_ids: Sequence[str] = ()) -> LeaseView:
        """Insert a lease and link its tenants; the first listed tenant is primary.

        Finalized leases need at least one tenant. Drafts may be saved without any.
        """
        is_draft = bool(fields.get("is_draft") or False)
        success = "Draft lease saved successfully" if is_draft else "Lease created successfully"
        with track_mutation(self._notifier, success, "Failed to create lease"):
            if not is_draft and not tenant_ids:
                raise LeaseValidationError("No tenants selected for the lease")
            now = self._clock()
            candidate = _lease_candidate(fields)
            candidate["id"] = str(fields.get("id") or uuid4().hex)
            candidate["is_draft"] = is_draft
            candidate["created_at"] = now
            candidate["updated_at"] = now
            row = await self._writer.insert("leases", candidate, fallback_chains=LEASE_FALLBACK_CHAINS)
            lease_id = str(row["id"])
            for position, tenant_id in enumerate(tenant_ids):
                try:
                    await self._writer.insert(
                        "lease_tenants",
                        {
                            "id": uuid4().hex,
                            "lease_id": lease_id,
                            "tenant_id": tenant_id,
                            "is_primary": position == 0,
                            "created_at": now,
                        },
                    )
                except DataClientError as exc:
                    logger.error(
                        "lease_tenant_link_failed lease_id=%s tenant_id=%s error=%s", lease_id, tenant_id, exc
                    )
                    raise DataClientError(f"Failed to add tenant: {exc}", relation="lease_tenants") from exc
            logger.info("lease_created lease_id=%s tenants=%s draft=%s", lease_id, len(tenant_ids), is_draft)
            return await self.get_lease(lease_id)

    async def update_lease(self, lease_id: str, fields: Mapping[str, Any]) -> LeaseView:
        if fields.get("is_draft") is False:
            success = "Lease finalized and activated successfully"
        elif fields.get("is_draft") is True:
            success = "Lease saved as draft"
        else:
            success = "Lease updated successfully"
        with track_mutation(self._notifier, success, "Failed to update lease"):
            current = await self._repo.get_row(lease_id)
            if current is None:
                raise LeaseNotFoundError(lease_id)
            if fields.get("is_draft") is False:
                # Finalizing keeps the same tenant requirement as creating.
                links = await self._client.select("lease_tenants", filters=[eq("lease_id", lease_id)])
                if not links:
                    raise LeaseValidationError("No tenants selected for the lease")
            candidate = _lease_candidate(fields)
            if candidate:
                candidate["updated_at"] = self._clock()
            await self._writer.update("leases", lease_id, candidate, fallback_chains=LEASE_FALLBACK_CHAINS)
            return await self.get_lease(lease_id)

    async def delete_lease(self, lease_id: str) -> None:
        with track_mutation(self._notifier, "Lease deleted successfully", "Failed to delete lease"):
            # Join rows and attachment rows cascade in the datastore.
            await self._client.delete("leases", lease_id)
            logger.info("lease_deleted lease_id=%s", lease_id)

    def _require_storage(self) -> StorageClient:
        if self._storage is None:
            raise StorageError("Blob storage is not configured")
        return self._storage

    async def upload_attachment(
        self,
        lease_id: str,
        *,
        filename: str,
        data: bytes,
        content_type: str | None = None,
        name: str | None = None,
    ) -> LeaseAttachmentView:
        with track_mutation(self._notifier, "Attachment uploaded successfully", "Failed to upload attachment"):
            storage = self._require_storage()
            if await self._repo.get_row(lease_id) is None:
                raise LeaseNotFoundError(lease_id)
            now = self._clock()
            bucket = get_settings().lease_files_bucket
            object_path = build_object_path(lease_id, name or filename, int(now.timestamp() * 1000))
            file_url = await storage.upload(bucket, object_path, data, content_type)
            row = await self._writer.insert(
                "lease_attachments",
                {
                    "id": uuid4().hex,
                    "lease_id": lease_id,
                    "name": name or filename,
                    "file_url": file_url,
                    "file_type": content_type,
                    "created_at": now,
                },
            )
            return LeaseAttachmentView.model_validate(row)

    async def delete_attachment(self, lease_id: str, attachment_id: str) -> None:
        with track_mutation(self._notifier, "Attachment deleted successfully", "Failed to delete attachment"):
            storage = self._require_storage()
            row = await self._client.get("lease_attachments", attachment_id)
            if row is None or str(row.get("lease_id")) != lease_id:
                raise EntityNotFoundError("Lease attachment", attachment_id)
            object_path = object_path_from_url(str(row.get("file_url") or ""), get_settings().lease_files_bucket)
            # Blob first, then the record; a failed removal leaves both in place.
            if object_path:
                await storage.remove(get_settings().lease_files_bucket, [object_path])
            await self._client.delete("lease_attachments", attachment_id)
