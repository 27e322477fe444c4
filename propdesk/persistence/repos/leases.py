from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from propdesk.core.clock import Clock, utc_now
from propdesk.core.config import DEPOSIT_COLUMN_CHAIN
from propdesk.core.errors import DataClientError
from propdesk.domain.views import (
    LeaseAttachmentView,
    LeaseView,
    PropertySummary,
    TenantSummary,
    UnitSummary,
)
from propdesk.persistence.client import DataClient, Embed, Row, eq, in_
from propdesk.services.status import derive_lease_status


logger = logging.getLogger(__name__)

T = TypeVar("T")

LEASE_EMBEDS: tuple[Embed, ...] = (
    Embed(
        name="unit",
        relation="units",
        local_column="unit_id",
        remote_column="id",
        embeds=(Embed(name="property", relation="properties", local_column="property_id", remote_column="id"),),
    ),
    Embed(
        name="lease_tenants",
        relation="lease_tenants",
        local_column="id",
        remote_column="lease_id",
        many=True,
        embeds=(Embed(name="tenant", relation="tenants", local_column="tenant_id", remote_column="id"),),
    ),
    Embed(
        name="lease_attachments",
        relation="lease_attachments",
        local_column="id",
        remote_column="lease_id",
        many=True,
    ),
)


def _deposit_value(row: Row) -> Any:
    for column in DEPOSIT_COLUMN_CHAIN:
        if row.get(column) is not None:
            return row[column]
    return None


def _summary(model: type[T], row: Any) -> T | None:
    # Related rows are best-effort; a malformed one is dropped, not fatal.
    if not isinstance(row, dict):
        return None
    try:
        return model.model_validate(row)  # type: ignore[attr-defined]
    except ValidationError as exc:
        logger.warning("relation_row_invalid model=%s error_count=%s", model.__name__, exc.error_count())
        return None


def select_primary_tenant(join_rows: list[Row]) -> Row | None:
    """Tenant of the join row flagged primary, else the first tenant in list order."""
    tenants = [join_row.get("tenant") for join_row in join_rows if join_row.get("tenant")]
    for join_row in join_rows:
        if join_row.get("is_primary") and join_row.get("tenant"):
            return join_row["tenant"]
    return tenants[0] if tenants else None


class LeaseRepository:
    def __init__(self, client: DataClient, *, clock: Clock = utc_now) -> None:
        self._client = client
        self._clock = clock

    async def _isolated(
        self,
        relation: str,
        lease_id: str,
        fetch: Callable[[], Awaitable[T]],
        default: T,
    ) -> T:
        # A missing relation leaves its field empty; it never aborts the read.
        try:
            result = await fetch()
        except DataClientError as exc:
            logger.warning(
                "lease_relation_fetch_failed relation=%s lease_id=%s error=%s", relation, lease_id, exc
            )
            return default
        return default if result is None else result

    def assemble(self, row: Row) -> LeaseView:
        """Build the composite view from a lease row carrying nested relations.

        Both the embedded bulk path and the per-lease path feed this, so the
        view shape is identical either way.
        """
        unit_row = row.get("unit") if isinstance(row.get("unit"), dict) else None
        unit: UnitSummary | None = None
        if unit_row is not None:
            unit = _summary(UnitSummary, {k: v for k, v in unit_row.items() if k != "property"})
            if unit is not None:
                unit.property = _summary(PropertySummary, unit_row.get("property"))

        join_rows = [item for item in (row.get("lease_tenants") or []) if isinstance(item, dict)]
        tenants = [
            tenant
            for tenant in (_summary(TenantSummary, item.get("tenant")) for item in join_rows)
            if tenant is not None
        ]
        primary_row = select_primary_tenant(join_rows)
        attachments = [
            attachment
            for attachment in (
                _summary(LeaseAttachmentView, item) for item in (row.get("lease_attachments") or [])
            )
            if attachment is not None
        ]
        return LeaseView(
            id=row["id"],
            unit_id=row.get("unit_id"),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            rent_amount=row.get("rent_amount"),
            deposit_amount=_deposit_value(row),
            notes=row.get("notes"),
            is_draft=bool(row.get("is_draft") or False),
            stored_status=row.get("status"),
            status=derive_lease_status(row, self._clock().date()),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            unit=unit,
            tenants=tenants,
            primary_tenant=_summary(TenantSummary, primary_row),
            attachments=attachments,
        )

    async def get_row(self, lease_id: str) -> Row | None:
        return await self._client.get("leases", lease_id)

    async def _attach_relations(self, row: Row) -> Row:
        # Sequential per-relation fetches keyed off the foreign ids on the lease.
        lease_id = str(row["id"])
        unit_row: Row | None = None
        if row.get("unit_id"):
            unit_row = await self._isolated(
                "units", lease_id, lambda: self._client.get("units", row["unit_id"]), None
            )
        if unit_row is not None and unit_row.get("property_id"):
            unit_row = dict(unit_row)
            unit_row["property"] = await self._isolated(
                "properties",
                lease_id,
                lambda: self._client.get("properties", unit_row["property_id"]),
                None,
            )
        join_rows: list[Row] = await self._isolated(
            "lease_tenants",
            lease_id,
            lambda: self._client.select("lease_tenants", filters=[eq("lease_id", lease_id)]),
            [],
        )
        tenant_ids = [join_row.get("tenant_id") for join_row in join_rows if join_row.get("tenant_id")]
        tenant_rows: list[Row] = []
        if tenant_ids:
            tenant_rows = await self._isolated(
                "tenants",
                lease_id,
                lambda: self._client.select("tenants", filters=[in_("id", tenant_ids)]),
                [],
            )
        tenants_by_id = {tenant.get("id"): tenant for tenant in tenant_rows}
        attachments: list[Row] = await self._isolated(
            "lease_attachments",
            lease_id,
            lambda: self._client.select(
                "lease_attachments",
                filters=[eq("lease_id", lease_id)],
                order_by="created_at",
                descending=True,
            ),
            [],
        )
        enriched = dict(row)
        enriched["unit"] = unit_row
        enriched["lease_tenants"] = [
            {**join_row, "tenant": tenants_by_id.get(join_row.get("tenant_id"))} for join_row in join_rows
        ]
        enriched["lease_attachments"] = attachments
        return enriched

    async def load_with_relations(self, lease_id: str) -> LeaseView | None:
        # Not-found is a None result so callers can tell it apart from a failing datastore.
        row = await self.get_row(lease_id)
        if row is None:
            return None
        return self.assemble(await self._attach_relations(row))

    async def load_all(self) -> list[LeaseView]:
        try:
            rows = await self._client.select_embedded(
                "leases", LEASE_EMBEDS, order_by="created_at", descending=True
            )
        except DataClientError as exc:
            logger.warning("lease_embedded_fetch_unavailable error=%s", exc)
            return await self._load_all_two_phase()
        return [self.assemble(row) for row in rows]

    async def _load_all_two_phase(self) -> list[LeaseView]:
        try:
            rows = await self._client.select("leases", order_by="created_at", descending=True)
        except DataClientError:
            # Drifted schemas may lack created_at; ordering is a nicety.
            rows = await self._client.select("leases")
        views: list[LeaseView] = []
        for row in rows:
            views.append(self.assemble(await self._attach_relations(row)))
        return views


async def load_lease_with_relations(client: DataClient, lease_id: str, *, clock: Clock = utc_now) -> LeaseView | None:
    return await LeaseRepository(client, clock=clock).load_with_relations(lease_id)


async def load_all_leases(client: DataClient, *, clock: Clock = utc_now) -> list[LeaseView]:
    return await LeaseRepository(client, clock=clock).load_all()
