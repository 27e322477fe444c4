from __future__ import annotations

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import Column, MetaData, String, Table, Uuid, text

from propdesk.core.errors import DataClientError
from propdesk.domain.models import Base
from propdesk.domain.views import UnitSummary
from propdesk.persistence.client import Embed, SqlDataClient, eq, gte, in_, neq
from propdesk.persistence.db import build_engine
from propdesk.persistence.repos.leases import load_lease_with_relations
from propdesk.services.adaptive_writer import LEASE_FALLBACK_CHAINS, AdaptiveWriter
from propdesk.services.lifecycle import Actor, LifecycleEngine, PermissiveTransitionPolicy
from propdesk.services.schema_probe import SchemaProbe
from propdesk.tests.utils.builders import fixed_clock


TEAM = Actor(id="team_1", type="team")
# Reflected tables carry no client-side defaults, so NOT NULL columns are spelled out.
REQUEST_ROW = {"id": "mr1", "title": "Leak", "description": "", "status": "open", "priority": "high", "type": "plumbing"}


@pytest.fixture
async def engine(tmp_path):
    # File-backed sqlite so every connection sees the same database.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'propdesk.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
async def sql_client(engine) -> SqlDataClient:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return SqlDataClient(engine)


@pytest.mark.asyncio
async def test_select_filters_order_and_limit(sql_client) -> None:
    await sql_client.insert("properties", {"id": "p1", "name": "Harbor View"})
    for index, name in enumerate(["A", "B", "C"]):
        await sql_client.insert("units", {"id": f"u{index}", "name": name, "property_id": "p1"})

    rows = await sql_client.select("units", filters=[in_("id", ["u0", "u2"])], order_by="name", descending=True)
    assert [row["name"] for row in rows] == ["C", "A"]
    rows = await sql_client.select("units", filters=[neq("name", "B")], order_by="name", limit=1)
    assert [row["id"] for row in rows] == ["u0"]
    assert await sql_client.get("units", "missing") is None
    assert (await sql_client.sample("units", 2))[0].keys() >= {"id", "name", "property_id"}


@pytest.mark.asyncio
async def test_numeric_columns_surface_as_floats(sql_client) -> None:
    await sql_client.insert("transactions", {"id": "x1", "type": "income", "amount": 1250.5})
    rows = await sql_client.select("transactions", filters=[gte("amount", 1000)])
    assert rows[0]["amount"] == 1250.5
    assert isinstance(rows[0]["amount"], float)



class _DeclaredTableClient(SqlDataClient):
    # SQLite reflects a Uuid column as CHAR; serve the declared table so the driver returns UUIDs.
    def __init__(self, engine, table: Table) -> None:
        super().__init__(engine)
        self._declared = table

    async def _table(self, conn, relation: str) -> Table:
        return self._declared


@pytest.mark.asyncio
async def test_uuid_keys_surface_as_strings(engine) -> None:
    metadata = MetaData()
    units = Table(
        "uuid_units",
        metadata,
        Column("id", Uuid, primary_key=True),
        Column("name", String),
        Column("property_id", Uuid, nullable=True),
    )
    unit_id, property_id = uuid4(), uuid4()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(units.insert().values(id=unit_id, name="Unit 4B", property_id=property_id))

    rows = await _DeclaredTableClient(engine, units).select("uuid_units")
    assert rows == [{"id": str(unit_id), "name": "Unit 4B", "property_id": str(property_id)}]
    assert UnitSummary.model_validate(rows[0]).id == str(unit_id)

@pytest.mark.asyncio
async def test_unknown_columns_and_relations_raise_client_errors(sql_client) -> None:
    with pytest.raises(DataClientError) as excinfo:
        await sql_client.select("units", filters=[eq("colour", "red")])
    assert excinfo.value.relation == "units"
    with pytest.raises(DataClientError):
        await sql_client.insert("units", {"id": "u9", "name": "X", "property_id": "p1", "colour": "red"})
    with pytest.raises(DataClientError):
        await sql_client.select("no_such_table")
    with pytest.raises(DataClientError):
        await sql_client.update("units", "missing", {"name": "Y"})


@pytest.mark.asyncio
async def test_select_embedded_nests_children(sql_client) -> None:
    await sql_client.insert("properties", {"id": "p1", "name": "Harbor View"})
    await sql_client.insert("units", {"id": "u1", "name": "4B", "property_id": "p1"})
    rows = await sql_client.select_embedded(
        "units",
        [Embed(name="property", relation="properties", local_column="property_id", remote_column="id")],
    )
    assert rows[0]["property"]["name"] == "Harbor View"


@pytest.mark.asyncio
async def test_adaptive_write_against_drifted_leases_table(engine) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE leases (id TEXT PRIMARY KEY, unit_id TEXT, start_date DATE, end_date DATE, "
                "rent_amount NUMERIC, security_deposit NUMERIC, created_at DATETIME)"
            )
        )
        await conn.execute(
            text("INSERT INTO leases (id, start_date, end_date) VALUES ('old', '2025-01-01', '2025-12-31')")
        )
    client = SqlDataClient(engine)
    writer = AdaptiveWriter(client, SchemaProbe(client, cache_ttl_s=0))
    await writer.insert(
        "leases",
        {
            "id": "l1",
            "start_date": date(2026, 1, 1),
            "end_date": date(2026, 12, 31),
            "deposit_amount": 900.0,
            "notes": "not stored here",
            "is_draft": False,
        },
        fallback_chains=LEASE_FALLBACK_CHAINS,
    )
    row = await client.get("leases", "l1")
    assert row is not None and row["security_deposit"] == 900.0

    # Relations this deployment lacks are isolated; the lease still loads.
    view = await load_lease_with_relations(client, "l1", clock=fixed_clock)
    assert view is not None
    assert view.deposit_amount == 900.0
    assert view.status == "active"
    assert view.tenants == []


@pytest.mark.asyncio
async def test_atomic_transition_rolls_back_when_history_missing(engine, sql_client) -> None:
    await sql_client.insert("maintenance_requests", REQUEST_ROW)
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE maintenance_status_history"))
    writer = AdaptiveWriter(sql_client, SchemaProbe(sql_client, cache_ttl_s=0))
    lifecycle = LifecycleEngine(writer, policy=PermissiveTransitionPolicy(), clock=fixed_clock, atomic=True)
    with pytest.raises(DataClientError):
        await lifecycle.transition("mr1", "assigned", TEAM)
    row = await sql_client.get("maintenance_requests", "mr1")
    assert row is not None and row["status"] == "open"


@pytest.mark.asyncio
async def test_atomic_transition_commits_status_with_history(sql_client) -> None:
    await sql_client.insert("maintenance_requests", REQUEST_ROW)
    writer = AdaptiveWriter(sql_client, SchemaProbe(sql_client, cache_ttl_s=0))
    lifecycle = LifecycleEngine(writer, policy=PermissiveTransitionPolicy(), clock=fixed_clock, atomic=True)
    await lifecycle.transition("mr1", "resolved", TEAM, "Fixed")
    row = await sql_client.get("maintenance_requests", "mr1")
    history = await sql_client.select("maintenance_status_history", filters=[eq("request_id", "mr1")])
    assert row is not None and row["status"] == "resolved"
    assert row["resolved_at"] is not None
    assert [(entry["from_status"], entry["to_status"], entry["notes"]) for entry in history] == [
        ("open", "resolved", "Fixed")
    ]
