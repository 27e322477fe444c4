from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
import logging
from uuid import UUID
from typing import Any, AsyncIterator, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from sqlalchemy import MetaData, Table, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from propdesk.core.errors import DataClientError


logger = logging.getLogger(__name__)

Row = dict[str, Any]

_SUPPORTED_OPS = {"eq", "neq", "gte", "lte", "in"}


@dataclass(frozen=True)
class Predicate:
    # Single column filter; ops mirror the datastore's query-by-filter surface.
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _SUPPORTED_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")


def eq(column: str, value: Any) -> Predicate:
    return Predicate(column, "eq", value)


def neq(column: str, value: Any) -> Predicate:
    return Predicate(column, "neq", value)


def gte(column: str, value: Any) -> Predicate:
    return Predicate(column, "gte", value)


def lte(column: str, value: Any) -> Predicate:
    return Predicate(column, "lte", value)


def in_(column: str, values: Iterable[Any]) -> Predicate:
    return Predicate(column, "in", tuple(values))


@dataclass(frozen=True)
class Embed:
    """Nested relation attached to each parent row under ``name``.

    ``local_column`` on the parent is matched against ``remote_column`` on the
    child relation. ``many`` embeds a list, otherwise a single row or None.
    """

    name: str
    relation: str
    local_column: str
    remote_column: str
    many: bool = False
    embeds: tuple["Embed", ...] = ()


class DataClient(Protocol):
    async def select(
        self,
        relation: str,
        *,
        filters: Sequence[Predicate] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        columns: Sequence[str] | None = None,
    ) -> list[Row]:
        ...

    async def get(self, relation: str, row_id: str) -> Row | None:
        ...

    async def insert(self, relation: str, payload: Mapping[str, Any]) -> Row:
        ...

    async def update(self, relation: str, row_id: str, payload: Mapping[str, Any]) -> Row:
        ...

    async def delete(self, relation: str, row_id: str) -> None:
        ...

    async def sample(self, relation: str, n: int = 1) -> list[Row]:
        ...

    async def select_embedded(
        self,
        relation: str,
        embeds: Sequence[Embed],
        *,
        filters: Sequence[Predicate] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        ...


@runtime_checkable
class SupportsTransactions(Protocol):
    def transaction(self) -> Any:
        ...


def matches(row: Mapping[str, Any], predicate: Predicate) -> bool:
    # In-memory evaluation of a predicate, shared by test doubles and embed resolution.
    value = row.get(predicate.column)
    if predicate.op == "eq":
        return value == predicate.value
    if predicate.op == "neq":
        return value != predicate.value
    if predicate.op == "in":
        return value in predicate.value
    if value is None:
        return False
    if predicate.op == "gte":
        return value >= predicate.value
    return value <= predicate.value


async def resolve_embeds(client: DataClient, rows: list[Row], embeds: Sequence[Embed]) -> list[Row]:
    # Batch one child query per embed level instead of one per parent row.
    for embed in embeds:
        keys = sorted({row.get(embed.local_column) for row in rows if row.get(embed.local_column) is not None}, key=str)
        children: list[Row] = []
        if keys:
            children = await client.select(embed.relation, filters=[in_(embed.remote_column, keys)])
            if embed.embeds:
                children = await resolve_embeds(client, children, embed.embeds)
        grouped: dict[Any, list[Row]] = {}
        for child in children:
            grouped.setdefault(child.get(embed.remote_column), []).append(child)
        for row in rows:
            matched = grouped.get(row.get(embed.local_column), [])
            row[embed.name] = list(matched) if embed.many else (matched[0] if matched else None)
    return rows


def _plain(value: Any) -> Any:
    # Numerics as floats and uuid keys as strings, whatever the driver hands back.
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    return value


def _row(mapping: Mapping[str, Any]) -> Row:
    return {str(key): _plain(value) for key, value in mapping.items()}


class SqlDataClient:
    """DataClient over a SQLAlchemy async engine.

    Tables are reflected at call time so the client sees the live column set,
    never a schema compiled into the application.
    """

    def __init__(self, engine: AsyncEngine, *, connection: AsyncConnection | None = None) -> None:
        self._engine = engine
        self._connection = connection

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[AsyncConnection]:
        if self._connection is not None:
            yield self._connection
            return
        async with self._engine.begin() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlDataClient"]:
        # Bind a client to one connection so every call commits or rolls back together.
        if self._connection is not None:
            yield self
            return
        async with self._engine.begin() as conn:
            yield SqlDataClient(self._engine, connection=conn)

    async def _table(self, conn: AsyncConnection, relation: str) -> Table:
        return await conn.run_sync(lambda sync_conn: Table(relation, MetaData(), autoload_with=sync_conn))

    def _where(self, table: Table, stmt: Any, filters: Sequence[Predicate]) -> Any:
        for predicate in filters:
            if predicate.column not in table.c:
                raise DataClientError(
                    f"column {table.name}.{predicate.column} does not exist", relation=table.name
                )
            column = table.c[predicate.column]
            if predicate.op == "eq":
                stmt = stmt.where(column.is_(None) if predicate.value is None else column == predicate.value)
            elif predicate.op == "neq":
                stmt = stmt.where(column != predicate.value)
            elif predicate.op == "gte":
                stmt = stmt.where(column >= predicate.value)
            elif predicate.op == "lte":
                stmt = stmt.where(column <= predicate.value)
            else:
                stmt = stmt.where(column.in_(list(predicate.value)))
        return stmt

    async def select(
        self,
        relation: str,
        *,
        filters: Sequence[Predicate] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        columns: Sequence[str] | None = None,
    ) -> list[Row]:
        try:
            async with self._connect() as conn:
                table = await self._table(conn, relation)
                selected = [table.c[name] for name in columns] if columns else [table]
                stmt = self._where(table, select(*selected), filters)
                if order_by:
                    order_column = table.c[order_by]
                    stmt = stmt.order_by(order_column.desc() if descending else order_column.asc())
                if limit is not None:
                    stmt = stmt.limit(limit)
                result = await conn.execute(stmt)
                return [_row(mapping) for mapping in result.mappings().all()]
        except (SQLAlchemyError, KeyError) as exc:
            raise DataClientError(str(exc), relation=relation) from exc

    async def get(self, relation: str, row_id: str) -> Row | None:
        rows = await self.select(relation, filters=[eq("id", row_id)], limit=1)
        return rows[0] if rows else None

    async def insert(self, relation: str, payload: Mapping[str, Any]) -> Row:
        try:
            async with self._connect() as conn:
                table = await self._table(conn, relation)
                stmt = insert(table).values(**dict(payload)).returning(*table.c)
                result = await conn.execute(stmt)
                return _row(result.mappings().one())
        except SQLAlchemyError as exc:
            raise DataClientError(str(exc), relation=relation) from exc

    async def update(self, relation: str, row_id: str, payload: Mapping[str, Any]) -> Row:
        try:
            async with self._connect() as conn:
                table = await self._table(conn, relation)
                stmt = (
                    update(table)
                    .where(table.c.id == row_id)
                    .values(**dict(payload))
                    .returning(*table.c)
                )
                result = await conn.execute(stmt)
                mapping = result.mappings().one_or_none()
        except SQLAlchemyError as exc:
            raise DataClientError(str(exc), relation=relation) from exc
        if mapping is None:
            raise DataClientError(f"{relation} row {row_id} not found", relation=relation)
        return _row(mapping)

    async def delete(self, relation: str, row_id: str) -> None:
        try:
            async with self._connect() as conn:
                table = await self._table(conn, relation)
                await conn.execute(delete(table).where(table.c.id == row_id))
        except SQLAlchemyError as exc:
            raise DataClientError(str(exc), relation=relation) from exc

    async def sample(self, relation: str, n: int = 1) -> list[Row]:
        return await self.select(relation, limit=n)

    async def select_embedded(
        self,
        relation: str,
        embeds: Sequence[Embed],
        *,
        filters: Sequence[Predicate] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        rows = await self.select(
            relation, filters=filters, order_by=order_by, descending=descending, limit=limit
        )
        return await resolve_embeds(self, rows, embeds)
