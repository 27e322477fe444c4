from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from propdesk.core.config import get_settings
from propdesk.domain.models import Base
from propdesk.persistence.client import SqlDataClient


def build_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.api_db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
            }
    return create_async_engine(url, **engine_kwargs)


_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    # Create the engine lazily so importing the package never opens a pool.
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_data_client() -> SqlDataClient:
    return SqlDataClient(get_engine())


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    # ORM sessions are for scripts and fixtures; request paths go through the data client.
    return async_sessionmaker(get_engine(), expire_on_commit=False)


async def create_schema() -> None:
    # Development bootstrap of the reference schema; deployed schemas are managed externally.
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility without querying the server.
    if _engine is None:
        return {"size": None, "checked_out": None, "checked_in": None, "overflow": None}
    pool = _engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
