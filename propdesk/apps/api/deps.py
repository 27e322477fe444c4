from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status

from propdesk.core.config import get_settings
from propdesk.persistence.client import DataClient
from propdesk.persistence.db import get_data_client as _engine_data_client
from propdesk.services.dashboard import DashboardAggregator
from propdesk.services.leases import LeaseService
from propdesk.services.lifecycle import ACTOR_TYPES, Actor
from propdesk.services.maintenance import MaintenanceService
from propdesk.services.notifier import LoggingNotifier, Notifier
from propdesk.services.storage import StorageClient, get_storage_client


def get_data_client() -> DataClient:
    # One engine-backed client per request; tests override this dependency.
    return _engine_data_client()


def get_storage() -> StorageClient:
    return get_storage_client()


def get_notifier() -> Notifier:
    return LoggingNotifier()


def get_actor(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_type: str | None = Header(default=None, alias="X-Actor-Type"),
) -> Actor:
    # Identity is supplied by the upstream session layer and trusted as-is.
    settings = get_settings()
    actor_type = (x_actor_type or settings.default_actor_type).strip().lower()
    if actor_type not in ACTOR_TYPES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "INVALID_ACTOR_TYPE",
                "message": f"Unsupported actor type: {actor_type}",
                "allowed": sorted(ACTOR_TYPES),
            },
        )
    return Actor(id=(x_actor_id or settings.default_actor_id).strip(), type=actor_type)


def get_lease_service(
    client: DataClient = Depends(get_data_client),
    storage: StorageClient = Depends(get_storage),
    notifier: Notifier = Depends(get_notifier),
) -> LeaseService:
    return LeaseService(client, storage=storage, notifier=notifier)


def get_maintenance_service(
    client: DataClient = Depends(get_data_client),
    storage: StorageClient = Depends(get_storage),
    notifier: Notifier = Depends(get_notifier),
) -> MaintenanceService:
    return MaintenanceService(client, storage=storage, notifier=notifier)


def get_dashboard_aggregator(client: DataClient = Depends(get_data_client)) -> DashboardAggregator:
    return DashboardAggregator(client)
