from __future__ import annotations

from typing import Any


class PropdeskError(Exception):
    """Base error for propdesk."""


class DataClientError(PropdeskError):
    """Datastore call failed; the message is the datastore's own."""

    def __init__(self, message: str, *, relation: str | None = None) -> None:
        super().__init__(message)
        self.relation = relation


class EntityNotFoundError(PropdeskError):
    """Primary entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} with ID {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class LeaseNotFoundError(EntityNotFoundError):
    def __init__(self, lease_id: str) -> None:
        super().__init__("Lease", lease_id)


class MaintenanceRequestNotFoundError(EntityNotFoundError):
    def __init__(self, request_id: str) -> None:
        super().__init__("Maintenance request", request_id)


class LeaseValidationError(PropdeskError):
    """Lease input violates a lease invariant."""


class InvalidStatusError(PropdeskError):
    """Status value outside the maintenance state set."""


class TransitionNotAllowedError(PropdeskError):
    """Transition rejected by the configured transition policy."""

    def __init__(self, from_status: str | None, to_status: str) -> None:
        super().__init__(f"Transition from {from_status} to {to_status} is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class AuditTrailWriteError(PropdeskError):
    """Status was written but the history entry was not; never reconciled automatically."""

    def __init__(self, message: str, *, request: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.request = request


class StorageError(PropdeskError):
    """Blob storage upload/remove failure."""
