from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base error for lifecycle engine failures surfaced to callers."""

    status_code = 400
    code = "lifecycle_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(LifecycleError):
    """Raised when a request is well-formed but semantically invalid, e.g. a stage outside its pipeline."""

    status_code = 422
    code = "validation_error"


class NotFoundError(LifecycleError):
    """Raised when a referenced opportunity, intake, task, stage or ledger row does not exist."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        message = f"{entity} not found"
        super().__init__(message, details={"entity": entity, "id": str(entity_id)} if entity_id is not None else None)


class ConflictError(LifecycleError):
    """Raised when the current state forbids the transition (double accept, expired rollback, lost update)."""

    status_code = 409
    code = "conflict"


class IntegrityError(LifecycleError):
    """Raised when a defensive consistency check fails inside a transaction."""

    status_code = 500
    code = "integrity_error"
