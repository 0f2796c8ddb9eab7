from __future__ import annotations

from typing import Any, Optional


class TaskboardError(Exception):
    """Base class for failures surfaced by the store and its collaborators."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthorized(TaskboardError):
    status_code = 401
    code = "unauthorized"


class NotFound(TaskboardError):
    status_code = 404
    code = "not_found"

    @classmethod
    def for_entity(cls, entity: str, entity_id: str) -> "NotFound":
        return cls(f"{entity} not found", {"entity": entity, "id": entity_id})


class InvalidInput(TaskboardError):
    status_code = 400
    code = "invalid_input"


class NotAssigned(InvalidInput):
    """A chat user tried to complete an item assigned to someone else."""

    code = "not_assigned"


class StorageError(TaskboardError):
    code = "storage_error"


class OrderingInvariantViolation(TaskboardError):
    """Sibling orders stopped being exactly 0..n-1 inside a transaction."""

    code = "ordering_invariant_violation"


class LineApiError(TaskboardError):
    status_code = 502
    code = "line_api_error"
