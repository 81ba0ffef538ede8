"""
Domain errors raised by the task graph engines.

Every error carries a stable ``code``, the HTTP status the API layer renders it
with, and enough context (offending task ids and titles) for a user-facing
message. None of them are retried automatically.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional


class TaskGraphError(Exception):
    code = "TASK_GRAPH_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        task_ids: Optional[Iterable[uuid.UUID]] = None,
        titles: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_ids = list(task_ids or [])
        self.titles = list(titles or [])

    def to_dict(self) -> dict[str, Any]:
        details: dict[str, Any] = {}
        if self.task_ids:
            details["task_ids"] = [str(t) for t in self.task_ids]
        if self.titles:
            details["titles"] = self.titles
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status_code,
            "details": details,
        }


class NotFound(TaskGraphError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidRelationship(TaskGraphError):
    code = "INVALID_RELATIONSHIP"
    status_code = 422


class CircularDependency(TaskGraphError):
    code = "CIRCULAR_DEPENDENCY"
    status_code = 409


class DuplicateRelationship(TaskGraphError):
    code = "DUPLICATE_RELATIONSHIP"
    status_code = 409


class SelfReference(TaskGraphError):
    code = "SELF_REFERENCE"
    status_code = 422


class BlockedByChildren(TaskGraphError):
    code = "BLOCKED_BY_CHILDREN"
    status_code = 422


class BlockedByDependency(TaskGraphError):
    code = "BLOCKED_BY_DEPENDENCY"
    status_code = 422


class InvariantViolation(TaskGraphError):
    """The store holds a shape the invariants forbid (e.g. a hierarchy cycle).

    Always fatal. Signals corruption, not a user mistake.
    """
    code = "INVARIANT_VIOLATION"
    status_code = 500
