from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

_REQUEST_SECTIONS = ("body", "query", "path", "header")


@dataclass(frozen=True)
class FieldError:
    """A single constraint violation on one field."""

    field: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}

    @classmethod
    def from_detail(cls, detail: Mapping[str, Any]) -> "FieldError":
        """
        Build from one entry of pydantic's ``errors()`` list. The request section
        prefix is dropped from the location, so ``("body", "tags", 0)`` becomes
        ``tags.0`` and ``("query", "days")`` becomes ``days``. Messages raised by
        our own validators are kept verbatim.
        """
        loc = list(detail.get("loc", ()))
        if loc and loc[0] in _REQUEST_SECTIONS:
            loc = loc[1:]
        field = ".".join(str(p) for p in loc) or "body"
        kind = detail.get("type")
        ctx = detail.get("ctx") or {}
        if kind == "missing":
            message = f"{field} is required"
        elif kind == "value_error" and "error" in ctx:
            message = str(ctx["error"])
        else:
            message = detail.get("msg", "")
        return cls(field, message)


class TaskError(Exception):
    """Base class for errors raised by task operations."""


# PUBLIC_INTERFACE
class ValidationError(TaskError):
    """
    Caller-fixable input problem: missing/blank required text, out-of-range values,
    unknown enum values, unknown template ids, oversized bulk requests.

    Attributes:
        message: Human readable summary.
        errors: Per-field violations (may be empty for request-level problems).
        details: Extra payload merged into the error envelope, e.g. the list of
            valid values for an enum.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[FieldError]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.errors: List[FieldError] = list(errors or [])
        self.details: Dict[str, Any] = dict(details or {})

    @classmethod
    def from_errors(cls, errors: List[FieldError]) -> "ValidationError":
        if len(errors) == 1:
            return cls(errors[0].message, errors)
        return cls("Input validation failed", errors)


# PUBLIC_INTERFACE
class NotFound(TaskError):
    """The referenced task id does not exist."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


# PUBLIC_INTERFACE
class PersistenceError(TaskError):
    """The underlying store failed (unreachable, locked, corrupt)."""
