from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import FieldError
from .models import TaskEntity
from .query import TaskPage
from .schemas import TaskOut


def task_payload(task: TaskEntity, now: datetime) -> Dict[str, Any]:
    """Serialize a task (with computed attributes) to its camelCase JSON form."""
    return TaskOut.from_entity(task, now).model_dump(mode="json", by_alias=True)


# PUBLIC_INTERFACE
def success_envelope(data: Any = None, message: Optional[str] = None, **meta: Any) -> Dict[str, Any]:
    """
    Build the standard success envelope: ``{success: true, message?, data?, ...meta}``.
    Metadata keys are passed through as given (callers use camelCase names).
    """
    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    body.update(meta)
    if data is not None:
        body["data"] = data
    return body


# PUBLIC_INTERFACE
def list_envelope(
    items: Iterable[TaskEntity], now: datetime, message: Optional[str] = None, **meta: Any
) -> Dict[str, Any]:
    """Envelope for unpaged task lists: adds ``count`` and serializes every task."""
    data: List[Dict[str, Any]] = [task_payload(t, now) for t in items]
    return success_envelope(data=data, message=message, count=len(data), **meta)


# PUBLIC_INTERFACE
def pagination_envelope(page: TaskPage, now: datetime) -> Dict[str, Any]:
    """
    Build the paged list envelope.

    Returns:
        Dict with keys: success, count, totalCount, page, totalPages, data.
    """
    return list_envelope(
        page.items,
        now,
        totalCount=int(page.total_count),
        page=int(page.page),
        totalPages=int(page.total_pages),
    )


# PUBLIC_INTERFACE
def error_envelope(
    message: str,
    errors: Optional[List[FieldError]] = None,
    error: Optional[str] = None,
    **details: Any,
) -> Dict[str, Any]:
    """Build the failure envelope: ``{success: false, message, error?, errors?, ...details}``."""
    body: Dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        body["error"] = error
    if errors:
        body["errors"] = [e.as_dict() for e in errors]
    body.update(details)
    return body
