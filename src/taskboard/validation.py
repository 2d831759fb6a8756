"""
Field validation and completion-state rules for task records.

Every mutating operation funnels its input through ``validate_fields`` before
anything is written, then through ``reconcile_state`` so that progress, status,
the completed flag and completed_at never disagree.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Type

from pydantic import ValidationError as SchemaValidationError

from .errors import FieldError
from .models import (
    COMPLETED,
    IN_PROGRESS,
    PENDING,
    PROGRESS_MAX,
    PROGRESS_MIN,
    NoteEntity,
    RepeatEntity,
    TaskEntity,
    default_repeat,
)
from .schemas import TaskFields

logger = logging.getLogger(__name__)


def choices_message(field: str, allowed: Iterable[str]) -> str:
    return f"{field} must be one of: {', '.join(allowed)}"


def normalize_repeat(value: Optional[Mapping[str, Any]], base: Optional[RepeatEntity] = None) -> RepeatEntity:
    """Merge a (possibly partial) repeat rule over ``base`` or the default rule."""
    merged: RepeatEntity = dict(base or default_repeat())  # type: ignore[assignment]
    for key in ("type", "interval", "end_date"):
        if value is not None and key in value and (value[key] is not None or key == "end_date"):
            merged[key] = value[key]  # type: ignore[literal-required]
    return merged


def normalize_notes(notes: Optional[Iterable[Any]], now: datetime) -> List[NoteEntity]:
    """Build note entities, dropping entries without usable content."""
    result: List[NoteEntity] = []
    for note in notes or []:
        content = note.get("content") if isinstance(note, Mapping) else None
        if isinstance(content, str) and content.strip():
            result.append({"content": content.strip(), "created_at": now})
    return result


# PUBLIC_INTERFACE
def validate_fields(
    data: Mapping[str, Any], now: datetime, schema: Type[TaskFields] = TaskFields
) -> Tuple[Dict[str, Any], List[FieldError]]:
    """
    Check task input against ``schema`` and normalize it.

    Args:
        data: Raw input keyed by Python name or wire alias. Only present keys are
            checked, which gives update its touched-fields-only semantics.
        now: Reference time for the due date lower bound (start of that day).
        schema: TaskCreate for creates, where the title is required; TaskFields or
            TaskUpdate for partial input.

    Returns:
        ``(fields, errors)``. On success errors is empty and fields holds the
        trimmed, typed values keyed by Python name. On failure fields is empty.
    """
    try:
        model = schema.model_validate(data, context={"now": now})
    except SchemaValidationError as e:
        errors = [FieldError.from_detail(detail) for detail in e.errors()]
        logger.debug("Rejected task fields: %s", [err.as_dict() for err in errors])
        return {}, errors
    return model.to_fields(), []


def clamp_progress(value: float) -> int:
    # Rounds half up.
    return int(math.floor(max(PROGRESS_MIN, min(PROGRESS_MAX, value)) + 0.5))


# PUBLIC_INTERFACE
def reconcile_state(task: TaskEntity, touched: Set[str], now: datetime, was_completed: bool = False) -> TaskEntity:
    """
    Bring progress, status, completed and completed_at into agreement, in place.

    When several coupled fields were touched at once, the first applicable driver
    decides whether the task is done: progress reaching 100, then the completed
    flag, then the status, then a progress value below 100. Untouched tasks keep
    their current completion state.

    Reopening a done task moves status ``completed`` back to ``pending`` and
    progress 100 back to 0; the pending/in_progress rules then follow progress.
    """
    if "progress" in touched and task["progress"] == PROGRESS_MAX:
        done = True
    elif "completed" in touched:
        done = bool(task["completed"])
    elif "status" in touched:
        done = task["status"] == COMPLETED
    elif "progress" in touched:
        done = False
    else:
        done = bool(task["completed"]) or task["status"] == COMPLETED

    if done:
        task["completed"] = True
        task["status"] = COMPLETED
        task["progress"] = PROGRESS_MAX
        if not was_completed or task["completed_at"] is None:
            task["completed_at"] = now
    else:
        task["completed"] = False
        task["completed_at"] = None
        if task["status"] == COMPLETED:
            task["status"] = PENDING
        if task["progress"] == PROGRESS_MAX:
            task["progress"] = 0
        if "progress" in touched:
            if task["progress"] > 0 and task["status"] == PENDING:
                task["status"] = IN_PROGRESS
            elif task["progress"] == 0 and task["status"] == IN_PROGRESS:
                task["status"] = PENDING

    task["updated_at"] = now
    return task


def mark_completed(task: TaskEntity, now: datetime) -> TaskEntity:
    """Put the task straight into its terminal state."""
    task["completed"] = True
    task["status"] = COMPLETED
    task["progress"] = PROGRESS_MAX
    task["completed_at"] = now
    task["updated_at"] = now
    return task
