from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Tuple, TypedDict, get_args

Priority = Literal["low", "medium", "high", "urgent"]
Status = Literal["pending", "in_progress", "completed", "cancelled"]
RepeatType = Literal["none", "daily", "weekly", "monthly", "yearly"]

PRIORITIES: Tuple[str, ...] = get_args(Priority)
STATUSES: Tuple[str, ...] = get_args(Status)
REPEAT_TYPES: Tuple[str, ...] = get_args(RepeatType)

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"

# Sort rank used whenever tasks are ordered by priority.
PRIORITY_RANK: Dict[str, int] = {name: rank for rank, name in enumerate(PRIORITIES)}

TITLE_MAX = 200
DESCRIPTION_MAX = 1000
CATEGORY_MAX = 50
TAG_MAX = 20
PROGRESS_MIN = 0
PROGRESS_MAX = 100
DUE_SOON_DAYS = 3


class NoteEntity(TypedDict):
    content: str
    created_at: datetime


class RepeatEntity(TypedDict):
    type: str
    interval: int
    end_date: Optional[datetime]


# PUBLIC_INTERFACE
class TaskEntity(TypedDict):
    """
    Storage-level representation of a task, shared by every repository backend.

    Fields:
    - id: Unique integer identifier assigned by the store
    - title: Trimmed title (1..200 chars)
    - description / category: Trimmed free text, empty string when unset
    - completed, status, progress, completed_at: Coupled completion state,
      kept consistent by ``validation.reconcile_state``
    - priority: One of PRIORITIES
    - due_date: Optional due datetime (naive local time)
    - tags: Ordered tag list, duplicates allowed
    - repeat: Stored recurrence rule (never expanded)
    - notes: Append-only list of notes
    - created_at / updated_at: System timestamps
    """

    id: int
    title: str
    description: str
    completed: bool
    priority: str
    category: str
    due_date: Optional[datetime]
    tags: List[str]
    status: str
    progress: int
    repeat: RepeatEntity
    notes: List[NoteEntity]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


# Presets for create-from-template. Customizations are merged over these.
TEMPLATES: Dict[str, Dict[str, Any]] = {
    "work": {"title": "업무 작업", "priority": "medium", "category": "업무", "tags": ["업무"]},
    "personal": {"title": "개인 일정", "priority": "low", "category": "개인", "tags": ["개인"]},
    "urgent": {"title": "긴급 작업", "priority": "urgent", "category": "긴급", "tags": ["긴급"]},
    "study": {"title": "학습", "priority": "medium", "category": "학습", "tags": ["학습"]},
}


def default_repeat() -> RepeatEntity:
    return {"type": "none", "interval": 1, "end_date": None}


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(moment: datetime) -> datetime:
    """Weeks start on Sunday."""
    days_since_sunday = (moment.weekday() + 1) % 7
    return start_of_day(moment) - timedelta(days=days_since_sunday)


def is_done(task: TaskEntity) -> bool:
    return bool(task["completed"])


def is_overdue(task: TaskEntity, now: datetime) -> bool:
    due = task["due_date"]
    return due is not None and due < now and not is_done(task)


def days_until_due(task: TaskEntity, now: datetime) -> Optional[int]:
    due = task["due_date"]
    if due is None:
        return None
    return math.ceil((due - now).total_seconds() / 86400)


def is_due_soon(task: TaskEntity, now: datetime) -> bool:
    days = days_until_due(task, now)
    return days is not None and 0 <= days <= DUE_SOON_DAYS


def completion_rate(task: TaskEntity) -> int:
    return 100 if is_done(task) else task["progress"]


# PUBLIC_INTERFACE
def derived_fields(task: TaskEntity, now: datetime) -> Dict[str, Any]:
    """Return the computed (never persisted) attributes of a task at ``now``."""
    return {
        "is_overdue": is_overdue(task, now),
        "days_until_due": days_until_due(task, now),
        "is_due_soon": is_due_soon(task, now),
        "completion_rate": completion_rate(task),
    }
