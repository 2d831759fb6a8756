from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from .models import (
    CATEGORY_MAX,
    DESCRIPTION_MAX,
    PROGRESS_MAX,
    PROGRESS_MIN,
    TAG_MAX,
    TITLE_MAX,
    Priority,
    RepeatType,
    Status,
    TaskEntity,
    derived_fields,
    start_of_day,
)

# Shared type for incoming datetimes which can be a date, datetime, or ISO8601 string
DateInput = Union[date, datetime, str]


def parse_datetime(value: Optional[DateInput]) -> Optional[datetime]:
    """
    Normalize date input into a naive local datetime.
    - If value is a string, attempt to parse via datetime.fromisoformat; if time is missing, set to 00:00.
    - If value is a date (not datetime), convert to datetime at 00:00.
    - Aware datetimes are converted to local time and made naive.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return value.astimezone().replace(tzinfo=None) if value.tzinfo else value

    if isinstance(value, date):
        # Promote a date to a datetime at midnight
        return datetime(value.year, value.month, value.day, 0, 0, 0)

    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return parse_datetime(datetime.fromisoformat(s))
        except ValueError:
            try:
                d = date.fromisoformat(s)
                return datetime(d.year, d.month, d.day, 0, 0, 0)
            except ValueError as e:
                raise ValueError(
                    "Invalid date format. Use ISO8601 date or datetime string (e.g., '2025-01-31' or '2025-01-31T13:45:00')."
                ) from e

    raise ValueError("Invalid type for date; expected date, datetime, or ISO8601 string.")


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(populate_by_name=True)


class NoteIn(_WireModel):
    content: Optional[str] = Field(default=None, description="Note text")


class RepeatIn(_WireModel):
    type: Optional[RepeatType] = Field(default=None, description="none, daily, weekly, monthly or yearly")
    interval: Optional[int] = Field(default=None, ge=1, description="Repeat every N periods (>= 1)")
    end_date: Optional[datetime] = Field(default=None, alias="endDate", description="Last occurrence date")

    @field_validator("end_date", mode="before")
    @classmethod
    def parse_end_date(cls, v: Optional[DateInput]) -> Optional[datetime]:
        return parse_datetime(v)


TagName = Annotated[str, Field(max_length=TAG_MAX)]


class TaskFields(_WireModel):
    """
    Typed task input with every field optional, so that partial updates only
    carry what the caller sent (see ``to_fields``).

    Pass ``context={"now": <datetime>}`` to ``model_validate`` to enforce that the
    due date is today or later; without it the check is skipped.
    """

    title: Optional[str] = Field(default=None, max_length=TITLE_MAX, description="Short title (1..200 chars)")
    description: Optional[str] = Field(
        default=None, max_length=DESCRIPTION_MAX, description="Detailed description (<= 1000 chars)"
    )
    completed: Optional[bool] = Field(default=None, description="Completion status flag")
    priority: Optional[Priority] = Field(default=None, description="low, medium, high or urgent")
    category: Optional[str] = Field(default=None, max_length=CATEGORY_MAX, description="Category label (<= 50 chars)")
    due_date: Optional[datetime] = Field(
        default=None,
        alias="dueDate",
        description="Due date/time. Accepts ISO8601 date or datetime; dates are set to 00:00",
    )
    tags: Optional[List[TagName]] = Field(default=None, description="Tags (<= 20 chars each); blank tags are dropped")
    status: Optional[Status] = Field(default=None, description="pending, in_progress, completed or cancelled")
    progress: Optional[int] = Field(
        default=None, ge=PROGRESS_MIN, le=PROGRESS_MAX, description="Progress percentage 0..100"
    )
    repeat: Optional[RepeatIn] = Field(default=None, description="Stored recurrence rule")

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v: Any) -> Any:
        """
        Strip whitespace; a sent title may not be null or blank.
        """
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("title is required")
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "category", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("tags", mode="before")
    @classmethod
    def clean_tags(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            kept = [t for t in v if t is not None and not (isinstance(t, str) and not t.strip())]
            return [t.strip() if isinstance(t, str) else t for t in kept]
        return v

    @field_validator("progress", mode="before")
    @classmethod
    def reject_bool_progress(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("progress must be an integer")
        return v

    @field_validator("completed", "priority", "status", "progress")
    @classmethod
    def not_null(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            raise ValueError(f"{info.field_name} must not be null")
        return v

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DateInput]) -> Optional[datetime]:
        """
        Normalize due_date from str/date/datetime to datetime.
        """
        return parse_datetime(v)

    @field_validator("due_date")
    @classmethod
    def due_date_not_past(cls, v: Optional[datetime], info: ValidationInfo) -> Optional[datetime]:
        now = (info.context or {}).get("now")
        if v is not None and now is not None and v < start_of_day(now):
            raise ValueError("due_date must be today or later")
        return v

    def to_fields(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent, keyed by Python name."""
        return self.model_dump(exclude_unset=True)


# PUBLIC_INTERFACE
class TaskCreate(TaskFields):
    """
    Schema for creating a new task (also used for bulk items).
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "title": "Write quarterly report",
                "description": "Collect numbers from finance",
                "priority": "high",
                "category": "work",
                "dueDate": "2030-02-01",
                "tags": ["report", "q1"],
                "progress": 0,
                "repeat": {"type": "none", "interval": 1},
                "notes": [{"content": "Ask Dana for the draft"}],
            }
        },
    )

    title: str = Field(..., max_length=TITLE_MAX, description="Short title (1..200 chars)")
    notes: Optional[List[NoteIn]] = Field(default=None, description="Initial notes; blank ones are dropped")


# PUBLIC_INTERFACE
class TaskUpdate(TaskFields):
    """
    Schema for updating an existing task.
    All fields are optional; only provided fields will be updated.
    """


class QuickCreate(_WireModel):
    title: Optional[str] = None


class TemplateCreate(_WireModel):
    customizations: TaskFields = Field(default_factory=TaskFields)


class DuplicateRequest(_WireModel):
    modifications: TaskFields = Field(default_factory=TaskFields)


class BulkCreate(_WireModel):
    # Items stay untyped so one malformed item is reported per index instead of failing the request.
    todos: Optional[List[Any]] = None


class ProgressIn(_WireModel):
    progress: float = Field(..., description="Progress percentage; clamped into 0..100")


class NoteCreate(_WireModel):
    content: Optional[str] = None


class NoteOut(_WireModel):
    content: str
    created_at: datetime = Field(..., alias="createdAt")


class RepeatOut(_WireModel):
    type: str
    interval: int
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


# PUBLIC_INTERFACE
class TaskOut(_WireModel):
    """
    Schema returned by the API for a task, including computed attributes.
    """

    id: int = Field(..., description="Unique identifier of the task")
    title: str
    description: str
    completed: bool
    priority: str
    category: str
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    tags: List[str]
    status: str
    progress: int
    repeat: RepeatOut
    notes: List[NoteOut]
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    is_overdue: bool = Field(..., alias="isOverdue")
    days_until_due: Optional[int] = Field(default=None, alias="daysUntilDue")
    is_due_soon: bool = Field(..., alias="isDueSoon")
    completion_rate: int = Field(..., alias="completionRate")

    @classmethod
    def from_entity(cls, entity: TaskEntity, now: datetime) -> "TaskOut":
        return cls.model_validate({**entity, **derived_fields(entity, now)})


class StatisticsOut(_WireModel):
    total: int
    completed: int
    pending: int
    in_progress: int = Field(..., alias="inProgress")
    overdue: int
    completion_rate: int = Field(..., alias="completionRate")
    overdue_rate: int = Field(..., alias="overdueRate")
    active: int
