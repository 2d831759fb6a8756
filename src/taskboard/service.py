from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

from .errors import FieldError, NotFound, TaskError, ValidationError
from .models import (
    PENDING,
    PRIORITIES,
    STATUSES,
    TEMPLATES,
    TaskEntity,
    start_of_day,
    start_of_week,
)
from .query import SEARCH_SCOPES, ListQuery, SORT_ORDERS, TaskFilter, TaskPage, TaskQuery, resolve_sort_field
from .repositories import Repository
from .schemas import TaskCreate, TaskFields, TaskUpdate
from .validation import (
    choices_message,
    clamp_progress,
    mark_completed,
    normalize_notes,
    normalize_repeat,
    reconcile_state,
    validate_fields,
)

logger = logging.getLogger(__name__)

BULK_LIMIT = 50
FINDER_LIMIT = 50
SEARCH_LIMIT = 20
DUE_SOON_MAX_DAYS = 3650
# Largest row offset either backend can window to (SQLite INTEGER).
MAX_OFFSET = 2**63 - 1

TaskInput = Union[TaskFields, Mapping[str, Any], None]


@dataclass(frozen=True)
class Statistics:
    total: int
    completed: int
    pending: int
    in_progress: int
    overdue: int
    completion_rate: int
    overdue_rate: int
    active: int


@dataclass(frozen=True)
class DateRangeResult:
    """Tasks due within a calendar range; ``start``/``end`` are inclusive dates."""

    items: List[TaskEntity]
    start: date
    end: date


@dataclass
class BulkResult:
    total: int
    created: List[TaskEntity] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {"total": self.total, "created": len(self.created), "failed": len(self.errors)}


def _percent(part: int, total: int) -> int:
    # Half-up rounding; zero when the collection is empty.
    if total <= 0:
        return 0
    return int(math.floor(part * 100 / total + 0.5))


def _coerce(data: TaskInput) -> Dict[str, Any]:
    """Turn schema instances or plain mappings into a dict of supplied fields."""
    if data is None:
        return {}
    if isinstance(data, TaskFields):
        return data.to_fields()
    if isinstance(data, Mapping):
        return dict(data)
    raise ValidationError("Task data must be an object", [FieldError("body", "must be an object")])


def _check_choice(name: str, value: Optional[str], allowed: Sequence[str], details_key: str) -> None:
    if value is not None and value not in allowed:
        raise ValidationError(
            choices_message(name, allowed),
            [FieldError(name, choices_message(name, allowed))],
            {details_key: list(allowed)},
        )


# PUBLIC_INTERFACE
class TaskService:
    """
    Domain operations over a task repository: the record lifecycle (create,
    update, toggle, progress, notes, completion, delete) and the read side
    (paged listing, single-predicate finders, due-date windows, search and
    statistics).

    Args:
        repository: Persistent collection backing the service.
        clock: Returns the current local time; injectable for tests.
    """

    def __init__(self, repository: Repository, clock: Callable[[], datetime] = datetime.now) -> None:
        self._repo = repository
        self._clock = clock

    @property
    def repository(self) -> Repository:
        return self._repo

    def now(self) -> datetime:
        return self._clock()

    def _require(self, task_id: int) -> TaskEntity:
        task = self._repo.get(task_id)
        if task is None:
            raise NotFound(task_id)
        return task

    def _save(self, task_id: int, task: TaskEntity) -> TaskEntity:
        saved = self._repo.replace(task_id, task)
        if saved is None:
            # Deleted between read and write.
            raise NotFound(task_id)
        return saved

    # ---- record lifecycle ----

    def _validated(self, data: Mapping[str, Any], schema: Type[TaskFields]) -> Dict[str, Any]:
        fields, errors = validate_fields(data, self.now(), schema)
        if errors:
            raise ValidationError.from_errors(errors)
        return fields

    def _insert_new(self, raw: Mapping[str, Any]) -> TaskEntity:
        fields = self._validated(raw, TaskCreate)
        now = self.now()
        entity: Dict[str, Any] = {
            "title": fields["title"],
            "description": fields.get("description", ""),
            "completed": fields.get("completed", False),
            "priority": fields.get("priority", "medium"),
            "category": fields.get("category", ""),
            "due_date": fields.get("due_date"),
            "tags": list(fields.get("tags", [])),
            "status": fields.get("status", PENDING),
            "progress": fields.get("progress", 0),
            "repeat": normalize_repeat(fields.get("repeat")),
            "notes": normalize_notes(fields.get("notes"), now),
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        # Progress counts as set on creation so the pending/in_progress rules apply.
        reconcile_state(entity, set(fields) | {"progress"}, now)  # type: ignore[arg-type]
        created = self._repo.insert(entity)
        logger.info("Created task %s (%s)", created["id"], created["status"])
        return created

    def create(self, data: TaskInput) -> TaskEntity:
        """Validate, reconcile and store a new task."""
        return self._insert_new(_coerce(data))

    def create_quick(self, title: Optional[str]) -> TaskEntity:
        """Create a task from a title alone; everything else takes its default."""
        return self._insert_new({"title": title})

    def create_from_template(self, template_id: str, customizations: TaskInput = None) -> TaskEntity:
        """
        Create a task from one of the TEMPLATES presets. Customizations override
        the preset. The new task always
        starts pending with no progress.
        """
        template = TEMPLATES.get(template_id)
        if template is None:
            raise ValidationError(
                f"Unknown template '{template_id}'. Available templates: {', '.join(TEMPLATES)}",
                [FieldError("templateId", "unknown template")],
                {"availableTemplates": list(TEMPLATES)},
            )
        custom = self._validated(_coerce(customizations), TaskFields)
        raw: Dict[str, Any] = {**template, **custom}
        raw.update(status=PENDING, progress=0, completed=False)
        return self._insert_new(raw)

    def bulk_create(self, items: Optional[Sequence[Any]]) -> BulkResult:
        """
        Create up to BULK_LIMIT tasks. Items are independent: a rejected item is
        reported by index and the remaining items are still processed.
        """
        if not isinstance(items, (list, tuple)) or not items:
            raise ValidationError("todos must be a non-empty list")
        if len(items) > BULK_LIMIT:
            raise ValidationError(f"Too many tasks: at most {BULK_LIMIT} can be created at once")

        result = BulkResult(total=len(items))
        for index, item in enumerate(items):
            try:
                result.created.append(self.create(item))
            except TaskError as e:
                failure: Dict[str, Any] = {"index": index, "error": str(e)}
                if isinstance(e, ValidationError) and e.errors:
                    failure["errors"] = [fe.as_dict() for fe in e.errors]
                result.errors.append(failure)
        logger.info("Bulk create: %s", result.summary)
        return result

    def duplicate(self, task_id: int, overrides: TaskInput = None) -> TaskEntity:
        """
        Copy a task. The copy starts pending with no progress and no notes; its
        title defaults to "<title> (copy)". The due date is only set when given in
        the overrides.
        """
        original = self._require(task_id)
        mods = self._validated(_coerce(overrides), TaskFields)
        raw: Dict[str, Any] = {
            "title": f"{original['title']} (copy)",
            "description": original["description"],
            "priority": original["priority"],
            "category": original["category"],
            "tags": list(original["tags"]),
            "repeat": original["repeat"],
        }
        raw.update({k: v for k, v in mods.items() if k not in ("status", "progress", "completed")})
        if "repeat" in mods:
            raw["repeat"] = normalize_repeat(mods["repeat"], original["repeat"])
        raw.update(status=PENDING, progress=0, completed=False)
        return self._insert_new(raw)

    def get(self, task_id: int) -> TaskEntity:
        return self._require(task_id)

    def update(self, task_id: int, data: TaskInput) -> TaskEntity:
        """
        Partial update: only supplied fields change. Touched fields are validated
        before anything is written, so a rejected update leaves the record as it was.
        """
        existing = self._require(task_id)
        now = self.now()
        fields = self._validated(_coerce(data), TaskUpdate)
        if "repeat" in fields:
            fields["repeat"] = normalize_repeat(fields["repeat"], existing["repeat"])

        was_completed = existing["completed"]
        updated: TaskEntity = {**existing, **fields}  # type: ignore[misc]
        reconcile_state(updated, set(fields), now, was_completed)
        saved = self._save(task_id, updated)
        logger.info("Updated task %s fields=%s", task_id, sorted(fields))
        return saved

    def toggle_completed(self, task_id: int) -> TaskEntity:
        task = self._require(task_id)
        was_completed = task["completed"]
        task["completed"] = not was_completed
        reconcile_state(task, {"completed"}, self.now(), was_completed)
        return self._save(task_id, task)

    def set_progress(self, task_id: int, value: float) -> TaskEntity:
        """
        Set progress, clamping out-of-range values into 0..100 instead of
        rejecting them (update() rejects them).
        """
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
            raise ValidationError("progress must be a number", [FieldError("progress", "progress must be a number")])
        task = self._require(task_id)
        was_completed = task["completed"]
        task["progress"] = clamp_progress(value)
        reconcile_state(task, {"progress"}, self.now(), was_completed)
        return self._save(task_id, task)

    def add_note(self, task_id: int, content: Optional[str]) -> TaskEntity:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Note content is required", [FieldError("content", "content is required")])
        task = self._require(task_id)
        now = self.now()
        task["notes"].append({"content": content.strip(), "created_at": now})
        task["updated_at"] = now
        return self._save(task_id, task)

    def mark_complete(self, task_id: int) -> TaskEntity:
        task = self._require(task_id)
        mark_completed(task, self.now())
        return self._save(task_id, task)

    def delete(self, task_id: int) -> None:
        if not self._repo.delete(task_id):
            raise NotFound(task_id)
        logger.info("Deleted task %s", task_id)

    # ---- queries ----

    def _find(
        self,
        task_filter: TaskFilter,
        sort_by: Optional[str],
        sort_order: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[TaskEntity], int]:
        order = (sort_order or "desc").strip().lower()
        if order not in SORT_ORDERS:
            raise ValidationError("sortOrder must be 'asc' or 'desc'", [FieldError("sortOrder", "invalid")])
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", [FieldError("limit", "must be >= 1")])
        if limit is not None and limit > MAX_OFFSET:
            raise ValidationError("limit is out of range", [FieldError("limit", "limit is out of range")])
        query = ListQuery(
            filter=task_filter,
            sort_field=resolve_sort_field(sort_by),
            descending=order == "desc",
            offset=offset,
            limit=limit,
        )
        return self._repo.find(query)

    def list(self, query: Optional[TaskQuery] = None) -> TaskPage:
        """
        Resolve a paged query. ``total_count`` ignores pagination and
        ``total_pages`` is ceil(total_count / page_size).
        """
        q = query or TaskQuery()
        if q.page < 1:
            raise ValidationError("page must be at least 1", [FieldError("page", "must be >= 1")])
        if q.page_size < 1:
            raise ValidationError("limit must be at least 1", [FieldError("limit", "must be >= 1")])
        offset = (q.page - 1) * q.page_size
        if offset > MAX_OFFSET:
            raise ValidationError("page is out of range", [FieldError("page", "page is out of range")])
        items, total = self._find(q.filter, q.sort_by, q.sort_order, limit=q.page_size, offset=offset)
        return TaskPage(
            items=items,
            total_count=total,
            page=q.page,
            page_size=q.page_size,
            total_pages=math.ceil(total / q.page_size),
        )

    def find_by_category(
        self, category: str, sort_by: str = "createdAt", sort_order: str = "desc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        return self._find(TaskFilter(category=category), sort_by, sort_order, limit)[0]

    def find_by_priority(
        self, priority: str, sort_by: str = "createdAt", sort_order: str = "desc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        _check_choice("priority", priority, PRIORITIES, "validPriorities")
        return self._find(TaskFilter(priority=priority), sort_by, sort_order, limit)[0]

    def find_by_status(
        self, status: str, sort_by: str = "createdAt", sort_order: str = "desc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        _check_choice("status", status, STATUSES, "validStatuses")
        return self._find(TaskFilter(status=status), sort_by, sort_order, limit)[0]

    def find_by_tag(
        self, tag: str, sort_by: str = "createdAt", sort_order: str = "desc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        return self._find(TaskFilter(tags=(tag,)), sort_by, sort_order, limit)[0]

    def find_overdue(
        self, sort_by: str = "dueDate", sort_order: str = "asc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        """Open tasks whose due date has passed."""
        return self._find(TaskFilter(completed=False, due_lt=self.now()), sort_by, sort_order, limit)[0]

    def find_due_soon(
        self, days: int = 3, sort_by: str = "dueDate", sort_order: str = "asc", limit: int = FINDER_LIMIT
    ) -> List[TaskEntity]:
        """Open tasks due between now and ``days`` days from now, inclusive."""
        if not 0 <= days <= DUE_SOON_MAX_DAYS:
            message = f"days must be between 0 and {DUE_SOON_MAX_DAYS}"
            raise ValidationError(message, [FieldError("days", message)])
        now = self.now()
        task_filter = TaskFilter(completed=False, due_gte=now, due_lte=now + timedelta(days=days))
        return self._find(task_filter, sort_by, sort_order, limit)[0]

    def find_today(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        sort_by: str = "priority",
        sort_order: str = "desc",
    ) -> DateRangeResult:
        _check_choice("status", status, STATUSES, "validStatuses")
        _check_choice("priority", priority, PRIORITIES, "validPriorities")
        start = start_of_day(self.now())
        task_filter = TaskFilter(status=status, priority=priority, due_gte=start, due_lt=start + timedelta(days=1))
        items = self._find(task_filter, sort_by, sort_order)[0]
        return DateRangeResult(items=items, start=start.date(), end=start.date())

    def find_this_week(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        sort_by: str = "dueDate",
        sort_order: str = "asc",
    ) -> DateRangeResult:
        """Tasks due from Sunday 00:00 through the end of Saturday of the current week."""
        _check_choice("status", status, STATUSES, "validStatuses")
        _check_choice("priority", priority, PRIORITIES, "validPriorities")
        start = start_of_week(self.now())
        end = start + timedelta(days=7)
        task_filter = TaskFilter(status=status, priority=priority, due_gte=start, due_lt=end)
        items = self._find(task_filter, sort_by, sort_order)[0]
        return DateRangeResult(items=items, start=start.date(), end=(end - timedelta(days=1)).date())

    def search(self, term: Optional[str], scope: str = "all", limit: int = SEARCH_LIMIT) -> List[TaskEntity]:
        """
        Case-insensitive substring search. ``scope`` picks one field or ``all``,
        which matches on any of title, description, category and tags.
        """
        if term is None or not term.strip():
            raise ValidationError("Search term is required", [FieldError("q", "search term is required")])
        _check_choice("type", scope, SEARCH_SCOPES, "validTypes")
        fields = tuple(s for s in SEARCH_SCOPES if s != "all") if scope == "all" else (scope,)
        task_filter = TaskFilter(search=term.strip(), search_fields=fields)
        return self._find(task_filter, "createdAt", "desc", limit)[0]

    def statistics(self) -> Statistics:
        counts = self._repo.aggregate_statistics(self.now())
        return Statistics(
            total=counts.total,
            completed=counts.completed,
            pending=counts.pending,
            in_progress=counts.in_progress,
            overdue=counts.overdue,
            completion_rate=_percent(counts.completed, counts.total),
            overdue_rate=_percent(counts.overdue, counts.total),
            active=counts.pending + counts.in_progress,
        )
