from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .models import PRIORITY_RANK, TaskEntity

SEARCH_SCOPES: Tuple[str, ...] = ("title", "description", "category", "tags", "all")
LIST_SEARCH_FIELDS: Tuple[str, ...] = ("title", "description", "category")

# Public sort names (wire camelCase and snake_case) -> entity keys.
SORT_FIELDS: Dict[str, str] = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "dueDate": "due_date",
    "completedAt": "completed_at",
    "title": "title",
    "priority": "priority",
    "status": "status",
    "progress": "progress",
    "category": "category",
    "completed": "completed",
}
SORT_FIELDS.update({v: v for v in list(SORT_FIELDS.values())})

SORT_ORDERS: Tuple[str, ...] = ("asc", "desc")


def resolve_sort_field(name: Optional[str]) -> Optional[str]:
    """Return the entity key for a public sort name, or None when unknown."""
    if not name:
        return None
    return SORT_FIELDS.get(name.strip())


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()  # type: ignore[union-attr]


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class TaskFilter:
    """
    Declarative predicate over task records. Every set attribute must match
    (AND); ``tags`` matches when any requested tag is present and ``search`` is a
    case-insensitive substring test OR-ed across ``search_fields``.

    Due date bounds never match tasks without a due date.
    """

    completed: Optional[bool] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    tags: Tuple[str, ...] = ()
    due_gte: Optional[datetime] = None
    due_lt: Optional[datetime] = None
    due_lte: Optional[datetime] = None
    progress_min: Optional[int] = None
    progress_max: Optional[int] = None
    search: Optional[str] = None
    search_fields: Tuple[str, ...] = LIST_SEARCH_FIELDS

    @property
    def has_due_bounds(self) -> bool:
        return self.due_gte is not None or self.due_lt is not None or self.due_lte is not None

    def matches(self, task: TaskEntity) -> bool:
        if self.completed is not None and task["completed"] != self.completed:
            return False
        if self.priority is not None and task["priority"] != self.priority:
            return False
        if self.category is not None and task["category"] != self.category:
            return False
        if self.status is not None and task["status"] != self.status:
            return False
        if self.tags and not any(t in task["tags"] for t in self.tags):
            return False
        if self.has_due_bounds:
            due = task["due_date"]
            if due is None:
                return False
            if self.due_gte is not None and due < self.due_gte:
                return False
            if self.due_lt is not None and not due < self.due_lt:
                return False
            if self.due_lte is not None and due > self.due_lte:
                return False
        if self.progress_min is not None and task["progress"] < self.progress_min:
            return False
        if self.progress_max is not None and task["progress"] > self.progress_max:
            return False
        if self.search:
            needle = self.search.lower()
            hit = False
            for name in self.search_fields:
                if name == "tags":
                    hit = any(_contains(t, needle) for t in task["tags"])
                else:
                    hit = _contains(task[name], needle)  # type: ignore[literal-required]
                if hit:
                    break
            if not hit:
                return False
        return True


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class ListQuery:
    """
    Storage-level query: filter, one sort key, and an offset/limit window.
    ``sort_field`` None means insertion order. Ties break by id ascending.
    """

    filter: TaskFilter = field(default_factory=TaskFilter)
    sort_field: Optional[str] = "created_at"
    descending: bool = True
    offset: int = 0
    limit: Optional[int] = None


def sort_key(sort_field: str) -> Callable[[TaskEntity], Any]:
    """Key function ordering None values first, priorities by rank."""

    def key(task: TaskEntity) -> Any:
        value = task[sort_field]  # type: ignore[literal-required]
        if value is None:
            return (0, 0)
        if sort_field == "priority":
            value = PRIORITY_RANK.get(value, -1)
        return (1, value)

    return key


def apply_query(tasks: Sequence[TaskEntity], query: ListQuery) -> Tuple[List[TaskEntity], int]:
    """Filter, sort and slice ``tasks`` in memory. Returns (page, total matches)."""
    matched = sorted((t for t in tasks if query.filter.matches(t)), key=lambda t: t["id"])
    total = len(matched)
    if query.sort_field is not None:
        matched.sort(key=sort_key(query.sort_field), reverse=query.descending)
    start = max(query.offset, 0)
    end = None if query.limit is None else start + max(query.limit, 0)
    return matched[start:end], total


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class TaskQuery:
    """
    Caller-facing list request: filters, sort and page-based pagination.
    """

    filter: TaskFilter = field(default_factory=TaskFilter)
    sort_by: Optional[str] = "createdAt"
    sort_order: str = "desc"
    page: int = 1
    page_size: int = 20


@dataclass(frozen=True)
class TaskPage:
    items: List[TaskEntity]
    total_count: int
    page: int
    page_size: int
    total_pages: int

    @property
    def count(self) -> int:
        return len(self.items)
