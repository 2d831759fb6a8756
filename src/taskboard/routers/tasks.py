from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..errors import FieldError, ValidationError
from ..models import PRIORITIES, STATUSES
from ..query import TaskFilter, TaskQuery
from ..repositories import Repository, get_repository
from ..schemas import (
    BulkCreate,
    DuplicateRequest,
    NoteCreate,
    ProgressIn,
    QuickCreate,
    StatisticsOut,
    TaskCreate,
    TaskUpdate,
    TemplateCreate,
    parse_datetime,
)
from ..service import DUE_SOON_MAX_DAYS, TaskService
from ..utils import list_envelope, pagination_envelope, success_envelope, task_payload

router = APIRouter(
    prefix="/api/todos",
    tags=["todos"],
)

_NOT_FOUND = {404: {"description": "Task not found"}}
_BAD_REQUEST = {400: {"description": "Validation error"}}


# PUBLIC_INTERFACE
def get_task_service(repo: Repository = Depends(get_repository)) -> TaskService:
    """
    Dependency providing the task service bound to the configured repository.
    """
    return TaskService(repo)


def _single(service: TaskService, task, message: Optional[str] = None) -> Dict[str, Any]:
    return success_envelope(data=task_payload(task, service.now()), message=message)


def _parse_due_filter(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError as e:
        raise ValidationError(str(e), [FieldError("dueDate", str(e))]) from e


# ==================== queries ====================


# PUBLIC_INTERFACE
@router.get(
    "/",
    summary="List Tasks",
    description=(
        "List tasks with optional filters, sorting and pagination.\n\n"
        "Query parameters:\n"
        "- completed, priority, category, status: exact-match filters\n"
        "- tags: repeatable; matches tasks carrying any of the tags\n"
        "- dueDate: tasks due on or before this date\n"
        "- progressMin / progressMax: inclusive progress range\n"
        "- search: substring match on title, description or category\n"
        "- sortBy / sortOrder: sort field (default createdAt) and asc/desc (default desc)\n"
        "- page / limit: 1-based page number and page size (default 20)"
    ),
    responses={200: {"description": "Page retrieved"}, **_BAD_REQUEST},
)
def list_tasks(
    completed: Optional[bool] = Query(None, description="Filter by completion status"),
    priority: Optional[str] = Query(None, description="Filter by priority"),
    category: Optional[str] = Query(None, description="Filter by category"),
    task_status: Optional[str] = Query(None, alias="status", description="Filter by status"),
    tags: Optional[List[str]] = Query(None, description="Match any of these tags"),
    search: Optional[str] = Query(None, description="Search text for title/description/category"),
    due_date: Optional[str] = Query(None, alias="dueDate", description="Due on or before (ISO8601)"),
    progress_min: Optional[int] = Query(None, alias="progressMin", ge=0, le=100),
    progress_max: Optional[int] = Query(None, alias="progressMax", ge=0, le=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    page: int = Query(1, ge=1, description="1-based page number"),
    limit: int = Query(20, ge=1, le=1000, description="Page size"),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    task_filter = TaskFilter(
        completed=completed,
        priority=priority,
        category=category,
        status=task_status,
        tags=tuple(tags or ()),
        due_lte=_parse_due_filter(due_date),
        progress_min=progress_min,
        progress_max=progress_max,
        search=search.strip() if search and search.strip() else None,
    )
    query = TaskQuery(filter=task_filter, sort_by=sort_by, sort_order=sort_order, page=page, page_size=limit)
    return pagination_envelope(service.list(query), service.now())


# PUBLIC_INTERFACE
@router.get("/statistics", summary="Task Statistics", description="Aggregate counts and rates over all tasks.")
def task_statistics(service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    stats = service.statistics()
    payload = StatisticsOut.model_validate(asdict(stats)).model_dump(by_alias=True)
    return success_envelope(data=payload)


# PUBLIC_INTERFACE
@router.get("/search", summary="Search Tasks", responses=_BAD_REQUEST)
def search_tasks(
    q: Optional[str] = Query(None, description="Search term"),
    scope: str = Query("all", alias="type", description="title, description, category, tags or all"),
    limit: int = Query(20, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.search(q, scope=scope, limit=limit)
    return list_envelope(items, service.now(), query=q, type=scope)


# PUBLIC_INTERFACE
@router.get("/today", summary="Tasks Due Today")
def tasks_due_today(
    task_status: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = Query(None),
    sort_by: str = Query("priority", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    result = service.find_today(task_status, priority, sort_by, sort_order)
    return list_envelope(
        result.items, service.now(), message="Tasks due today", date=result.start.isoformat()
    )


# PUBLIC_INTERFACE
@router.get("/week", summary="Tasks Due This Week", description="Weeks run Sunday through Saturday.")
def tasks_due_this_week(
    task_status: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = Query(None),
    sort_by: str = Query("dueDate", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    result = service.find_this_week(task_status, priority, sort_by, sort_order)
    return list_envelope(
        result.items,
        service.now(),
        message="Tasks due this week",
        weekStart=result.start.isoformat(),
        weekEnd=result.end.isoformat(),
    )


# PUBLIC_INTERFACE
@router.get("/overdue", summary="Overdue Tasks")
def overdue_tasks(
    sort_by: str = Query("dueDate", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_overdue(sort_by, sort_order, limit)
    return list_envelope(items, service.now(), message="Overdue tasks")


# PUBLIC_INTERFACE
@router.get("/due-soon", summary="Tasks Due Soon")
def due_soon_tasks(
    days: int = Query(3, ge=0, le=DUE_SOON_MAX_DAYS, description="Window size in days"),
    sort_by: str = Query("dueDate", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_due_soon(days, sort_by, sort_order, limit)
    return list_envelope(items, service.now(), message=f"Tasks due within {days} days", days=days)


# PUBLIC_INTERFACE
@router.get("/category/{category}", summary="Tasks By Category")
def tasks_by_category(
    category: str,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_by_category(category, sort_by, sort_order, limit)
    return list_envelope(items, service.now(), category=category)


# PUBLIC_INTERFACE
@router.get(
    "/priority/{priority}",
    summary="Tasks By Priority",
    description=f"Valid priorities: {', '.join(PRIORITIES)}",
    responses=_BAD_REQUEST,
)
def tasks_by_priority(
    priority: str,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_by_priority(priority, sort_by, sort_order, limit)
    return list_envelope(items, service.now(), priority=priority)


# PUBLIC_INTERFACE
@router.get(
    "/status/{task_status}",
    summary="Tasks By Status",
    description=f"Valid statuses: {', '.join(STATUSES)}",
    responses=_BAD_REQUEST,
)
def tasks_by_status(
    task_status: str,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_by_status(task_status, sort_by, sort_order, limit)
    return list_envelope(items, service.now(), status=task_status)


# PUBLIC_INTERFACE
@router.get("/tag/{tag}", summary="Tasks By Tag")
def tasks_by_tag(
    tag: str,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(50, ge=1, le=1000),
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    items = service.find_by_tag(tag, sort_by, sort_order, limit)
    return list_envelope(items, service.now(), tag=tag)


# PUBLIC_INTERFACE
@router.get("/{task_id}", summary="Get Task", responses=_NOT_FOUND)
def get_task(task_id: int, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.get(task_id))


# ==================== creation ====================


# PUBLIC_INTERFACE
@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    summary="Create Task",
    description="Create a new task and return the created resource.",
    responses={201: {"description": "Task created successfully"}, **_BAD_REQUEST},
)
def create_task(payload: TaskCreate, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.create(payload), "Task created")


# PUBLIC_INTERFACE
@router.post("/quick", status_code=status.HTTP_201_CREATED, summary="Quick Create", responses=_BAD_REQUEST)
def create_quick_task(payload: QuickCreate, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.create_quick(payload.title), "Task created")


# PUBLIC_INTERFACE
@router.post(
    "/template/{template_id}",
    status_code=status.HTTP_201_CREATED,
    summary="Create From Template",
    description="Templates: work, personal, urgent, study. Customizations override the preset.",
    responses=_BAD_REQUEST,
)
def create_task_from_template(
    template_id: str,
    payload: Optional[TemplateCreate] = None,
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    customizations = payload.customizations if payload else None
    task = service.create_from_template(template_id, customizations)
    return _single(service, task, f'Task created from template "{template_id}"')


# PUBLIC_INTERFACE
@router.post(
    "/bulk",
    status_code=status.HTTP_201_CREATED,
    summary="Bulk Create",
    description="Create up to 50 tasks; invalid items are reported by index without aborting the rest.",
    responses=_BAD_REQUEST,
)
def bulk_create_tasks(payload: BulkCreate, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    result = service.bulk_create(payload.todos)
    now = service.now()
    meta: Dict[str, Any] = {"summary": result.summary}
    if result.errors:
        meta["errors"] = result.errors
    return success_envelope(
        data=[task_payload(t, now) for t in result.created],
        message=f"{len(result.created)} tasks created",
        **meta,
    )


# PUBLIC_INTERFACE
@router.post(
    "/{task_id}/duplicate",
    status_code=status.HTTP_201_CREATED,
    summary="Duplicate Task",
    responses={**_NOT_FOUND, **_BAD_REQUEST},
)
def duplicate_task(
    task_id: int,
    payload: Optional[DuplicateRequest] = None,
    service: TaskService = Depends(get_task_service),
) -> Dict[str, Any]:
    overrides = payload.modifications if payload else None
    return _single(service, service.duplicate(task_id, overrides), "Task duplicated")


# ==================== mutation ====================


# PUBLIC_INTERFACE
@router.put(
    "/{task_id}",
    summary="Update Task",
    description="Partially update a task: only the supplied fields change.",
    responses={**_NOT_FOUND, **_BAD_REQUEST},
)
def update_task(task_id: int, payload: TaskUpdate, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.update(task_id, payload), "Task updated")


# PUBLIC_INTERFACE
@router.patch("/{task_id}/toggle", summary="Toggle Completion", responses=_NOT_FOUND)
def toggle_task(task_id: int, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    task = service.toggle_completed(task_id)
    return _single(service, task, "Task completed" if task["completed"] else "Task reopened")


# PUBLIC_INTERFACE
@router.patch(
    "/{task_id}/progress",
    summary="Set Progress",
    description="Out-of-range values are clamped into 0..100.",
    responses=_NOT_FOUND,
)
def set_task_progress(
    task_id: int, payload: ProgressIn, service: TaskService = Depends(get_task_service)
) -> Dict[str, Any]:
    return _single(service, service.set_progress(task_id, payload.progress), "Progress updated")


# PUBLIC_INTERFACE
@router.patch("/{task_id}/complete", summary="Mark Complete", responses=_NOT_FOUND)
def complete_task(task_id: int, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.mark_complete(task_id), "Task completed")


# PUBLIC_INTERFACE
@router.post(
    "/{task_id}/notes",
    summary="Add Note",
    responses={**_NOT_FOUND, **_BAD_REQUEST},
)
def add_task_note(task_id: int, payload: NoteCreate, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    return _single(service, service.add_note(task_id, payload.content), "Note added")


# PUBLIC_INTERFACE
@router.delete("/{task_id}", summary="Delete Task", responses=_NOT_FOUND)
def delete_task(task_id: int, service: TaskService = Depends(get_task_service)) -> Dict[str, Any]:
    service.delete(task_id)
    return success_envelope(message="Task deleted")
