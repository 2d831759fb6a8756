from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from .models import IN_PROGRESS, PENDING, TaskEntity, is_overdue
from .query import ListQuery, TaskFilter, apply_query
from .settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusCounts:
    """Raw aggregate over the whole collection."""

    total: int = 0
    completed: int = 0
    pending: int = 0
    in_progress: int = 0
    overdue: int = 0


# PUBLIC_INTERFACE
class Repository(ABC):
    """Abstract persistent collection of task records."""

    backend_name = "abstract"

    @abstractmethod
    def insert(self, data: Dict[str, Any]) -> TaskEntity:
        """Store a new record (without id) and return it with its generated id."""

    @abstractmethod
    def get(self, task_id: int) -> Optional[TaskEntity]:
        """Return a TaskEntity by id, or None if not found."""

    @abstractmethod
    def replace(self, task_id: int, entity: TaskEntity) -> Optional[TaskEntity]:
        """Overwrite an existing record in one write. Return it, or None if not found."""

    @abstractmethod
    def delete(self, task_id: int) -> bool:
        """Delete a TaskEntity by id. Return True if deleted, False if not found."""

    @abstractmethod
    def find(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        """
        Return the window of matching records and the total match count.
        - Filters as described by TaskFilter
        - Sorting by one field, ties by id ascending; no field means insertion order
        - Offset/limit windowing applied after sorting
        """

    @abstractmethod
    def count(self, task_filter: Optional[TaskFilter] = None) -> int:
        """Number of records matching the filter."""

    @abstractmethod
    def aggregate_statistics(self, now: datetime) -> StatusCounts:
        """Count totals, completion and overdue records in a single pass."""


class InMemoryRepository(Repository):
    """
    Thread-safe in-memory repository suitable for testing and default runtime.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[int, TaskEntity] = {}
        self._next_id = 1

    def _allocate_id(self) -> int:
        with self._lock:
            i = self._next_id
            self._next_id += 1
            return i

    def insert(self, data: Dict[str, Any]) -> TaskEntity:
        entity: TaskEntity = copy.deepcopy(data)  # type: ignore[assignment]
        with self._lock:
            entity["id"] = self._allocate_id()
            self._items[entity["id"]] = entity
        return copy.deepcopy(entity)

    def get(self, task_id: int) -> Optional[TaskEntity]:
        with self._lock:
            item = self._items.get(task_id)
            return None if item is None else copy.deepcopy(item)

    def replace(self, task_id: int, entity: TaskEntity) -> Optional[TaskEntity]:
        with self._lock:
            if task_id not in self._items:
                return None
            stored: TaskEntity = copy.deepcopy(entity)
            stored["id"] = task_id
            self._items[task_id] = stored
            return copy.deepcopy(stored)

    def delete(self, task_id: int) -> bool:
        with self._lock:
            return self._items.pop(task_id, None) is not None

    def find(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        q = query or ListQuery()
        with self._lock:
            page, total = apply_query(list(self._items.values()), q)
            # Return copies to avoid external mutation
            return [copy.deepcopy(t) for t in page], total

    def count(self, task_filter: Optional[TaskFilter] = None) -> int:
        f = task_filter or TaskFilter()
        with self._lock:
            return sum(1 for t in self._items.values() if f.matches(t))

    def aggregate_statistics(self, now: datetime) -> StatusCounts:
        total = completed = pending = in_progress = overdue = 0
        with self._lock:
            for task in self._items.values():
                total += 1
                completed += 1 if task["completed"] else 0
                pending += 1 if task["status"] == PENDING else 0
                in_progress += 1 if task["status"] == IN_PROGRESS else 0
                overdue += 1 if is_overdue(task, now) else 0
        return StatusCounts(total, completed, pending, in_progress, overdue)


# PUBLIC_INTERFACE
@lru_cache(maxsize=1)
def get_repository() -> Repository:
    """
    Return the process-wide repository configured by settings.
    - memory: InMemoryRepository
    - sqlite: SQLiteRepository at SQLITE_DB_PATH
    """
    settings = get_settings()
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteRepository

        logger.info("Using SQLite repository at %s", settings.sqlite_db_path)
        return SQLiteRepository(settings.sqlite_db_path)
    logger.info("Using in-memory repository")
    return InMemoryRepository()


