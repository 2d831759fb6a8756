from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Tuple

from .errors import PersistenceError
from .models import PRIORITIES, TaskEntity
from .query import ListQuery, TaskFilter
from .repositories import Repository, StatusCounts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Cols:
    table: str = "tasks"
    id: str = "id"
    title: str = "title"
    description: str = "description"
    completed: str = "completed"
    priority: str = "priority"
    category: str = "category"
    due_date: str = "due_date"
    tags: str = "tags"
    status: str = "status"
    progress: str = "progress"
    repeat: str = "repeat"
    notes: str = "notes"
    completed_at: str = "completed_at"
    created_at: str = "created_at"
    updated_at: str = "updated_at"


_COLS = _Cols()

# Columns written on insert/replace, in statement order.
_DATA_COLUMNS = (
    _COLS.title,
    _COLS.description,
    _COLS.completed,
    _COLS.priority,
    _COLS.category,
    _COLS.due_date,
    _COLS.tags,
    _COLS.status,
    _COLS.progress,
    _COLS.repeat,
    _COLS.notes,
    _COLS.completed_at,
    _COLS.created_at,
    _COLS.updated_at,
)

_PRIORITY_RANK_SQL = (
    "CASE {col} " + " ".join(f"WHEN '{p}' THEN {i}" for i, p in enumerate(PRIORITIES)) + " ELSE -1 END"
).format(col=_COLS.priority)

_TEXT_SEARCH_COLUMNS = {"title": _COLS.title, "description": _COLS.description, "category": _COLS.category}


def _fmt_dt(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO text so that string comparison in SQL orders like datetimes.
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _contains_ci(haystack: Optional[str], needle: Optional[str]) -> int:
    if haystack is None or needle is None:
        return 0
    return 1 if needle.lower() in haystack.lower() else 0


class SQLiteRepository(Repository):
    """
    SQLite repository implementing the Repository interface. Tags, notes and the
    repeat rule are stored as JSON text; datetimes as ISO strings.

    Each operation opens its own connection.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._init_db()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open task database: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_function("contains_ci", 2, _contains_ci, deterministic=True)
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.exception("SQLite operation failed on %s", self._db_path)
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_COLS.table} (
                    {_COLS.id} INTEGER PRIMARY KEY AUTOINCREMENT,
                    {_COLS.title} TEXT NOT NULL,
                    {_COLS.description} TEXT NOT NULL DEFAULT '',
                    {_COLS.completed} INTEGER NOT NULL DEFAULT 0,
                    {_COLS.priority} TEXT NOT NULL DEFAULT 'medium',
                    {_COLS.category} TEXT NOT NULL DEFAULT '',
                    {_COLS.due_date} TEXT NULL,
                    {_COLS.tags} TEXT NOT NULL DEFAULT '[]',
                    {_COLS.status} TEXT NOT NULL DEFAULT 'pending',
                    {_COLS.progress} INTEGER NOT NULL DEFAULT 0,
                    {_COLS.repeat} TEXT NOT NULL DEFAULT '{{}}',
                    {_COLS.notes} TEXT NOT NULL DEFAULT '[]',
                    {_COLS.completed_at} TEXT NULL,
                    {_COLS.created_at} TEXT NOT NULL,
                    {_COLS.updated_at} TEXT NOT NULL
                )
                """
            )
            for col in (_COLS.status, _COLS.priority, _COLS.category, _COLS.due_date, _COLS.created_at):
                conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_{col} ON {_COLS.table}({col})")

    def _row_to_entity(self, row: sqlite3.Row) -> TaskEntity:
        repeat = json.loads(row[_COLS.repeat] or "{}")
        notes = json.loads(row[_COLS.notes] or "[]")
        return {
            "id": int(row[_COLS.id]),
            "title": str(row[_COLS.title]),
            "description": row[_COLS.description] or "",
            "completed": bool(row[_COLS.completed]),
            "priority": row[_COLS.priority],
            "category": row[_COLS.category] or "",
            "due_date": _parse_dt(row[_COLS.due_date]),
            "tags": json.loads(row[_COLS.tags] or "[]"),
            "status": row[_COLS.status],
            "progress": int(row[_COLS.progress]),
            "repeat": {
                "type": repeat.get("type", "none"),
                "interval": repeat.get("interval", 1),
                "end_date": _parse_dt(repeat.get("end_date")),
            },
            "notes": [{"content": n["content"], "created_at": _parse_dt(n["created_at"])} for n in notes],
            "completed_at": _parse_dt(row[_COLS.completed_at]),
            "created_at": _parse_dt(row[_COLS.created_at]),  # type: ignore
            "updated_at": _parse_dt(row[_COLS.updated_at]),  # type: ignore
        }  # type: ignore

    def _entity_params(self, entity: Dict[str, Any]) -> Tuple[Any, ...]:
        repeat = entity["repeat"]
        return (
            entity["title"],
            entity["description"],
            1 if entity["completed"] else 0,
            entity["priority"],
            entity["category"],
            _fmt_dt(entity["due_date"]),
            json.dumps(entity["tags"], ensure_ascii=False),
            entity["status"],
            entity["progress"],
            json.dumps(
                {"type": repeat["type"], "interval": repeat["interval"], "end_date": _fmt_dt(repeat["end_date"])}
            ),
            json.dumps(
                [{"content": n["content"], "created_at": _fmt_dt(n["created_at"])} for n in entity["notes"]],
                ensure_ascii=False,
            ),
            _fmt_dt(entity["completed_at"]),
            _fmt_dt(entity["created_at"]),
            _fmt_dt(entity["updated_at"]),
        )

    def _select_by_id(self, conn: sqlite3.Connection, task_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(f"SELECT * FROM {_COLS.table} WHERE {_COLS.id} = ?", (task_id,)).fetchone()

    def insert(self, data: Dict[str, Any]) -> TaskEntity:
        placeholders = ", ".join("?" for _ in _DATA_COLUMNS)
        with self._conn() as conn:
            cur = conn.execute(
                f"INSERT INTO {_COLS.table} ({', '.join(_DATA_COLUMNS)}) VALUES ({placeholders})",
                self._entity_params(data),
            )
            row = self._select_by_id(conn, int(cur.lastrowid))
            assert row is not None
            return self._row_to_entity(row)

    def get(self, task_id: int) -> Optional[TaskEntity]:
        with self._conn() as conn:
            row = self._select_by_id(conn, task_id)
            return self._row_to_entity(row) if row else None

    def replace(self, task_id: int, entity: TaskEntity) -> Optional[TaskEntity]:
        assignments = ", ".join(f"{col} = ?" for col in _DATA_COLUMNS)
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE {_COLS.table} SET {assignments} WHERE {_COLS.id} = ?",
                (*self._entity_params(dict(entity)), task_id),
            )
            if cur.rowcount == 0:
                return None
            row = self._select_by_id(conn, task_id)
            assert row is not None
            return self._row_to_entity(row)

    def delete(self, task_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute(f"DELETE FROM {_COLS.table} WHERE {_COLS.id} = ?", (task_id,))
            return cur.rowcount > 0

    def _where(self, f: TaskFilter) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []

        if f.completed is not None:
            clauses.append(f"{_COLS.completed} = ?")
            params.append(1 if f.completed else 0)

        for col, value in ((_COLS.priority, f.priority), (_COLS.category, f.category), (_COLS.status, f.status)):
            if value is not None:
                clauses.append(f"{col} = ?")
                params.append(value)

        if f.tags:
            marks = ", ".join("?" for _ in f.tags)
            clauses.append(f"EXISTS (SELECT 1 FROM json_each({_COLS.tags}) WHERE json_each.value IN ({marks}))")
            params.extend(f.tags)

        if f.has_due_bounds:
            clauses.append(f"{_COLS.due_date} IS NOT NULL")
            for op, bound in ((">=", f.due_gte), ("<", f.due_lt), ("<=", f.due_lte)):
                if bound is not None:
                    clauses.append(f"{_COLS.due_date} {op} ?")
                    params.append(_fmt_dt(bound))

        if f.progress_min is not None:
            clauses.append(f"{_COLS.progress} >= ?")
            params.append(f.progress_min)
        if f.progress_max is not None:
            clauses.append(f"{_COLS.progress} <= ?")
            params.append(f.progress_max)

        if f.search:
            ors: List[str] = []
            for name in f.search_fields:
                if name == "tags":
                    ors.append(
                        f"EXISTS (SELECT 1 FROM json_each({_COLS.tags}) WHERE contains_ci(json_each.value, ?))"
                    )
                else:
                    ors.append(f"contains_ci({_TEXT_SEARCH_COLUMNS[name]}, ?)")
                params.append(f.search)
            clauses.append(f"({' OR '.join(ors)})")

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where_sql, params

    def find(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        q = query or ListQuery()
        where_sql, params = self._where(q.filter)

        if q.sort_field is None:
            order_sql = f"ORDER BY {_COLS.id} ASC"
        else:
            expr = _PRIORITY_RANK_SQL if q.sort_field == _COLS.priority else getattr(_COLS, q.sort_field)
            order_sql = f"ORDER BY {expr} {'DESC' if q.descending else 'ASC'}, {_COLS.id} ASC"

        page_sql = "LIMIT ? OFFSET ?"
        page_params = [-1 if q.limit is None else max(q.limit, 0), max(q.offset, 0)]

        with self._conn() as conn:
            # total count
            count_row = conn.execute(
                f"SELECT COUNT(*) as cnt FROM {_COLS.table} {where_sql}", params
            ).fetchone()
            total = int(count_row["cnt"]) if count_row else 0

            rows = conn.execute(
                f"""
                SELECT * FROM {_COLS.table}
                {where_sql}
                {order_sql}
                {page_sql}
                """,
                [*params, *page_params],
            ).fetchall()
            return [self._row_to_entity(r) for r in rows], total

    def count(self, task_filter: Optional[TaskFilter] = None) -> int:
        where_sql, params = self._where(task_filter or TaskFilter())
        with self._conn() as conn:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {_COLS.table} {where_sql}", params).fetchone()
            return int(row["cnt"]) if row else 0

    def aggregate_statistics(self, now: datetime) -> StatusCounts:
        with self._conn() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN {_COLS.completed} = 1 THEN 1 ELSE 0 END), 0) AS completed,
                    COALESCE(SUM(CASE WHEN {_COLS.status} = 'pending' THEN 1 ELSE 0 END), 0) AS pending,
                    COALESCE(SUM(CASE WHEN {_COLS.status} = 'in_progress' THEN 1 ELSE 0 END), 0) AS in_progress,
                    COALESCE(SUM(CASE WHEN {_COLS.due_date} IS NOT NULL AND {_COLS.due_date} < ?
                                      AND {_COLS.completed} = 0 THEN 1 ELSE 0 END), 0) AS overdue
                FROM {_COLS.table}
                """,
                (_fmt_dt(now),),
            ).fetchone()
        return StatusCounts(
            total=int(row["total"]),
            completed=int(row["completed"]),
            pending=int(row["pending"]),
            in_progress=int(row["in_progress"]),
            overdue=int(row["overdue"]),
        )
