# tests/conftest.py

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from taskboard.db import SQLiteRepository  # noqa: E402
from taskboard.main import app  # noqa: E402
from taskboard.repositories import InMemoryRepository, Repository  # noqa: E402
from taskboard.routers.tasks import get_task_service  # noqa: E402
from taskboard.service import TaskService  # noqa: E402

from .fakes import FakeClock  # noqa: E402

# A Wednesday; its week runs Sunday 2030-06-09 through Saturday 2030-06-15.
NOW = datetime(2030, 6, 12, 10, 0, 0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> Repository:
    """Every service test runs against both storage backends."""
    if request.param == "sqlite":
        return SQLiteRepository(str(tmp_path / "tasks.db"))
    return InMemoryRepository()


@pytest.fixture()
def service(repository: Repository, clock: FakeClock) -> TaskService:
    return TaskService(repository, clock=clock)


@pytest.fixture()
def client(clock: FakeClock) -> Iterator[TestClient]:
    """API client backed by a fresh in-memory store and the fake clock."""
    svc = TaskService(InMemoryRepository(), clock=clock)
    app.dependency_overrides[get_task_service] = lambda: svc
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
