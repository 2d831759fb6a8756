from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from taskboard.errors import PersistenceError
from taskboard.main import app
from taskboard.routers.tasks import get_task_service
from taskboard.service import TaskService

from .fakes import BrokenRepository

BASE = "/api/todos"


def create_todo_payload(title="Test Task", description="Do something", **extra):
    payload = {"title": title, "description": description}
    payload.update(extra)
    return payload


def assert_todo_shape(todo: dict):
    # Basic structure validation
    for key in ["id", "title", "completed", "status", "progress", "priority", "createdAt", "updatedAt"]:
        assert key in todo
    # Computed attributes are always present
    for key in ["isOverdue", "daysUntilDue", "isDueSoon", "completionRate"]:
        assert key in todo
    assert isinstance(todo["id"], int)
    assert isinstance(todo["tags"], list)
    assert isinstance(todo["repeat"], dict)
    # Timestamps are ISO8601 strings parseable by datetime.fromisoformat
    datetime.fromisoformat(todo["createdAt"])
    datetime.fromisoformat(todo["updatedAt"])
    if todo["dueDate"] is not None:
        datetime.fromisoformat(todo["dueDate"])


def create(client, **payload):
    res = client.post(f"{BASE}/", json=create_todo_payload(**payload))
    assert res.status_code == 201, res.text
    return res.json()["data"]


class TestHealth:
    def test_health_check(self, client):
        res = client.get("/")
        assert res.status_code == 200
        data = res.json()
        assert data["message"] == "Healthy"
        assert data["backend"] in ("memory", "sqlite")

    def test_security_headers(self, client):
        res = client.get("/")
        assert res.headers["X-Content-Type-Options"] == "nosniff"
        assert res.headers["X-Frame-Options"] == "DENY"

    def test_cors_exposes_no_extra_headers(self, client):
        res = client.get(f"{BASE}/", headers={"Origin": "http://example.com"})
        assert res.headers["access-control-allow-origin"] in ("*", "http://example.com")
        assert "access-control-expose-headers" not in res.headers


class TestTodosCRUD:
    def test_create_todo(self, client):
        res = client.post(
            f"{BASE}/",
            json=create_todo_payload(title="Pay bills", dueDate="2030-06-20", tags=["home"], progress=20),
        )
        assert res.status_code == 201
        body = res.json()
        assert body["success"] is True
        assert body["message"] == "Task created"
        todo = body["data"]
        assert_todo_shape(todo)
        assert todo["title"] == "Pay bills"
        assert todo["status"] == "in_progress"
        # Due date should be promoted to midnight
        assert todo["dueDate"].startswith("2030-06-20T00:00")
        assert todo["daysUntilDue"] == 8
        assert todo["completionRate"] == 20

    def test_create_completed_via_progress(self, client):
        todo = create(client, title="A", progress=100)
        assert todo["completed"] is True
        assert todo["status"] == "completed"
        assert todo["completedAt"] is not None

    def test_create_validation_error(self, client):
        res = client.post(f"{BASE}/", json={"title": "  ", "priority": "bogus"})
        assert res.status_code == 400
        body = res.json()
        assert body["success"] is False
        assert {e["field"] for e in body["errors"]} == {"title", "priority"}

    def test_malformed_body_uses_error_envelope(self, client):
        res = client.post(f"{BASE}/", json={"title": "x", "progress": "lots"})
        assert res.status_code == 400
        body = res.json()
        assert body["success"] is False
        assert body["errors"][0]["field"] == "progress"

    def test_get_todo_and_not_found(self, client):
        tid = create(client, title="Read book")["id"]

        res_get = client.get(f"{BASE}/{tid}")
        assert res_get.status_code == 200
        assert res_get.json()["data"]["title"] == "Read book"

        res_404 = client.get(f"{BASE}/999999")
        assert res_404.status_code == 404
        assert res_404.json() == {"success": False, "message": "Task not found"}

    def test_put_partial_update(self, client):
        tid = create(client, title="Partial", description="X")["id"]

        res_put = client.put(f"{BASE}/{tid}", json={"title": "Partial Updated", "completed": True})
        assert res_put.status_code == 200
        updated = res_put.json()["data"]
        assert updated["title"] == "Partial Updated"
        assert updated["completed"] is True
        assert updated["progress"] == 100
        # description should remain unchanged
        assert updated["description"] == "X"

        res_nf = client.put(f"{BASE}/424242", json={"title": "Nope"})
        assert res_nf.status_code == 404

    def test_put_rejects_out_of_range_progress(self, client):
        tid = create(client, title="Strict")["id"]
        res = client.put(f"{BASE}/{tid}", json={"progress": 150})
        assert res.status_code == 400
        assert client.get(f"{BASE}/{tid}").json()["data"]["progress"] == 0

    def test_delete_todo(self, client):
        tid = create(client, title="ToDelete")["id"]

        res_del = client.delete(f"{BASE}/{tid}")
        assert res_del.status_code == 200
        assert res_del.json() == {"success": True, "message": "Task deleted"}

        assert client.get(f"{BASE}/{tid}").status_code == 404
        assert client.delete(f"{BASE}/{tid}").status_code == 404


class TestStateEndpoints:
    def test_toggle(self, client):
        tid = create(client, title="Toggle")["id"]
        res = client.patch(f"{BASE}/{tid}/toggle")
        assert res.status_code == 200
        assert res.json()["message"] == "Task completed"
        assert res.json()["data"]["status"] == "completed"
        res = client.patch(f"{BASE}/{tid}/toggle")
        assert res.json()["message"] == "Task reopened"
        assert res.json()["data"]["status"] == "pending"

    def test_progress_is_clamped(self, client):
        tid = create(client, title="Clamp")["id"]
        res = client.patch(f"{BASE}/{tid}/progress", json={"progress": 250})
        assert res.status_code == 200
        todo = res.json()["data"]
        assert todo["progress"] == 100
        assert todo["completed"] is True

    def test_progress_requires_value(self, client):
        tid = create(client, title="Missing")["id"]
        assert client.patch(f"{BASE}/{tid}/progress", json={}).status_code == 400

    def test_complete(self, client):
        tid = create(client, title="Ship", progress=10)["id"]
        todo = client.patch(f"{BASE}/{tid}/complete").json()["data"]
        assert (todo["completed"], todo["status"], todo["progress"]) == (True, "completed", 100)
        assert client.patch(f"{BASE}/777/complete").status_code == 404

    def test_notes(self, client):
        tid = create(client, title="Notes")["id"]
        res = client.post(f"{BASE}/{tid}/notes", json={"content": " remember "})
        assert res.status_code == 200
        notes = res.json()["data"]["notes"]
        assert [n["content"] for n in notes] == ["remember"]
        assert "createdAt" in notes[0]
        assert client.post(f"{BASE}/{tid}/notes", json={"content": ""}).status_code == 400


class TestCreationShortcuts:
    def test_quick(self, client):
        res = client.post(f"{BASE}/quick", json={"title": "Call mom"})
        assert res.status_code == 201
        assert res.json()["data"]["priority"] == "medium"

    def test_template(self, client):
        res = client.post(f"{BASE}/template/urgent", json={"customizations": {"title": "Fix outage"}})
        assert res.status_code == 201
        todo = res.json()["data"]
        assert todo["title"] == "Fix outage"
        assert (todo["priority"], todo["category"], todo["tags"]) == ("urgent", "긴급", ["긴급"])

    def test_template_without_body(self, client):
        res = client.post(f"{BASE}/template/work")
        assert res.status_code == 201
        assert res.json()["data"]["title"] == "업무 작업"

    def test_unknown_template(self, client):
        res = client.post(f"{BASE}/template/vacation")
        assert res.status_code == 400
        assert res.json()["availableTemplates"] == ["work", "personal", "urgent", "study"]

    def test_bulk(self, client):
        res = client.post(f"{BASE}/bulk", json={"todos": [{"title": "one"}, {"title": ""}, {"title": "three"}]})
        assert res.status_code == 201
        body = res.json()
        assert [t["title"] for t in body["data"]] == ["one", "three"]
        assert body["errors"] == [
            {"index": 1, "error": "title is required", "errors": [{"field": "title", "message": "title is required"}]}
        ]
        assert body["summary"] == {"total": 3, "created": 2, "failed": 1}

    def test_bulk_rejects_empty_and_oversized(self, client):
        assert client.post(f"{BASE}/bulk", json={"todos": []}).status_code == 400
        too_many = {"todos": [{"title": f"t{i}"} for i in range(51)]}
        assert client.post(f"{BASE}/bulk", json=too_many).status_code == 400

    def test_duplicate(self, client):
        tid = create(client, title="Report", progress=50)["id"]
        res = client.post(f"{BASE}/{tid}/duplicate")
        assert res.status_code == 201
        copy = res.json()["data"]
        assert copy["title"] == "Report (copy)"
        assert (copy["status"], copy["progress"], copy["notes"]) == ("pending", 0, [])

        res = client.post(f"{BASE}/{tid}/duplicate", json={"modifications": {"title": "Report v2"}})
        assert res.json()["data"]["title"] == "Report v2"
        assert client.post(f"{BASE}/999/duplicate").status_code == 404


class TestQueries:
    def test_list_pagination(self, client, clock):
        for i in range(5):
            create(client, title=f"T{i}")
            clock.advance(minutes=1)
        res = client.get(f"{BASE}/", params={"limit": 2, "page": 2})
        assert res.status_code == 200
        body = res.json()
        assert body["success"] is True
        assert body["count"] == 2
        assert body["totalCount"] == 5
        assert body["page"] == 2
        assert body["totalPages"] == 3
        assert [t["title"] for t in body["data"]] == ["T2", "T1"]

    def test_list_filters_and_sort(self, client, clock):
        create(client, title="low", priority="low", tags=["a"])
        create(client, title="urgent", priority="urgent", tags=["b"])
        create(client, title="high", priority="high", tags=["c"])
        res = client.get(f"{BASE}/", params={"sortBy": "priority", "sortOrder": "desc"})
        assert [t["title"] for t in res.json()["data"]] == ["urgent", "high", "low"]
        res = client.get(f"{BASE}/", params=[("tags", "a"), ("tags", "c"), ("sortBy", "title"), ("sortOrder", "asc")])
        assert [t["title"] for t in res.json()["data"]] == ["high", "low"]
        res = client.get(f"{BASE}/", params={"search": "URG"})
        assert [t["title"] for t in res.json()["data"]] == ["urgent"]

    def test_list_rejects_bad_parameters(self, client):
        assert client.get(f"{BASE}/", params={"page": 0}).status_code == 400
        res = client.get(f"{BASE}/", params={"page": 10**19})
        assert res.status_code == 400
        assert res.json()["errors"] == [{"field": "page", "message": "page is out of range"}]
        assert client.get(f"{BASE}/", params={"sortOrder": "up"}).status_code == 400
        assert client.get(f"{BASE}/", params={"dueDate": "someday"}).status_code == 400

    def test_statistics(self, client):
        create(client, title="done", completed=True)
        create(client, title="open")
        res = client.get(f"{BASE}/statistics")
        assert res.status_code == 200
        assert res.json()["data"] == {
            "total": 2,
            "completed": 1,
            "pending": 1,
            "inProgress": 0,
            "overdue": 0,
            "completionRate": 50,
            "overdueRate": 0,
            "active": 1,
        }

    def test_search(self, client):
        create(client, title="Alpha", tags=["deploy"])
        create(client, title="Beta", tags=["alpha-team"])
        res = client.get(f"{BASE}/search", params={"q": "alpha", "type": "tags"})
        assert res.status_code == 200
        body = res.json()
        assert (body["query"], body["type"], body["count"]) == ("alpha", "tags", 1)
        assert body["data"][0]["title"] == "Beta"
        assert client.get(f"{BASE}/search", params={"q": " "}).status_code == 400
        bad_type = client.get(f"{BASE}/search", params={"q": "x", "type": "notes"})
        assert bad_type.status_code == 400
        assert "validTypes" in bad_type.json()

    def test_today_and_week(self, client):
        create(client, title="today", dueDate="2030-06-12T18:00:00")
        create(client, title="saturday", dueDate="2030-06-15T09:00:00")
        today = client.get(f"{BASE}/today").json()
        assert today["date"] == "2030-06-12"
        assert [t["title"] for t in today["data"]] == ["today"]
        week = client.get(f"{BASE}/week").json()
        assert (week["weekStart"], week["weekEnd"]) == ("2030-06-09", "2030-06-15")
        assert [t["title"] for t in week["data"]] == ["today", "saturday"]

    def test_overdue_and_due_soon(self, client, clock):
        create(client, title="soon", dueDate="2030-06-13T09:00:00")
        create(client, title="later", dueDate="2030-06-30T09:00:00")
        soon = client.get(f"{BASE}/due-soon").json()
        assert soon["days"] == 3
        assert [t["title"] for t in soon["data"]] == ["soon"]
        assert soon["data"][0]["isDueSoon"] is True

        clock.advance(days=2)
        overdue = client.get(f"{BASE}/overdue").json()
        assert [t["title"] for t in overdue["data"]] == ["soon"]
        assert overdue["data"][0]["isOverdue"] is True
        assert client.get(f"{BASE}/due-soon", params={"days": -1}).status_code == 400
        assert client.get(f"{BASE}/due-soon", params={"days": 3650}).status_code == 200
        res = client.get(f"{BASE}/due-soon", params={"days": 3000000})
        assert res.status_code == 400
        assert res.json()["errors"][0]["field"] == "days"

    def test_single_field_finders(self, client):
        create(client, title="a", category="work", priority="high", tags=["x"])
        create(client, title="b", category="home", progress=10)

        by_category = client.get(f"{BASE}/category/work").json()
        assert by_category["category"] == "work"
        assert [t["title"] for t in by_category["data"]] == ["a"]
        assert [t["title"] for t in client.get(f"{BASE}/priority/high").json()["data"]] == ["a"]
        assert [t["title"] for t in client.get(f"{BASE}/status/in_progress").json()["data"]] == ["b"]
        assert [t["title"] for t in client.get(f"{BASE}/tag/x").json()["data"]] == ["a"]

    def test_finders_reject_unknown_enum_values(self, client):
        res = client.get(f"{BASE}/priority/bogus")
        assert res.status_code == 400
        assert res.json()["validPriorities"] == ["low", "medium", "high", "urgent"]
        res = client.get(f"{BASE}/status/done")
        assert res.status_code == 400
        assert "validStatuses" in res.json()


class TestServerErrors:
    @pytest.fixture()
    def failing_client(self, clock):
        def use(error):
            svc = TaskService(BrokenRepository(error), clock=clock)
            app.dependency_overrides[get_task_service] = lambda: svc
            return TestClient(app, raise_server_exceptions=False)

        try:
            yield use
        finally:
            app.dependency_overrides.clear()

    def test_storage_failure_maps_to_500(self, failing_client):
        client = failing_client(PersistenceError("disk I/O error"))
        res = client.get(f"{BASE}/")
        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "Storage failure", "error": "disk I/O error"}

    def test_storage_failure_on_write(self, failing_client):
        client = failing_client(PersistenceError("database is locked"))
        res = client.post(f"{BASE}/", json=create_todo_payload())
        assert res.status_code == 500
        assert res.json()["error"] == "database is locked"

    def test_unexpected_error_hides_details(self, failing_client):
        client = failing_client(RuntimeError("secret internals"))
        res = client.get(f"{BASE}/1")
        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "Internal server error", "error": "Internal Server Error"}
