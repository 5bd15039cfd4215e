"""Tests for the HTTP surface: jobs router, health and request IDs."""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_job_controller
from app.main import app
from app.models import JobStatus

client = TestClient(app)


class FakeController:
    def __init__(self) -> None:
        self.execute = AsyncMock()


@pytest.fixture
def controller(monkeypatch):
    """Swap the job controller dependency and reset the in-flight set."""
    monkeypatch.setattr("app.api.routers.jobs._running", set())
    fake = FakeController()
    app.dependency_overrides[get_job_controller] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_job_controller, None)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_health_returns_ok():
    """GET /health reports the memory store without touching a database."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store": "memory"}


def test_health_version_returns_version():
    response = client.get("/health/version")
    assert response.status_code == 200
    assert response.json()["version"] == "0.1.0"


def test_request_id_header_generated():
    """Every response gets an X-Request-ID header."""
    response = client.get("/health")
    uuid.UUID(response.headers["X-Request-ID"])


def test_request_id_header_echoed():
    """Client-supplied X-Request-ID is echoed back."""
    response = client.get("/health", headers={"X-Request-ID": "trace-42"})
    assert response.headers["X-Request-ID"] == "trace-42"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def test_create_job_returns_pending_job():
    response = client.post("/jobs", json={"user_id": "user-1", "prompt": "a todo list"})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["kind"] == "initial"
    assert body["prompt"] == "a todo list"
    assert client.get(f"/jobs/{body['id']}").json()["user_id"] == "user-1"


def test_create_follow_up_job_keeps_project():
    response = client.post("/jobs", json={
        "user_id": "user-1",
        "prompt": "make it blue",
        "kind": "follow_up",
        "project_id": "proj-1",
        "context": {"history": [{"role": "user", "content": "a todo list"}]},
    })

    body = response.json()
    assert body["kind"] == "follow_up"
    assert body["project_id"] == "proj-1"
    assert body["context"]["history"][0]["content"] == "a todo list"


def test_create_job_rejects_empty_prompt():
    response = client.post("/jobs", json={"user_id": "user-1", "prompt": ""})

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Validation failed"
    assert isinstance(body["detail"], list)
    assert body["request_id"]


def test_get_job():
    job_id = client.post("/jobs", json={"user_id": "user-1", "prompt": "x"}).json()["id"]

    response = client.get(f"/jobs/{job_id}")

    assert response.status_code == 200
    assert response.json()["id"] == job_id


def test_get_unknown_job_is_404():
    response = client.get("/jobs/nope", headers={"X-Request-ID": "req-1"})

    assert response.status_code == 404
    assert response.json() == {
        "error": "JobNotFoundError",
        "detail": "Generation job nope not found",
        "request_id": "req-1",
    }


def test_execute_schedules_controller(controller):
    job_id = client.post("/jobs", json={"user_id": "user-1", "prompt": "x"}).json()["id"]

    response = client.post(f"/jobs/{job_id}/execute")

    assert response.status_code == 202
    assert response.json() == {"job_id": job_id, "status": "pending", "scheduled": True}
    controller.execute.assert_awaited_once_with(job_id)


def test_execute_terminal_job_is_not_scheduled(store, make_job, controller):
    job = make_job(status=JobStatus.FAILED)
    store._put(job)

    response = client.post(f"/jobs/{job.id}/execute")

    assert response.status_code == 202
    assert response.json()["scheduled"] is False
    controller.execute.assert_not_awaited()


def test_execute_running_job_conflicts(store, make_job, controller, monkeypatch):
    job = make_job()
    store._put(job)
    monkeypatch.setattr("app.api.routers.jobs._running", {job.id})

    response = client.post(f"/jobs/{job.id}/execute")

    assert response.status_code == 409
    assert response.json()["error"] == "ConflictError"
    controller.execute.assert_not_awaited()


def test_execute_unknown_job_is_404(controller):
    response = client.post("/jobs/nope/execute")
    assert response.status_code == 404
