"""Tests for the FastAPI API routes."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from browsercron.api.routes import _background_runs, run_task_stream, set_orchestrator
from browsercron.errors import InvalidScheduleError, LimitExceededError, TaskNotFoundError
from browsercron.modules.browser.models import ThoughtStep
from browsercron.modules.scheduler.service import DispatchReport, DueSelectionStrategy, TaskOutcome
from browsercron.modules.usage.service import LimitCheck

AUTH = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def mock_orchestrator(settings):
    """Create a mock orchestrator with all required services."""
    orch = MagicMock()
    orch.settings = settings

    orch.dispatcher.strategy = DueSelectionStrategy.NEXT_RUN_AT
    orch.dispatcher.run_due_tasks = AsyncMock(return_value=DispatchReport(
        processed=2,
        results=[
            TaskOutcome(task_id="t1", task_run_id="r1", success=True),
            TaskOutcome(task_id="t2", task_run_id=None, success=False, error="limit"),
        ],
    ))
    orch.dispatcher.notify_run = AsyncMock()
    orch.notifications.pending = 0

    task = MagicMock()
    task.to_dict.return_value = {"id": "t1", "name": "Prices"}
    orch.tasks.list_tasks = AsyncMock(return_value=[{"id": "t1", "run_count": 3}])
    orch.tasks.create_task = AsyncMock(return_value=task)
    orch.tasks.update_task = AsyncMock(return_value=task)
    orch.tasks.get_task = AsyncMock(return_value={"id": "t1", "runs": []})
    orch.tasks.delete_task = AsyncMock()
    return orch


@pytest.fixture
def client(mock_orchestrator):
    """Create a test client with mock orchestrator."""
    set_orchestrator(mock_orchestrator)
    from browsercron.main import app
    yield TestClient(app)
    set_orchestrator(None)


def sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["provider_configured"] is True
        assert data["due_selection_strategy"] == "next_run_at"

    def test_uninitialized_returns_503(self, client) -> None:
        set_orchestrator(None)
        assert client.get("/api/health").status_code == 503


class TestTaskRoutes:
    """Tests for task CRUD."""

    def test_list(self, client, mock_orchestrator) -> None:
        response = client.get("/api/tasks", params={"user_id": "u1"})
        assert response.json() == {"tasks": [{"id": "t1", "run_count": 3}], "total": 1}
        mock_orchestrator.tasks.list_tasks.assert_awaited_once_with(user_id="u1")

    def test_create(self, client) -> None:
        response = client.post("/api/tasks", json={
            "user_id": "u1", "name": "Prices", "description": "Read prices", "cron_schedule": "0 9 * * *",
        })
        assert response.status_code == 201
        assert response.json()["id"] == "t1"

    def test_create_over_limit(self, client, mock_orchestrator) -> None:
        mock_orchestrator.tasks.create_task.side_effect = LimitExceededError("tasks", 2, 2)
        response = client.post("/api/tasks", json={"user_id": "u1", "name": "x", "description": "y"})
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "Task limit reached"
        assert (body["current"], body["limit"]) == (2, 2)

    def test_create_invalid_cron(self, client, mock_orchestrator) -> None:
        mock_orchestrator.tasks.create_task.side_effect = InvalidScheduleError("61 * * * *", "bad minute")
        response = client.post("/api/tasks", json={
            "user_id": "u1", "name": "x", "description": "y", "cron_schedule": "61 * * * *",
        })
        assert response.status_code == 400
        assert "Invalid cron expression" in response.json()["detail"]

    def test_update_passes_only_sent_fields(self, client, mock_orchestrator) -> None:
        response = client.put("/api/tasks/t1", json={"is_active": False})
        assert response.status_code == 200
        mock_orchestrator.tasks.update_task.assert_awaited_once_with("t1", is_active=False)

    def test_missing_task(self, client, mock_orchestrator) -> None:
        mock_orchestrator.tasks.get_task.side_effect = TaskNotFoundError("nope")
        mock_orchestrator.tasks.delete_task.side_effect = TaskNotFoundError("nope")
        assert client.get("/api/tasks/nope").status_code == 404
        assert client.delete("/api/tasks/nope").status_code == 404

    def test_delete(self, client) -> None:
        assert client.delete("/api/tasks/t1").json() == {"success": True}


class TestUserRoutes:
    def test_upsert_user(self, client, mock_orchestrator) -> None:
        user = MagicMock(id="u1", email="u1@example.com", plan="PRO", email_notifications=True)
        mock_orchestrator.store.upsert_user = AsyncMock(return_value=user)

        response = client.put("/api/users/u1", json={"email": "u1@example.com", "plan": "PRO"})

        assert response.json() == {
            "id": "u1", "email": "u1@example.com", "plan": "PRO", "email_notifications": True,
        }
        mock_orchestrator.store.upsert_user.assert_awaited_once_with(
            "u1", "u1@example.com", plan="PRO", email_notifications=None,
        )

    def test_usage(self, client, mock_orchestrator) -> None:
        mock_orchestrator.store.get_user_plan = AsyncMock(return_value="PRO")
        mock_orchestrator.usage.check_task_limit = AsyncMock(return_value=LimitCheck(True, 3, 10))
        mock_orchestrator.usage.check_run_limit = AsyncMock(return_value=LimitCheck(True, 40, 100))

        data = client.get("/api/users/u1/usage").json()
        assert data["plan"] == "Pro"
        assert data["tasks"] == {"allowed": True, "current": 3, "limit": 10}
        assert data["runs"]["current"] == 40


class TestRunDueTasks:
    """Tests for the external due-task trigger."""

    def test_requires_secret(self, client) -> None:
        assert client.post("/api/run-due-tasks").status_code == 401
        assert client.post("/api/run-due-tasks", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_bearer_secret(self, client) -> None:
        response = client.post("/api/run-due-tasks", headers=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["results"][0] == {"taskId": "t1", "taskRunId": "r1", "success": True}
        assert body["results"][1]["error"] == "limit"

    def test_vercel_cron_user_agent(self, client) -> None:
        response = client.post("/api/run-due-tasks", headers={"User-Agent": "vercel-cron/1.0"})
        assert response.status_code == 200

    def test_get_marks_source(self, client) -> None:
        response = client.get("/api/run-due-tasks", headers=AUTH)
        assert response.json()["source"] == "github-actions"
        assert client.get("/api/run-due-tasks").status_code == 401

    def test_selection_failure_is_500(self, client, mock_orchestrator) -> None:
        mock_orchestrator.dispatcher.run_due_tasks.return_value = DispatchReport(error="database is locked")
        response = client.post("/api/run-due-tasks", headers=AUTH)
        assert response.status_code == 500
        assert response.json() == {"error": "database is locked"}


class TestManualRunRoutes:
    """Tests for run-now and its streaming variant."""

    @pytest.fixture
    def manual(self):
        manual = MagicMock()
        manual.status = "success"
        manual.outcome.output = {"result": ["€89"]}
        manual.outcome.error = None
        manual.run.duration_ms = 1200
        manual.run.to_dict.return_value = {"id": "r1", "status": "success"}
        manual.to_dict.return_value = {"task_run": {"id": "r1"}, "message": "Task completed", "error": None}
        return manual

    def test_run_now(self, client, mock_orchestrator, manual) -> None:
        mock_orchestrator.dispatcher.run_task_now = AsyncMock(return_value=manual)
        response = client.post("/api/tasks/t1/run")
        assert response.status_code == 200
        assert response.json()["message"] == "Task completed"

    def test_run_now_over_limit(self, client, mock_orchestrator) -> None:
        mock_orchestrator.dispatcher.run_task_now = AsyncMock(side_effect=LimitExceededError("runs", 15, 15))
        response = client.post("/api/tasks/t1/run")
        assert response.status_code == 403
        assert response.json()["error"] == "Run limit reached"

    def test_stream_events(self, client, mock_orchestrator, manual) -> None:
        mock_orchestrator.dispatcher.prepare_manual_run = AsyncMock(return_value=(MagicMock(), "r1", None))

        async def execute(task, run_id, settings, on_step=None):
            await on_step(ThoughtStep(thought="Open the shop"))
            return manual

        mock_orchestrator.dispatcher.execute_manual_run = AsyncMock(side_effect=execute)

        response = client.post("/api/tasks/t1/run-stream")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = sse_events(response.text)
        assert [e["type"] for e in events] == ["start", "step", "complete"]
        assert events[0]["taskRunId"] == "r1"
        assert events[1]["step"]["thought"] == "Open the shop"
        assert events[2]["status"] == "success"
        assert events[2]["duration"] == 1200
        mock_orchestrator.dispatcher.notify_run.assert_awaited_once_with(manual)

    def test_stream_error_event(self, client, mock_orchestrator) -> None:
        mock_orchestrator.dispatcher.prepare_manual_run = AsyncMock(return_value=(MagicMock(), "r1", None))
        mock_orchestrator.dispatcher.execute_manual_run = AsyncMock(side_effect=RuntimeError("store offline"))

        events = sse_events(client.post("/api/tasks/t1/run-stream").text)
        assert [e["type"] for e in events] == ["start", "error"]
        assert events[1]["error"] == "store offline"
        mock_orchestrator.dispatcher.notify_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stream_notifies_after_client_disconnect(self, mock_orchestrator, manual) -> None:
        release = asyncio.Event()
        mock_orchestrator.dispatcher.prepare_manual_run = AsyncMock(return_value=(MagicMock(), "r1", None))

        async def execute(task, run_id, settings, on_step=None):
            await release.wait()
            return manual

        mock_orchestrator.dispatcher.execute_manual_run = AsyncMock(side_effect=execute)
        set_orchestrator(mock_orchestrator)
        try:
            response = await run_task_stream("t1")
            first = await response.body_iterator.__anext__()
            await response.body_iterator.aclose()

            release.set()
            await asyncio.wait_for(asyncio.gather(*list(_background_runs)), timeout=1)
        finally:
            set_orchestrator(None)

        assert sse_events(first)[0]["type"] == "start"
        mock_orchestrator.dispatcher.notify_run.assert_awaited_once_with(manual)

    def test_stream_unknown_task(self, client, mock_orchestrator) -> None:
        mock_orchestrator.dispatcher.prepare_manual_run = AsyncMock(side_effect=TaskNotFoundError("t9"))
        assert client.post("/api/tasks/t9/run-stream").status_code == 404
