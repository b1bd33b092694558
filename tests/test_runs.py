"""Tests for the run lifecycle recorder."""

from __future__ import annotations

import datetime as dt

import pytest
import pytest_asyncio

from browsercron.errors import RunAlreadyClosedError
from browsercron.modules.browser.models import ExecutionResult, ExecutionStatus
from browsercron.modules.runs.models import RunOutcome, RunStatus
from browsercron.modules.runs.service import RunRecorder

NOW = dt.datetime(2025, 3, 14, 12, 0, tzinfo=dt.UTC)


@pytest_asyncio.fixture
async def task(store):
    await store.upsert_user("u1", "u1@example.com")
    return await store.create_task(user_id="u1", name="Prices", description="Read prices")


class TestRunOutcome:
    """Tests for outcome construction."""

    def test_from_completed_execution_with_verdict(self) -> None:
        result = ExecutionResult(
            id="bu-1",
            status=ExecutionStatus.COMPLETED,
            result={"result": ["€10"], "shouldNotify": True, "notificationReason": "Price dropped"},
        )
        outcome = RunOutcome.from_execution(result, logs=["🚀 Starting task..."])
        assert outcome.status == RunStatus.SUCCESS
        assert outcome.should_notify is True
        assert outcome.notification_reason == "Price dropped"
        assert outcome.logs == ["🚀 Starting task..."]

    def test_from_failed_execution(self) -> None:
        outcome = RunOutcome.from_execution(ExecutionResult.failed("Task t1 was stopped"))
        assert outcome.status == RunStatus.FAILED
        assert outcome.error == "Task t1 was stopped"
        assert outcome.should_notify is None

    def test_fields_join_logs(self) -> None:
        fields = RunOutcome(status=RunStatus.SUCCESS, logs=["a", "b"]).to_fields(NOW)
        assert fields["logs"] == "a\nb"
        assert fields["finished_at"] == NOW
        assert fields["status"] == "success"


class TestRunRecorder:
    """Tests for opening and closing runs."""

    @pytest.mark.asyncio
    async def test_open_creates_running_run(self, store, task, clock) -> None:
        recorder = RunRecorder(store, clock=clock)
        run_id = await recorder.open(task.id)

        run = await store.get_run(run_id)
        assert run.status == RunStatus.RUNNING
        assert run.started_at == NOW
        assert run.finished_at is None

    @pytest.mark.asyncio
    async def test_close_writes_outcome(self, store, task, clock) -> None:
        recorder = RunRecorder(store, clock=clock)
        run_id = await recorder.open(task.id)
        clock.advance(seconds=42)

        run = await recorder.close(
            run_id,
            RunOutcome(
                status=RunStatus.SUCCESS,
                output={"result": ["done"]},
                logs=["🚀 Starting task...", "✅ Task completed in 42.0s"],
                should_notify=False,
                notification_reason="Nothing changed",
            ),
        )
        assert run.status == RunStatus.SUCCESS
        assert run.finished_at == NOW + dt.timedelta(seconds=42)
        assert run.duration_ms == 42000
        assert run.output_json == {"result": ["done"]}
        assert run.logs.splitlines()[-1] == "✅ Task completed in 42.0s"
        assert run.should_notify is False
        assert run.notification_reason == "Nothing changed"

    @pytest.mark.asyncio
    async def test_second_close_is_rejected(self, store, task, clock) -> None:
        recorder = RunRecorder(store, clock=clock)
        run_id = await recorder.open(task.id)
        await recorder.close(run_id, RunOutcome.failure("first"))

        with pytest.raises(RunAlreadyClosedError):
            await recorder.close(run_id, RunOutcome(status=RunStatus.SUCCESS))

        run = await store.get_run(run_id)
        assert run.status == RunStatus.FAILED
        assert run.error_msg == "first"

    @pytest.mark.asyncio
    async def test_close_unknown_run(self, store, clock) -> None:
        recorder = RunRecorder(store, clock=clock)
        with pytest.raises(RunAlreadyClosedError):
            await recorder.close("missing", RunOutcome.failure("x"))
