"""API route definitions for browsercron."""

from __future__ import annotations

import asyncio
import json
import secrets
from typing import Any, AsyncGenerator, Optional

from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from browsercron.errors import LimitExceededError, TaskNotFoundError, UserNotFoundError
from browsercron.logging_config import get_logger
from browsercron.modules.browser.models import StepEvent
from browsercron.modules.notifications.models import CustomRule
from browsercron.modules.tasks.models import NotificationFrequency
from browsercron.modules.usage.plans import limits_for

logger = get_logger(__name__)

router = APIRouter()


# ── Request / Response Models ────────────────────────────────────────

class TaskCreateRequest(BaseModel):
    """Task creation request."""

    user_id: str
    name: str
    description: str
    target_site: Optional[str] = None
    cron_schedule: Optional[str] = None
    is_active: bool = True


class TaskUpdateRequest(BaseModel):
    """Partial task update; omitted fields are left unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None
    target_site: Optional[str] = None
    cron_schedule: Optional[str] = None
    is_active: Optional[bool] = None


class NotificationSettingsRequest(BaseModel):
    notify_on_success: Optional[bool] = None
    notify_on_failure: Optional[bool] = None
    email: Optional[str] = None
    frequency: Optional[NotificationFrequency] = None
    notification_criteria: Optional[str] = None
    custom_rules: Optional[list[CustomRule]] = None


class UserUpsertRequest(BaseModel):
    """User record mirrored from the identity provider."""

    email: str
    plan: Optional[str] = None
    email_notifications: Optional[bool] = None


# ── Orchestrator accessor (set from main.py) ────────────────────────

_orchestrator = None


def set_orchestrator(orch: Any) -> None:
    """Inject the orchestrator instance."""
    global _orchestrator
    _orchestrator = orch


def get_orchestrator():
    """Get the orchestrator, raising if not initialized."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return _orchestrator


def _limit_response(exc: LimitExceededError) -> JSONResponse:
    label = "Run limit reached" if exc.kind == "runs" else "Task limit reached"
    return JSONResponse(
        status_code=403,
        content={"error": label, "message": str(exc), "current": exc.current, "limit": exc.limit},
    )


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health_check() -> dict[str, Any]:
    """System health check."""
    orch = get_orchestrator()
    return {
        "status": "healthy",
        "provider_configured": orch.settings.provider_configured,
        "smtp_configured": orch.settings.smtp_configured,
        "due_selection_strategy": orch.dispatcher.strategy.value,
        "pending_notifications": orch.notifications.pending,
    }


# ── Tasks ────────────────────────────────────────────────────────────

@router.get("/tasks")
async def list_tasks(user_id: Optional[str] = Query(default=None)) -> dict[str, Any]:
    """List tasks, newest first, with their run counts."""
    orch = get_orchestrator()
    tasks = await orch.tasks.list_tasks(user_id=user_id)
    return {"tasks": tasks, "total": len(tasks)}


@router.post("/tasks", status_code=201)
async def create_task(req: TaskCreateRequest):
    orch = get_orchestrator()
    try:
        task = await orch.tasks.create_task(
            user_id=req.user_id,
            name=req.name,
            description=req.description,
            target_site=req.target_site,
            cron_schedule=req.cron_schedule,
            is_active=req.is_active,
        )
    except LimitExceededError as exc:
        return _limit_response(exc)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return task.to_dict()


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    orch = get_orchestrator()
    try:
        return await orch.tasks.get_task(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")


@router.put("/tasks/{task_id}")
async def update_task(task_id: str, req: TaskUpdateRequest) -> dict[str, Any]:
    orch = get_orchestrator()
    try:
        task = await orch.tasks.update_task(task_id, **req.model_dump(exclude_unset=True))
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return task.to_dict()


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str) -> dict[str, Any]:
    orch = get_orchestrator()
    try:
        await orch.tasks.delete_task(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"success": True}


# ── Notification settings ────────────────────────────────────────────

@router.put("/tasks/{task_id}/notifications")
async def upsert_notification_settings(task_id: str, req: NotificationSettingsRequest) -> dict[str, Any]:
    """Create or update the task's notification settings."""
    orch = get_orchestrator()
    try:
        settings = await orch.tasks.upsert_notification_settings(
            task_id, **req.model_dump(exclude_unset=True),
        )
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return settings.to_dict()


@router.delete("/tasks/{task_id}/notifications")
async def delete_notification_settings(task_id: str) -> dict[str, Any]:
    orch = get_orchestrator()
    try:
        await orch.tasks.delete_notification_settings(task_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Notification settings not found")
    return {"success": True}


# ── Manual runs ──────────────────────────────────────────────────────

@router.post("/tasks/{task_id}/run")
async def run_task(task_id: str):
    """Run a task now and wait for the result."""
    orch = get_orchestrator()
    try:
        manual = await orch.dispatcher.run_task_now(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except LimitExceededError as exc:
        return _limit_response(exc)
    return manual.to_dict()


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


# Streamed runs keep going after the client disconnects; hold a reference until they finish.
_background_runs: set[asyncio.Task] = set()


@router.post("/tasks/{task_id}/run-stream")
async def run_task_stream(task_id: str):
    """Run a task now, streaming its steps as Server-Sent Events.

    Events: ``start``, one ``step`` per agent step, then ``complete`` or
    ``error``. The run executes in its own task, so it is closed and its
    notification submitted even if the client goes away mid-stream.
    """
    orch = get_orchestrator()
    try:
        task, run_id, settings = await orch.dispatcher.prepare_manual_run(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except LimitExceededError as exc:
        return _limit_response(exc)

    queue: asyncio.Queue[Optional[str]] = asyncio.Queue()

    async def on_step(event: StepEvent) -> None:
        await queue.put(_sse({"type": "step", "step": event.model_dump(mode="json")}))

    async def execute() -> None:
        manual = None
        try:
            manual = await orch.dispatcher.execute_manual_run(task, run_id, settings, on_step=on_step)
            await queue.put(_sse({
                "type": "complete",
                "status": manual.status,
                "result": manual.outcome.output,
                "error": manual.outcome.error,
                "duration": manual.run.duration_ms,
                "taskRun": manual.run.to_dict(),
            }))
        except Exception as exc:
            logger.error("stream_run_failed", task_id=task_id, run_id=run_id, error=str(exc))
            await queue.put(_sse({"type": "error", "error": str(exc) or "Unknown error", "taskRunId": run_id}))
        finally:
            await queue.put(None)
        if manual is not None:
            await orch.dispatcher.notify_run(manual)

    runner = asyncio.create_task(execute())
    _background_runs.add(runner)
    runner.add_done_callback(_background_runs.discard)

    async def events() -> AsyncGenerator[str, None]:
        yield _sse({"type": "start", "taskRunId": run_id, "message": "Starting task..."})
        while (item := await queue.get()) is not None:
            yield item

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ── Users ────────────────────────────────────────────────────────────

@router.put("/users/{user_id}")
async def upsert_user(user_id: str, req: UserUpsertRequest) -> dict[str, Any]:
    """Mirror a user record from the identity provider."""
    orch = get_orchestrator()
    user = await orch.store.upsert_user(
        user_id, req.email, plan=req.plan, email_notifications=req.email_notifications,
    )
    return {
        "id": user.id,
        "email": user.email,
        "plan": user.plan,
        "email_notifications": user.email_notifications,
    }


@router.get("/users/{user_id}/usage")
async def get_usage(user_id: str) -> dict[str, Any]:
    """Plan and current task/run usage for the dashboard."""
    orch = get_orchestrator()
    try:
        plan = await orch.store.get_user_plan(user_id)
        tasks = await orch.usage.check_task_limit(user_id)
        runs = await orch.usage.check_run_limit(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "plan": limits_for(plan).name,
        "tasks": tasks.to_dict(),
        "runs": runs.to_dict(),
    }


# ── Due-task trigger ─────────────────────────────────────────────────

def _authorized(authorization: Optional[str], secret: str) -> bool:
    if not secret:
        return True
    return secrets.compare_digest(authorization or "", f"Bearer {secret}")


async def _dispatch(extra: Optional[dict[str, Any]] = None):
    orch = get_orchestrator()
    report = await orch.dispatcher.run_due_tasks()
    if report.error:
        return JSONResponse(status_code=500, content={"error": report.error})
    body = report.to_dict()
    if extra:
        body.update(extra)
    return body


@router.post("/run-due-tasks")
async def run_due_tasks_post(
    authorization: Optional[str] = Header(default=None),
    user_agent: str = Header(default=""),
):
    """Run all due tasks. Called by an external scheduler."""
    orch = get_orchestrator()
    if "vercel-cron" not in user_agent and not _authorized(authorization, orch.settings.cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await _dispatch()


@router.get("/run-due-tasks")
async def run_due_tasks_get(authorization: Optional[str] = Header(default=None)):
    """Run all due tasks (GitHub Actions style trigger)."""
    orch = get_orchestrator()
    if not _authorized(authorization, orch.settings.cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await _dispatch({"source": "github-actions"})
