"""Due-task dispatcher and manual run execution.

``run_due_tasks`` selects every due task and runs them concurrently. Each
task goes through the same steps: run-limit check, open run, execute, close
run, advance ``next_run_at``, then hand a notification to the background
sender. One task failing never affects the others.

The dispatcher is safe to trigger repeatedly, but two triggers inside the
same window can both pick up a task before either advances its
``next_run_at``; that duplicate is accepted.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from browsercron.errors import LimitExceededError, TaskNotFoundError
from browsercron.logging_config import get_logger, run_context
from browsercron.modules.browser.models import ExecutionResult
from browsercron.modules.browser.service import BrowserService, StepCallback
from browsercron.modules.notifications.service import NotificationService
from browsercron.modules.runs.models import RunOutcome, TaskRun
from browsercron.modules.runs.service import RunRecorder
from browsercron.modules.scheduler import cron
from browsercron.modules.tasks.models import NotificationSettings, Task
from browsercron.modules.usage.service import UsageService
from browsercron.store import Store

logger = get_logger(__name__)

DISPATCH_JOB_ID = "run_due_tasks"


class DueSelectionStrategy(StrEnum):
    """How due tasks are found.

    NEXT_RUN_AT trusts the cached ``next_run_at`` column; CRON re-evaluates
    every active schedule against the tolerance window.
    """

    NEXT_RUN_AT = "next_run_at"
    CRON = "cron"


@dataclass
class TaskOutcome:
    task_id: str
    task_run_id: Optional[str]
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "taskRunId": self.task_run_id,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class DispatchReport:
    processed: int = 0
    results: list[TaskOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "processed": self.processed,
            "results": [r.to_dict() for r in self.results],
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ManualRun:
    """A finished manual run together with what is needed to notify about it."""

    task: Task
    run: TaskRun
    outcome: RunOutcome
    settings: Optional[NotificationSettings] = None

    @property
    def status(self) -> str:
        return self.outcome.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_run": self.run.to_dict(),
            "message": "Task completed" if self.outcome.succeeded else "Task failed",
            "error": self.outcome.error,
        }


class DispatcherService:
    """Runs due tasks, manual runs, and the optional in-process dispatch job."""

    def __init__(
        self,
        store: Store,
        browser: BrowserService,
        recorder: RunRecorder,
        usage: UsageService,
        notifications: NotificationService,
        strategy: DueSelectionStrategy = DueSelectionStrategy.NEXT_RUN_AT,
        window: dt.timedelta = cron.DEFAULT_WINDOW,
        timezone: str = "UTC",
        max_concurrency: int = 10,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._store = store
        self._browser = browser
        self._recorder = recorder
        self._usage = usage
        self._notifications = notifications
        self._strategy = DueSelectionStrategy(strategy)
        self._window = window
        self._timezone = timezone
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def strategy(self) -> DueSelectionStrategy:
        return self._strategy

    # ── Due-task dispatch ────────────────────────────────────────────

    async def select_due_tasks(self, now: dt.datetime) -> list[Task]:
        if self._strategy == DueSelectionStrategy.CRON:
            candidates = await self._store.find_active_scheduled_tasks()
            return [
                t for t in candidates
                if cron.is_due(t.cron_schedule, now=now, window=self._window, timezone=self._timezone)
            ]
        return await self._store.find_due_tasks(now)

    async def run_due_tasks(self, now: Optional[dt.datetime] = None) -> DispatchReport:
        """Run every due task concurrently and report per-task outcomes.

        A failure to read due tasks is returned as the report's ``error``
        with nothing processed; per-task failures only mark their own entry.
        """
        now = now or self._clock()
        try:
            tasks = await self.select_due_tasks(now)
        except Exception as exc:
            logger.error("due_task_selection_failed", error=str(exc))
            return DispatchReport(error=str(exc) or "Failed to load due tasks")

        logger.info("dispatch_started", due=len(tasks), strategy=self._strategy.value)
        if not tasks:
            return DispatchReport()

        results = await asyncio.gather(
            *(self._run_branch(task, now) for task in tasks),
            return_exceptions=True,
        )

        report = DispatchReport(processed=len(tasks))
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error("dispatch_branch_crashed", task_id=task.id, error=str(result))
                report.results.append(
                    TaskOutcome(task.id, None, False, str(result) or type(result).__name__)
                )
            else:
                report.results.append(result)

        logger.info(
            "dispatch_finished",
            processed=report.processed, succeeded=report.succeeded,
            failed=report.processed - report.succeeded,
        )
        return report

    async def _run_branch(self, task: Task, now: dt.datetime) -> TaskOutcome:
        async with self._semaphore:
            with run_context(task_id=task.id):
                return await self._dispatch_one(task)

    async def _dispatch_one(self, task: Task) -> TaskOutcome:
        try:
            await self._usage.ensure_run_allowed(task.user_id)
        except LimitExceededError as exc:
            await self._advance_schedule(task)
            return TaskOutcome(task.id, None, False, str(exc))

        settings = await self._store.get_notification_settings(task.id)
        run_id = await self._recorder.open(task.id)
        with run_context(run_id=run_id):
            try:
                run, outcome = await self._execute_and_close(task, run_id, settings)
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.error("dispatch_branch_failed", error=message)
                await self._close_quietly(run_id, message)
                return TaskOutcome(task.id, run_id, False, message)
            finally:
                await self._advance_schedule(task)

            await self.notify_run(ManualRun(task=task, run=run, outcome=outcome, settings=settings))
            return TaskOutcome(task.id, run_id, outcome.succeeded, outcome.error)

    async def _close_quietly(self, run_id: str, message: str) -> None:
        """Mark a run failed after an unexpected error, if it is still open."""
        try:
            await self._recorder.close(run_id, RunOutcome.failure(message))
        except Exception as exc:
            logger.warning("run_close_after_error_failed", error=str(exc))

    async def _advance_schedule(self, task: Task) -> None:
        """Persist the next fire time after a dispatch, or clear it."""
        next_run_at = None
        if task.cron_schedule and task.is_active:
            try:
                next_run_at = cron.next_run_time(
                    task.cron_schedule, now=self._clock(), timezone=self._timezone,
                )
            except ValueError as exc:
                logger.warning("next_run_compute_failed", error=str(exc))
        await self._store.update_task(task.id, next_run_at=next_run_at)
        logger.debug("schedule_advanced", next_run_at=next_run_at)

    # ── Execution shared by dispatch and manual runs ─────────────────

    async def _execute_and_close(
        self,
        task: Task,
        run_id: str,
        settings: Optional[NotificationSettings],
        on_step: Optional[StepCallback] = None,
    ) -> tuple[TaskRun, RunOutcome]:
        criteria = settings.notification_criteria if settings else None
        started = self._clock()
        logs = ["🚀 Starting task..."]
        try:
            if on_step is not None:
                result = await self._browser.stream_task(
                    task.description, task.target_site, criteria, on_step=on_step,
                )
            else:
                result = await self._browser.run_task(task.description, task.target_site, criteria)
        except Exception as exc:
            logger.error("task_execution_crashed", error=str(exc))
            result = ExecutionResult.failed(str(exc) or "Unknown error")

        logs.extend(result.logs)
        if result.succeeded:
            elapsed = (self._clock() - started).total_seconds()
            logs.append(f"✅ Task completed in {elapsed:.1f}s")
        else:
            logs.append(f"❌ Error: {result.error or 'Unknown error'}")

        outcome = RunOutcome.from_execution(result, logs=logs)
        run = await self._recorder.close(run_id, outcome)
        return run, outcome

    async def notify_run(self, manual: ManualRun) -> None:
        """Evaluate notification triggers for a closed run and submit delivery."""
        with run_context(task_id=manual.task.id, run_id=manual.run.id):
            await self._notify(manual)

    async def _notify(self, manual: ManualRun) -> None:
        try:
            user = await self._store.get_user(manual.task.user_id)
            decision = self._notifications.evaluate(
                manual.outcome,
                manual.settings,
                bool(user and user.email_notifications),
                task_id=manual.task.id,
                task_name=manual.task.name,
                run_id=manual.run.id,
                user_id=manual.task.user_id,
                user_email=user.email if user else "",
                duration_ms=manual.run.duration_ms,
            )
        except Exception as exc:
            logger.error("notification_evaluation_failed", error=str(exc))
            return
        if decision.should_send_now and decision.payload is not None and decision.payload.to:
            self._notifications.submit(decision.payload)

    # ── Manual runs ──────────────────────────────────────────────────

    async def prepare_manual_run(self, task_id: str) -> tuple[Task, str, Optional[NotificationSettings]]:
        """Check the run limit and open a run for a manual execution.

        Raises ``TaskNotFoundError`` or ``LimitExceededError`` before any
        run is created.
        """
        task = await self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        await self._usage.ensure_run_allowed(task.user_id)
        settings = await self._store.get_notification_settings(task.id)
        run_id = await self._recorder.open(task.id)
        return task, run_id, settings

    async def execute_manual_run(
        self,
        task: Task,
        run_id: str,
        settings: Optional[NotificationSettings],
        on_step: Optional[StepCallback] = None,
    ) -> ManualRun:
        """Execute and close an opened manual run. ``next_run_at`` is untouched."""
        with run_context(task_id=task.id, run_id=run_id):
            try:
                run, outcome = await self._execute_and_close(task, run_id, settings, on_step=on_step)
            except Exception as exc:
                await self._close_quietly(run_id, str(exc) or type(exc).__name__)
                raise
            logger.info("manual_run_finished", status=outcome.status.value)
        return ManualRun(task=task, run=run, outcome=outcome, settings=settings)

    async def run_task_now(
        self,
        task_id: str,
        on_step: Optional[StepCallback] = None,
        notify: bool = True,
    ) -> ManualRun:
        task, run_id, settings = await self.prepare_manual_run(task_id)
        manual = await self.execute_manual_run(task, run_id, settings, on_step=on_step)
        if notify:
            await self.notify_run(manual)
        return manual

    # ── In-process dispatch job ──────────────────────────────────────

    async def start(self, interval_minutes: int) -> None:
        """Run ``run_due_tasks`` every ``interval_minutes`` inside this process."""
        if interval_minutes <= 0 or (self._scheduler and self._scheduler.running):
            return
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "misfire_grace_time": 300,
                "coalesce": True,
                "max_instances": 1,
            },
        )
        self._scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED,
        )
        self._scheduler.add_job(
            self._scheduled_dispatch,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=DISPATCH_JOB_ID,
            name="Run due tasks",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("dispatch_job_started", interval_minutes=interval_minutes)

    async def _scheduled_dispatch(self) -> None:
        report = await self.run_due_tasks()
        if report.error:
            logger.error("scheduled_dispatch_failed", error=report.error)

    @staticmethod
    def _on_job_event(event) -> None:
        job_id = getattr(event, "job_id", "?")
        if event.code == EVENT_JOB_EXECUTED:
            logger.debug("apscheduler_job_executed", job_id=job_id)
        elif event.code == EVENT_JOB_ERROR:
            logger.error("apscheduler_job_error", job_id=job_id, error=str(getattr(event, "exception", "")))
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("apscheduler_job_missed", job_id=job_id)

    async def stop(self) -> None:
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("dispatch_job_stopped")
        self._scheduler = None
