"""Task management: create, update, delete tasks and their notification settings.

Every write that touches ``cron_schedule`` or ``is_active`` recomputes
``next_run_at`` so that it is set only for active, scheduled tasks.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Optional
from uuid import uuid4

from browsercron.errors import TaskNotFoundError
from browsercron.logging_config import get_logger
from browsercron.modules.scheduler import cron
from browsercron.modules.tasks.models import NotificationFrequency, NotificationSettings, RuleType, Task
from browsercron.modules.usage.service import UsageService
from browsercron.store import Store

logger = get_logger(__name__)

_UPDATABLE_FIELDS = ("name", "description", "target_site", "cron_schedule", "is_active")
_SETTINGS_FIELDS = (
    "notify_on_success",
    "notify_on_failure",
    "email",
    "frequency",
    "notification_criteria",
    "custom_rules",
)


def _clean_schedule(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(value.split())
    return value or None


class TaskService:
    """CRUD for user tasks with schedule bookkeeping and plan enforcement."""

    def __init__(
        self,
        store: Store,
        usage: UsageService,
        timezone: str = "UTC",
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._store = store
        self._usage = usage
        self._timezone = timezone
        self._clock = clock

    def compute_next_run(self, cron_schedule: Optional[str], is_active: bool) -> Optional[dt.datetime]:
        """Next fire time for an active scheduled task, otherwise None."""
        if not cron_schedule or not is_active:
            return None
        return cron.next_run_time(cron_schedule, now=self._clock(), timezone=self._timezone)

    def _validate_schedule(self, cron_schedule: Optional[str]) -> None:
        if cron_schedule:
            # Raises InvalidScheduleError with the parser's reason
            cron.build_trigger(cron_schedule, timezone=self._timezone)

    async def create_task(
        self,
        user_id: str,
        name: str,
        description: str,
        target_site: Optional[str] = None,
        cron_schedule: Optional[str] = None,
        is_active: bool = True,
    ) -> Task:
        name = (name or "").strip()
        description = (description or "").strip()
        if not name or not description:
            raise ValueError("Name and description are required")

        cron_schedule = _clean_schedule(cron_schedule)
        self._validate_schedule(cron_schedule)
        await self._usage.ensure_task_allowed(user_id)

        task = await self._store.create_task(
            user_id=user_id,
            name=name,
            description=description,
            target_site=(target_site or None),
            cron_schedule=cron_schedule,
            is_active=is_active,
            next_run_at=self.compute_next_run(cron_schedule, is_active),
        )
        logger.info(
            "task_created",
            task_id=task.id, user_id=user_id, cron=cron_schedule, next_run_at=task.next_run_at,
        )
        return task

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        """Apply a partial update. Unknown fields are ignored."""
        task = await self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        fields = {k: v for k, v in changes.items() if k in _UPDATABLE_FIELDS}
        if fields.get("is_active", False) is None:
            del fields["is_active"]
        if "target_site" in fields:
            fields["target_site"] = fields["target_site"] or None
        for key in ("name", "description"):
            if key in fields:
                fields[key] = (fields[key] or "").strip()
                if not fields[key]:
                    raise ValueError(f"{key.capitalize()} cannot be empty")
        if "cron_schedule" in fields:
            fields["cron_schedule"] = _clean_schedule(fields["cron_schedule"])
            self._validate_schedule(fields["cron_schedule"])

        schedule_changed = (
            ("cron_schedule" in fields and fields["cron_schedule"] != task.cron_schedule)
            or ("is_active" in fields and fields["is_active"] != task.is_active)
        )
        if schedule_changed:
            fields["next_run_at"] = self.compute_next_run(
                fields.get("cron_schedule", task.cron_schedule),
                fields.get("is_active", task.is_active),
            )

        updated = await self._store.update_task(task_id, **fields)
        if updated is None:
            raise TaskNotFoundError(task_id)
        logger.info(
            "task_updated",
            task_id=task_id, fields=sorted(fields), next_run_at=updated.next_run_at,
        )
        return updated

    async def get_task(self, task_id: str, recent_runs: int = 10) -> dict[str, Any]:
        """Task details with its notification settings and most recent runs."""
        task = await self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        settings = await self._store.get_notification_settings(task_id)
        runs = await self._store.list_runs(task_id, limit=recent_runs)
        data = task.to_dict()
        data["notification_settings"] = settings.to_dict() if settings else None
        data["runs"] = [run.to_dict() for run in runs]
        return data

    async def list_tasks(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        tasks = await self._store.list_tasks(user_id=user_id)
        items = []
        for task in tasks:
            data = task.to_dict()
            data["run_count"] = await self._store.count_runs(task.id)
            items.append(data)
        return items

    async def delete_task(self, task_id: str) -> None:
        if not await self._store.delete_task(task_id):
            raise TaskNotFoundError(task_id)
        logger.info("task_deleted", task_id=task_id)

    # ── Notification settings ────────────────────────────────────────

    async def upsert_notification_settings(self, task_id: str, **values: Any) -> NotificationSettings:
        if await self._store.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)

        fields = {k: v for k, v in values.items() if k in _SETTINGS_FIELDS and v is not None}
        if "frequency" in fields:
            fields["frequency"] = NotificationFrequency(fields["frequency"]).value
        if "email" in fields:
            fields["email"] = fields["email"].strip() or None
        if "notification_criteria" in fields:
            fields["notification_criteria"] = fields["notification_criteria"].strip() or None
        if "custom_rules" in fields:
            fields["custom_rules"] = [_normalize_rule(rule) for rule in fields["custom_rules"]]

        settings = await self._store.upsert_notification_settings(task_id, **fields)
        logger.info("notification_settings_saved", task_id=task_id, frequency=settings.frequency)
        return settings

    async def delete_notification_settings(self, task_id: str) -> None:
        if not await self._store.delete_notification_settings(task_id):
            raise LookupError(f"Notification settings not found for task {task_id}")
        logger.info("notification_settings_deleted", task_id=task_id)


def _normalize_rule(rule: Any) -> dict[str, Any]:
    data = rule.model_dump() if hasattr(rule, "model_dump") else dict(rule)
    return {
        "id": str(data.get("id") or uuid4()),
        "type": RuleType(data["type"]).value,
        "value": str(data.get("value") or ""),
        "enabled": bool(data.get("enabled", True)),
    }
