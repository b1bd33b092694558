"""Persistence operations used by the scheduling core and the task API.

Every method opens its own transactional session, so the store can be
shared by concurrent dispatcher branches without sharing a session.
"""

from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from browsercron.database import get_session_factory, utcnow
from browsercron.errors import UserNotFoundError
from browsercron.logging_config import get_logger
from browsercron.modules.runs.models import RunStatus, TaskRun
from browsercron.modules.tasks.models import NotificationSettings, Task, User

logger = get_logger(__name__)


class Store:
    """Relational store facade over SQLAlchemy async sessions."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        factory = self._session_factory or get_session_factory()
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ── Users ────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session() as session:
            return await session.get(User, user_id)

    async def get_user_plan(self, user_id: str) -> str:
        """Return the plan tier of a user, raising if the user is unknown."""
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.plan

    async def upsert_user(
        self, user_id: str, email: str, plan: Optional[str] = None,
        email_notifications: Optional[bool] = None,
    ) -> User:
        """Mirror a user from the identity provider."""
        async with self._session() as session:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id, email=email)
                session.add(user)
            else:
                user.email = email
            if plan is not None:
                user.plan = plan
            if email_notifications is not None:
                user.email_notifications = email_notifications
            await session.flush()
            return user

    # ── Tasks ────────────────────────────────────────────────────────

    async def find_due_tasks(self, now: dt.datetime) -> list[Task]:
        """Active tasks whose cached next run time has passed."""
        async with self._session() as session:
            result = await session.execute(
                select(Task)
                .where(
                    Task.is_active == True,  # noqa: E712
                    Task.next_run_at.is_not(None),
                    Task.next_run_at <= now,
                )
                .order_by(Task.next_run_at.asc())
            )
            return list(result.scalars().all())

    async def find_active_scheduled_tasks(self) -> list[Task]:
        """Active tasks that carry a cron schedule, regardless of next_run_at."""
        async with self._session() as session:
            result = await session.execute(
                select(Task).where(
                    Task.is_active == True,  # noqa: E712
                    Task.cron_schedule.is_not(None),
                    Task.cron_schedule != "",
                )
            )
            return list(result.scalars().all())

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._session() as session:
            return await session.get(Task, task_id)

    async def list_tasks(self, user_id: Optional[str] = None) -> list[Task]:
        async with self._session() as session:
            stmt = select(Task).order_by(Task.created_at.desc())
            if user_id:
                stmt = stmt.where(Task.user_id == user_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create_task(self, **fields: Any) -> Task:
        async with self._session() as session:
            task = Task(**fields)
            session.add(task)
            await session.flush()
            return task

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        async with self._session() as session:
            task = await session.get(Task, task_id)
            if task is None:
                return None
            for key, value in fields.items():
                setattr(task, key, value)
            task.updated_at = utcnow()
            await session.flush()
            return task

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task together with its runs and notification settings."""
        async with self._session() as session:
            task = await session.get(Task, task_id)
            if task is None:
                return False
            await session.execute(delete(TaskRun).where(TaskRun.task_id == task_id))
            await session.execute(
                delete(NotificationSettings).where(NotificationSettings.task_id == task_id)
            )
            await session.delete(task)
            return True

    async def count_tasks_by_user(self, user_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(Task).where(Task.user_id == user_id)
            )
            return int(result.scalar_one())

    # ── Runs ─────────────────────────────────────────────────────────

    async def create_run(self, task_id: str, started_at: Optional[dt.datetime] = None) -> TaskRun:
        async with self._session() as session:
            run = TaskRun(
                task_id=task_id,
                status=RunStatus.RUNNING.value,
                started_at=started_at or utcnow(),
            )
            session.add(run)
            await session.flush()
            return run

    async def get_run(self, run_id: str) -> Optional[TaskRun]:
        async with self._session() as session:
            return await session.get(TaskRun, run_id)

    async def update_run(
        self, run_id: str, expected_status: Optional[str] = None, **fields: Any,
    ) -> Optional[TaskRun]:
        """Update a run; with ``expected_status`` the write is conditional.

        Returns None when the run does not exist or the condition failed.
        """
        async with self._session() as session:
            stmt = update(TaskRun).where(TaskRun.id == run_id).values(**fields)
            if expected_status is not None:
                stmt = stmt.where(TaskRun.status == expected_status)
            result = await session.execute(stmt)
            if result.rowcount == 0:
                return None
            run = await session.get(TaskRun, run_id, populate_existing=True)
            return run

    async def list_runs(self, task_id: str, limit: int = 10) -> list[TaskRun]:
        async with self._session() as session:
            result = await session.execute(
                select(TaskRun)
                .where(TaskRun.task_id == task_id)
                .order_by(TaskRun.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_runs(self, task_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(TaskRun).where(TaskRun.task_id == task_id)
            )
            return int(result.scalar_one())

    async def count_runs_by_user_since(self, user_id: str, since: dt.datetime) -> int:
        """Runs across all of a user's tasks started at or after ``since``."""
        async with self._session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TaskRun)
                .join(Task, Task.id == TaskRun.task_id)
                .where(Task.user_id == user_id, TaskRun.started_at >= since)
            )
            return int(result.scalar_one())

    # ── Notification settings ────────────────────────────────────────

    async def get_notification_settings(self, task_id: str) -> Optional[NotificationSettings]:
        async with self._session() as session:
            result = await session.execute(
                select(NotificationSettings).where(NotificationSettings.task_id == task_id)
            )
            return result.scalar_one_or_none()

    async def upsert_notification_settings(self, task_id: str, **fields: Any) -> NotificationSettings:
        async with self._session() as session:
            result = await session.execute(
                select(NotificationSettings).where(NotificationSettings.task_id == task_id)
            )
            settings = result.scalar_one_or_none()
            if settings is None:
                settings = NotificationSettings(task_id=task_id, **fields)
                session.add(settings)
            else:
                for key, value in fields.items():
                    setattr(settings, key, value)
                settings.updated_at = utcnow()
            await session.flush()
            return settings

    async def delete_notification_settings(self, task_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(NotificationSettings).where(NotificationSettings.task_id == task_id)
            )
            return result.rowcount > 0
