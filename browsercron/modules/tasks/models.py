"""Database models for users, tasks, and per-task notification settings."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON

from browsercron.database import Base, UTCDateTime, utcnow


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class NotificationFrequency(StrEnum):
    """How notifications for a task are delivered."""

    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"


class RuleType(StrEnum):
    """Kinds of custom notification rules."""

    TEXT_CONTAINS = "text_contains"
    TEXT_NOT_CONTAINS = "text_not_contains"
    OUTPUT_CONTAINS = "output_contains"


class User(Base):
    """Account record mirrored from the identity provider.

    ``plan`` is written by the billing integration and only read here.
    """

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=False)
    email_notifications = Column(Boolean, default=True, nullable=False)
    plan = Column(String(16), default="FREE", nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, plan={self.plan})>"


class Task(Base):
    """A natural-language browser task, optionally scheduled by cron."""

    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=False)
    target_site = Column(String(2048), nullable=True)
    cron_schedule = Column(String(128), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    next_run_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tasks_active_next_run", "is_active", "next_run_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "target_site": self.target_site,
            "cron_schedule": self.cron_schedule,
            "is_active": self.is_active,
            "next_run_at": _iso(self.next_run_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<Task(id={self.id}, name={self.name}, cron={self.cron_schedule}, "
            f"active={self.is_active}, next_run_at={self.next_run_at})>"
        )


class NotificationSettings(Base):
    """Per-task notification preferences (zero or one per task)."""

    __tablename__ = "notification_settings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    task_id = Column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    notify_on_success = Column(Boolean, default=False, nullable=False)
    notify_on_failure = Column(Boolean, default=True, nullable=False)
    email = Column(String(320), nullable=True)
    frequency = Column(String(16), default=NotificationFrequency.IMMEDIATE.value, nullable=False)
    notification_criteria = Column(Text, nullable=True)
    custom_rules = Column(SQLiteJSON, default=list, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "notify_on_success": self.notify_on_success,
            "notify_on_failure": self.notify_on_failure,
            "email": self.email,
            "frequency": self.frequency,
            "notification_criteria": self.notification_criteria,
            "custom_rules": list(self.custom_rules or []),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<NotificationSettings(task_id={self.task_id}, frequency={self.frequency}, "
            f"success={self.notify_on_success}, failure={self.notify_on_failure})>"
        )
