"""Run records and the outcome shape used to finalize them."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON

from browsercron.database import Base, UTCDateTime, utcnow


class RunStatus(StrEnum):
    """Lifecycle of a single task execution."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TaskRun(Base):
    """One execution attempt of a task. Append-only once finalized."""

    __tablename__ = "task_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(16), default=RunStatus.RUNNING.value, nullable=False)
    started_at = Column(UTCDateTime, default=utcnow, nullable=False)
    finished_at = Column(UTCDateTime, nullable=True)
    output_json = Column(SQLiteJSON, nullable=True)
    error_msg = Column(Text, nullable=True)
    logs = Column(Text, nullable=True)
    should_notify = Column(Boolean, nullable=True)
    notification_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_task_runs_task_started", "task_id", "started_at"),
    )

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None or self.started_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "output": self.output_json,
            "error": self.error_msg,
            "logs": self.logs.split("\n") if self.logs else [],
            "should_notify": self.should_notify,
            "notification_reason": self.notification_reason,
        }

    def __repr__(self) -> str:
        return f"<TaskRun(id={self.id}, task_id={self.task_id}, status={self.status})>"


class RunOutcome(BaseModel):
    """Everything written to a run when it is closed."""

    status: RunStatus
    output: Any = None
    error: Optional[str] = None
    logs: list[str] = Field(default_factory=list)
    should_notify: Optional[bool] = None
    notification_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @classmethod
    def failure(cls, message: str, logs: Optional[list[str]] = None) -> RunOutcome:
        return cls(status=RunStatus.FAILED, error=message or "Unknown error", logs=logs or [])

    @classmethod
    def from_execution(cls, result: Any, logs: Optional[list[str]] = None) -> RunOutcome:
        """Build an outcome from a normalized ``ExecutionResult``."""
        return cls(
            status=RunStatus.SUCCESS if result.succeeded else RunStatus.FAILED,
            output=result.result,
            error=result.error,
            logs=logs if logs is not None else list(result.logs),
            should_notify=result.should_notify,
            notification_reason=result.notification_reason,
        )

    def to_fields(self, finished_at: dt.datetime) -> dict[str, Any]:
        """Column values for the closing update."""
        return {
            "status": self.status.value,
            "finished_at": finished_at,
            "output_json": self.output,
            "error_msg": self.error,
            "logs": "\n".join(self.logs) if self.logs else None,
            "should_notify": self.should_notify,
            "notification_reason": self.notification_reason,
        }
