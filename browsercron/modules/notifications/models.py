"""Data models for run notifications."""

from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from browsercron.modules.tasks.models import RuleType


class CustomRule(BaseModel):
    """User-defined extra trigger evaluated against a run's output."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: RuleType
    value: str
    enabled: bool = True


class NotificationPayload(BaseModel):
    """Everything a sender needs to deliver one run notification."""

    to: str
    task_name: str
    task_id: str
    status: str
    run_id: str
    user_id: str
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    reasons: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class NotificationDecision(BaseModel):
    """Result of evaluating a finished run against notification settings."""

    should_send_now: bool = False
    reasons: list[str] = Field(default_factory=list)
    payload: Optional[NotificationPayload] = None

    @classmethod
    def skip(cls, reason: str) -> NotificationDecision:
        return cls(should_send_now=False, reasons=[reason])
