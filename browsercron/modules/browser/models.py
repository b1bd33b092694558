"""Data models for the browser automation provider layer."""

from __future__ import annotations

import datetime as dt
import json
from enum import StrEnum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class ProviderStatus(StrEnum):
    """Task states reported by Browser Use. Only FINISHED/STOPPED are terminal."""

    CREATED = "created"
    STARTED = "started"
    PAUSED = "paused"
    FINISHED = "finished"
    STOPPED = "stopped"


class ExecutionStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderTaskStatus(BaseModel):
    """One status poll response, normalized."""

    status: str
    output: Any = None
    steps: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProviderStatus.FINISHED, ProviderStatus.STOPPED)


class ExecutionResult(BaseModel):
    """Uniform result of one provider task, whatever happened."""

    id: str = ""
    status: ExecutionStatus
    result: Any = None
    error: Optional[str] = None
    logs: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def should_notify(self) -> Optional[bool]:
        """The AI-evaluated notification flag, if the criterion was requested."""
        if isinstance(self.result, dict) and "shouldNotify" in self.result:
            return self.result.get("shouldNotify") is True
        return None

    @property
    def notification_reason(self) -> Optional[str]:
        if isinstance(self.result, dict):
            reason = self.result.get("notificationReason")
            return str(reason) if reason else None
        return None

    @classmethod
    def failed(cls, message: str, task_id: str = "", logs: Optional[list[str]] = None) -> ExecutionResult:
        return cls(id=task_id, status=ExecutionStatus.FAILED, error=message, logs=logs or [])


# ── Step events ──────────────────────────────────────────────────────


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


class ThoughtStep(BaseModel):
    kind: Literal["thought"] = "thought"
    thought: str
    timestamp: dt.datetime = Field(default_factory=_now)

    def to_log_line(self) -> str:
        return f"💭 {self.thought}"


class ActionStep(BaseModel):
    kind: Literal["action"] = "action"
    action: Any
    timestamp: dt.datetime = Field(default_factory=_now)

    def to_log_line(self) -> str:
        return f"⚡ {_as_text(self.action)}"


class OutputStep(BaseModel):
    kind: Literal["output"] = "output"
    output: Any
    timestamp: dt.datetime = Field(default_factory=_now)

    def to_log_line(self) -> str:
        return f"📋 {_as_text(self.output)}"


class RawStep(BaseModel):
    kind: Literal["raw"] = "raw"
    raw: str
    timestamp: dt.datetime = Field(default_factory=_now)

    def to_log_line(self) -> str:
        return f"📝 {self.raw}"


StepEvent = Union[ThoughtStep, ActionStep, OutputStep, RawStep]

_THOUGHT_KEYS = ("thought", "next_goal", "nextGoal")
_ACTION_KEYS = ("action", "actions")


def normalize_step(step: Any) -> list[StepEvent]:
    """Turn one provider step payload into tagged step events.

    A single provider step may carry a thought, an action and an output at
    once; each becomes its own event. Payloads with none of those fields are
    passed on as a RawStep.
    """
    if not isinstance(step, dict):
        return [RawStep(raw=_as_text(step))]

    events: list[StepEvent] = []
    for key in _THOUGHT_KEYS:
        if step.get(key):
            events.append(ThoughtStep(thought=_as_text(step[key])))
            break
    for key in _ACTION_KEYS:
        if step.get(key):
            events.append(ActionStep(action=step[key]))
            break
    if step.get("output"):
        events.append(OutputStep(output=step["output"]))
    if not events:
        events.append(RawStep(raw=json.dumps(step, default=str)))
    return events
