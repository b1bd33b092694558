"""Exception types shared across browsercron modules."""

from __future__ import annotations


class BrowsercronError(Exception):
    """Base class for all browsercron errors."""


class InvalidScheduleError(BrowsercronError, ValueError):
    """A cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str = "") -> None:
        self.expression = expression
        self.reason = reason
        message = f"Invalid cron expression: {expression!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class LimitExceededError(BrowsercronError):
    """A plan quota check failed; the operation was rejected."""

    def __init__(self, kind: str, current: int, limit: int) -> None:
        self.kind = kind
        self.current = current
        self.limit = limit
        if kind == "runs":
            message = (
                f"You've reached your plan's limit of {limit} runs this month. "
                "Upgrade your plan to run more tasks."
            )
        else:
            message = (
                f"You've reached your plan's limit of {limit} tasks. "
                "Upgrade your plan to create more tasks."
            )
        super().__init__(message)


class ProviderError(BrowsercronError):
    """The browser automation provider failed or returned an unusable response."""


class ProviderTimeoutError(ProviderError):
    """A provider task did not reach a terminal state within the polling ceiling."""

    def __init__(self, task_id: str, attempts: int, interval: float) -> None:
        self.task_id = task_id
        self.attempts = attempts
        self.interval = interval
        super().__init__(
            f"Task {task_id} timed out after {attempts} status checks "
            f"(~{attempts * interval:.0f}s)"
        )


class ProviderExecutionError(ProviderError):
    """The remote task ended in a stopped/error state."""


class NotificationDeliveryError(BrowsercronError):
    """Sending a notification failed. Always caught and logged."""


class RunAlreadyClosedError(BrowsercronError, RuntimeError):
    """A run was finalized twice. Indicates a programming error."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} is already finalized or does not exist")


class TaskNotFoundError(BrowsercronError, LookupError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class UserNotFoundError(BrowsercronError, LookupError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")
