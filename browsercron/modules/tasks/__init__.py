"""Task definitions, schedules and per-task notification settings."""

from browsercron.modules.tasks.models import (
    NotificationFrequency,
    NotificationSettings,
    RuleType,
    Task,
    User,
)

__all__ = ["NotificationFrequency", "NotificationSettings", "RuleType", "Task", "User"]
