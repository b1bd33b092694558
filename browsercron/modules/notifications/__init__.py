"""Run notifications: trigger evaluation and e-mail delivery."""

from browsercron.modules.notifications.email import EmailNotificationSender
from browsercron.modules.notifications.models import CustomRule, NotificationDecision, NotificationPayload
from browsercron.modules.notifications.service import NotificationService

__all__ = [
    "CustomRule",
    "EmailNotificationSender",
    "NotificationDecision",
    "NotificationPayload",
    "NotificationService",
]
