"""Decides whether a finished run triggers a notification, and sends it.

Triggers are OR-ed: success with ``notify_on_success``, failure with
``notify_on_failure``, the provider's ``shouldNotify`` verdict, or any
enabled custom rule matching a successful run's output. Nothing is sent
unless the account has e-mail notifications enabled and the task's
frequency is ``immediate``; digests are not delivered.

Delivery runs as a detached asyncio task. A failed delivery is logged and
never affects the run.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol

from browsercron.errors import NotificationDeliveryError
from browsercron.logging_config import get_logger
from browsercron.modules.notifications.models import CustomRule, NotificationDecision, NotificationPayload
from browsercron.modules.runs.models import RunOutcome
from browsercron.modules.tasks.models import NotificationFrequency, NotificationSettings, RuleType

logger = get_logger(__name__)


class NotificationSender(Protocol):
    async def send(self, payload: NotificationPayload) -> None: ...


def result_text(output: Any) -> str:
    """Plain text of a run's result list, used by the text rules."""
    if isinstance(output, dict) and isinstance(output.get("result"), list):
        return "\n".join(str(item) for item in output["result"])
    if isinstance(output, list):
        return "\n".join(str(item) for item in output)
    if output is None:
        return ""
    return str(output)


def match_custom_rules(rules: list[Any], output: Any) -> list[str]:
    """Return a description of every enabled rule that matches ``output``."""
    text = result_text(output).lower()
    serialized = json.dumps(output, default=str).lower() if output is not None else ""
    matched: list[str] = []
    for raw in rules or []:
        try:
            rule = raw if isinstance(raw, CustomRule) else CustomRule.model_validate(raw)
        except ValueError:
            logger.warning("custom_rule_invalid", rule=raw)
            continue
        value = rule.value.strip().lower()
        if not rule.enabled or not value:
            continue
        if rule.type == RuleType.TEXT_CONTAINS and value in text:
            matched.append(f"Result contains \"{rule.value}\"")
        elif rule.type == RuleType.TEXT_NOT_CONTAINS and value not in text:
            matched.append(f"Result does not contain \"{rule.value}\"")
        elif rule.type == RuleType.OUTPUT_CONTAINS and value in serialized:
            matched.append(f"Output contains \"{rule.value}\"")
    return matched


class NotificationService:
    """Evaluates notification triggers and dispatches deliveries."""

    def __init__(self, sender: Optional[NotificationSender] = None) -> None:
        self._sender = sender
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def evaluate(
        self,
        outcome: RunOutcome,
        settings: Optional[NotificationSettings],
        email_notifications_enabled: bool,
        *,
        task_id: str,
        task_name: str,
        run_id: str,
        user_id: str,
        user_email: str,
        duration_ms: Optional[int] = None,
    ) -> NotificationDecision:
        if settings is None:
            return NotificationDecision.skip("no notification settings")
        if not email_notifications_enabled:
            return NotificationDecision.skip("account notifications disabled")
        if settings.frequency != NotificationFrequency.IMMEDIATE:
            return NotificationDecision.skip(f"frequency is {settings.frequency}")

        reasons: list[str] = []
        if outcome.succeeded and settings.notify_on_success:
            reasons.append("Task succeeded")
        if not outcome.succeeded and settings.notify_on_failure:
            reasons.append("Task failed")
        if outcome.should_notify is True:
            reasons.append(outcome.notification_reason or "Notification criteria met")
        if outcome.succeeded:
            reasons.extend(match_custom_rules(settings.custom_rules, outcome.output))

        if not reasons:
            return NotificationDecision(should_send_now=False)

        output = outcome.output
        if outcome.notification_reason and isinstance(output, dict):
            output = {**output, "_notificationReason": outcome.notification_reason}

        payload = NotificationPayload(
            to=settings.email or user_email,
            task_name=task_name,
            task_id=task_id,
            status=outcome.status.value,
            run_id=run_id,
            user_id=user_id,
            output=output,
            error=outcome.error,
            duration_ms=duration_ms,
            reasons=reasons,
        )
        return NotificationDecision(should_send_now=True, reasons=reasons, payload=payload)

    def submit(self, payload: NotificationPayload) -> Optional[asyncio.Task]:
        """Start delivery in the background and return immediately."""
        if self._sender is None:
            logger.warning("notification_sender_not_configured", run_id=payload.run_id)
            return None
        task = asyncio.create_task(self._deliver(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, payload: NotificationPayload) -> None:
        try:
            await self._sender.send(payload)
            logger.info(
                "notification_sent",
                run_id=payload.run_id, task_id=payload.task_id, to=payload.to,
            )
        except NotificationDeliveryError as exc:
            logger.error("notification_failed", run_id=payload.run_id, error=str(exc))
        except Exception as exc:
            logger.error("notification_failed", run_id=payload.run_id, error=f"unexpected: {exc}")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (used at shutdown and in tests)."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
