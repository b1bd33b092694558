"""Task execution adapter: submit, poll or stream, and normalize results.

Every public method returns an ``ExecutionResult``; provider exceptions,
stopped tasks and timeouts all become ``status=failed`` with a readable
message.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional, Union

from browsercron.errors import ProviderError, ProviderExecutionError, ProviderTimeoutError
from browsercron.logging_config import get_logger
from browsercron.modules.browser.client import BaseTaskProvider
from browsercron.modules.browser.models import (
    ExecutionResult,
    ExecutionStatus,
    ProviderStatus,
    ProviderTaskStatus,
    StepEvent,
    normalize_step,
)

logger = get_logger(__name__)

StepCallback = Callable[[StepEvent], Union[Awaitable[None], None]]

NOTIFICATION_INSTRUCTIONS = """

IMPORTANT: After completing the task above, evaluate the following notification criteria:
"{criteria}"

Set "shouldNotify" to true if the criteria are met, false otherwise, and give a short \
"notificationReason" explaining your decision."""

RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "result": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["result"],
}

NOTIFY_RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "result": {"type": "array", "items": {"type": "string"}},
        "shouldNotify": {"type": "boolean"},
        "notificationReason": {"type": "string"},
    },
    "required": ["result", "shouldNotify"],
}


def build_task_request(
    description: str, notification_criteria: Optional[str] = None,
) -> tuple[str, dict[str, Any]]:
    """Return the task text and structured output schema to submit."""
    criteria = (notification_criteria or "").strip()
    if criteria:
        return description + NOTIFICATION_INSTRUCTIONS.format(criteria=criteria), NOTIFY_RESULT_SCHEMA
    return description, RESULT_SCHEMA


def parse_output(output: Any) -> Any:
    """Decode structured output, which the provider returns as a JSON string."""
    if isinstance(output, str):
        try:
            return json.loads(output)
        except ValueError:
            return output
    return output


class BrowserService:
    """Runs natural-language tasks on the remote browser provider."""

    def __init__(
        self,
        provider: BaseTaskProvider,
        poll_interval: float = 5.0,
        max_poll_attempts: int = 60,
        stream_max_poll_attempts: int = 120,
        stream_drain_seconds: float = 1.0,
    ) -> None:
        self._provider = provider
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._stream_max_poll_attempts = stream_max_poll_attempts
        self._stream_drain_seconds = stream_drain_seconds

    async def run_task(
        self,
        description: str,
        start_url: Optional[str] = None,
        notification_criteria: Optional[str] = None,
    ) -> ExecutionResult:
        """Submit a task and poll until it finishes, stops, or times out."""
        try:
            task_id = await self._submit(description, start_url, notification_criteria)
        except Exception as exc:
            return self._failure("", exc)

        try:
            final = await self._poll_until_terminal(task_id, self._max_poll_attempts)
        except Exception as exc:
            return self._failure(task_id, exc)

        logs = [event.to_log_line() for step in final.steps for event in normalize_step(step)]
        return self._completed(task_id, final, logs)

    async def stream_task(
        self,
        description: str,
        start_url: Optional[str] = None,
        notification_criteria: Optional[str] = None,
        on_step: Optional[StepCallback] = None,
    ) -> ExecutionResult:
        """Submit a task, forward its steps as they arrive, and poll for completion.

        The step feed runs beside the status poll. Only the poll decides when
        the task is over; the feed is given a short drain period and then
        cancelled. Steps the feed never delivered are taken from the final
        status so the run log stays complete.
        """
        logs: list[str] = []
        delivered: list[Any] = []
        try:
            task_id = await self._submit(description, start_url, notification_criteria)
        except Exception as exc:
            return self._failure("", exc, logs)

        feed = asyncio.create_task(self._consume_steps(task_id, on_step, logs, delivered))
        try:
            final = await self._poll_until_terminal(task_id, self._stream_max_poll_attempts)
        except Exception as exc:
            await self._stop_feed(feed)
            return self._failure(task_id, exc, logs)

        await self._stop_feed(feed)
        for step in final.steps[len(delivered):]:
            logs.extend(event.to_log_line() for event in normalize_step(step))
        return self._completed(task_id, final, logs)

    # ── Internals ────────────────────────────────────────────────────

    async def _submit(
        self, description: str, start_url: Optional[str], notification_criteria: Optional[str],
    ) -> str:
        task_text, schema = build_task_request(description, notification_criteria)
        task_id = await self._provider.submit(task_text, start_url=start_url or None, output_schema=schema)
        logger.info(
            "browser_task_submitted",
            provider_task_id=task_id, with_criteria=bool(notification_criteria), start_url=start_url,
        )
        return task_id

    async def _poll_until_terminal(self, task_id: str, max_attempts: int) -> ProviderTaskStatus:
        for attempt in range(1, max_attempts + 1):
            status = await self._provider.get_status(task_id)
            if status.status == ProviderStatus.FINISHED:
                logger.info("browser_task_finished", provider_task_id=task_id, attempts=attempt)
                return status
            if status.status == ProviderStatus.STOPPED:
                raise ProviderExecutionError(f"Task {task_id} was stopped before completing")
            if attempt < max_attempts:
                await asyncio.sleep(self._poll_interval)
        raise ProviderTimeoutError(task_id, max_attempts, self._poll_interval)

    async def _consume_steps(
        self,
        task_id: str,
        on_step: Optional[StepCallback],
        logs: list[str],
        delivered: list[Any],
    ) -> None:
        try:
            async for raw in self._provider.stream_steps(task_id):
                delivered.append(raw)
                for event in normalize_step(raw):
                    logs.append(event.to_log_line())
                    if on_step is None:
                        continue
                    try:
                        maybe = on_step(event)
                        if inspect.isawaitable(maybe):
                            await maybe
                    except Exception as exc:
                        logger.warning("step_callback_failed", provider_task_id=task_id, error=str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("step_feed_failed", provider_task_id=task_id, error=str(exc))

    async def _stop_feed(self, feed: asyncio.Task) -> None:
        if not feed.done() and self._stream_drain_seconds > 0:
            await asyncio.wait({feed}, timeout=self._stream_drain_seconds)
        if not feed.done():
            feed.cancel()
        with suppress(asyncio.CancelledError):
            await feed

    @staticmethod
    def _completed(task_id: str, final: ProviderTaskStatus, logs: list[str]) -> ExecutionResult:
        return ExecutionResult(
            id=task_id,
            status=ExecutionStatus.COMPLETED,
            result=parse_output(final.output),
            logs=logs,
        )

    @staticmethod
    def _failure(task_id: str, exc: Exception, logs: Optional[list[str]] = None) -> ExecutionResult:
        if isinstance(exc, ProviderError):
            message = str(exc)
        else:
            message = f"Browser task failed: {exc}" if str(exc) else "Unknown error occurred"
        logger.error("browser_task_failed", provider_task_id=task_id, error=message)
        return ExecutionResult.failed(message, task_id=task_id, logs=logs)
