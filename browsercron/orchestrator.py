"""Wires the browsercron services together.

One provider client and one store are built here and shared by every
service, so the HTTP routes, the CLI and the in-process dispatch job all
go through the same objects.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from browsercron.config import Settings, get_settings
from browsercron.logging_config import get_logger
from browsercron.modules.browser.client import BaseTaskProvider, BrowserUseClient
from browsercron.modules.browser.service import BrowserService
from browsercron.modules.notifications.email import EmailNotificationSender
from browsercron.modules.notifications.service import NotificationService
from browsercron.modules.runs.service import RunRecorder
from browsercron.modules.scheduler.service import DispatcherService, DueSelectionStrategy
from browsercron.modules.tasks.service import TaskService
from browsercron.modules.usage.service import UsageService
from browsercron.store import Store

logger = get_logger(__name__)


class Orchestrator:
    """Owns the service graph and its startup/shutdown."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        provider: Optional[BaseTaskProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self.store = store or Store()
        self.provider = provider or BrowserUseClient(
            api_key=s.browser_use_api_key,
            base_url=s.browser_use_base_url,
            timeout=s.provider_request_timeout_seconds,
        )
        self.browser = BrowserService(
            self.provider,
            poll_interval=s.provider_poll_interval_seconds,
            max_poll_attempts=s.provider_max_poll_attempts,
            stream_max_poll_attempts=s.provider_stream_max_poll_attempts,
        )
        self.usage = UsageService(self.store)
        self.runs = RunRecorder(self.store)
        self.tasks = TaskService(self.store, self.usage, timezone=s.scheduler_timezone)

        sender = None
        if s.smtp_configured:
            sender = EmailNotificationSender(
                server=s.smtp_server,
                port=s.smtp_port,
                username=s.smtp_username,
                password=s.smtp_password,
                use_tls=s.smtp_use_tls,
                from_email=s.notification_from_email,
                app_base_url=s.app_base_url,
            )
        self.notifications = NotificationService(sender)

        self.dispatcher = DispatcherService(
            self.store,
            self.browser,
            self.runs,
            self.usage,
            self.notifications,
            strategy=DueSelectionStrategy(s.due_selection_strategy),
            window=dt.timedelta(minutes=s.due_window_minutes),
            timezone=s.scheduler_timezone,
            max_concurrency=s.dispatch_max_concurrency,
        )

    async def startup(self) -> None:
        s = self.settings
        if not s.provider_configured:
            logger.warning("browser_use_api_key_missing")
        if not s.smtp_configured:
            logger.warning("smtp_not_configured", detail="notifications will be skipped")
        await self.dispatcher.start(s.internal_dispatch_interval_minutes)
        logger.info(
            "orchestrator_started",
            strategy=self.dispatcher.strategy.value,
            internal_interval=s.internal_dispatch_interval_minutes,
        )

    async def shutdown(self) -> None:
        """Gracefully stop the dispatch job, flush notifications, close the client."""
        logger.info("orchestrator_shutdown_begin")
        try:
            await self.dispatcher.stop()
        except Exception as exc:
            logger.error("dispatcher_stop_failed", error=str(exc))
        try:
            await self.notifications.drain(timeout=30)
        except Exception as exc:
            logger.error("notification_drain_failed", error=str(exc))
        try:
            await self.provider.close()
        except Exception as exc:
            logger.error("provider_close_failed", error=str(exc))
        logger.info("orchestrator_shutdown_complete")
