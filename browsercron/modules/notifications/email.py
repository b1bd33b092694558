"""SMTP delivery of run notifications."""

from __future__ import annotations

import asyncio
import email.mime.multipart
import email.mime.text
import html
import json
import smtplib
from typing import Optional

from browsercron.errors import NotificationDeliveryError
from browsercron.logging_config import get_logger
from browsercron.modules.notifications.models import NotificationPayload

logger = get_logger(__name__)


def _format_duration(duration_ms: Optional[int]) -> str:
    if duration_ms is None:
        return "n/a"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


def build_subject(payload: NotificationPayload) -> str:
    if payload.succeeded:
        return f"✅ Task completed: {payload.task_name}"
    return f"❌ Task failed: {payload.task_name}"


def build_bodies(payload: NotificationPayload, app_base_url: str = "") -> tuple[str, str]:
    """Return (text, html) bodies for a notification."""
    link = f"{app_base_url.rstrip('/')}/tasks/{payload.task_id}" if app_base_url else ""
    output = json.dumps(payload.output, indent=2, default=str) if payload.output is not None else ""

    lines = [
        f"Task: {payload.task_name}",
        f"Status: {payload.status}",
        f"Duration: {_format_duration(payload.duration_ms)}",
    ]
    if payload.reasons:
        lines.append("Why you're receiving this: " + "; ".join(payload.reasons))
    if payload.error:
        lines += ["", "Error:", payload.error]
    if output:
        lines += ["", "Output:", output]
    if link:
        lines += ["", f"View run history: {link}"]
    text = "\n".join(lines)

    parts = [
        f"<h2>{html.escape(build_subject(payload))}</h2>",
        f"<p><strong>Status:</strong> {html.escape(payload.status)}<br>",
        f"<strong>Duration:</strong> {_format_duration(payload.duration_ms)}</p>",
    ]
    if payload.reasons:
        parts.append(f"<p><em>{html.escape('; '.join(payload.reasons))}</em></p>")
    if payload.error:
        parts.append(f"<p style=\"color:#b91c1c\">{html.escape(payload.error)}</p>")
    if output:
        parts.append(f"<pre>{html.escape(output)}</pre>")
    if link:
        parts.append(f"<p><a href=\"{html.escape(link)}\">View run history</a></p>")
    return text, "\n".join(parts)


class EmailNotificationSender:
    """Sends notifications through an SMTP relay."""

    def __init__(
        self,
        server: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        app_base_url: str = "",
    ) -> None:
        self._server = server
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._from_email = from_email or username
        self._app_base_url = app_base_url

    async def send(self, payload: NotificationPayload) -> None:
        subject = build_subject(payload)
        text_body, html_body = build_bodies(payload, self._app_base_url)

        def _send() -> None:
            msg = email.mime.multipart.MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self._from_email
            msg["To"] = payload.to
            msg.attach(email.mime.text.MIMEText(text_body, "plain"))
            msg.attach(email.mime.text.MIMEText(html_body, "html"))

            with smtplib.SMTP(self._server, self._port) as server:
                if self._use_tls:
                    server.starttls()
                if self._username:
                    server.login(self._username, self._password)
                server.sendmail(self._from_email, [payload.to], msg.as_string())

        try:
            await asyncio.to_thread(_send)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(f"SMTP delivery to {payload.to} failed: {exc}") from exc
        logger.info("notification_email_sent", to=payload.to, subject=subject)
