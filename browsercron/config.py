"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    browsercron_env: str = "development"
    browsercron_log_level: str = "INFO"
    app_base_url: str = "http://localhost:8000"

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/browsercron.db"

    # ── Browser Use provider ─────────────────────────────────────────
    browser_use_api_key: str = ""
    browser_use_base_url: str = "https://api.browser-use.com/api/v2"
    provider_request_timeout_seconds: float = 30.0
    provider_poll_interval_seconds: float = 5.0
    provider_max_poll_attempts: int = 60
    provider_stream_max_poll_attempts: int = 120

    # ── Scheduling ───────────────────────────────────────────────────
    cron_secret: str = ""
    due_selection_strategy: str = "next_run_at"  # next_run_at | cron
    due_window_minutes: int = 5
    scheduler_timezone: str = "UTC"
    dispatch_max_concurrency: int = 10
    internal_dispatch_interval_minutes: int = 0  # 0 = external trigger only

    # ── Email notifications (SMTP) ───────────────────────────────────
    smtp_server: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    notification_from_email: str = "notifications@browsercron.local"

    @field_validator("due_selection_strategy")
    @classmethod
    def _check_strategy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("next_run_at", "cron"):
            raise ValueError(f"Unknown due selection strategy: {value}")
        return value

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def smtp_configured(self) -> bool:
        """Check if outbound e-mail can be sent."""
        return bool(self.smtp_server and self.smtp_username)

    @property
    def provider_configured(self) -> bool:
        return bool(self.browser_use_api_key)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
