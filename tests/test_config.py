"""Tests for configuration module."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from browsercron.config import Settings


class TestSettings:
    """Tests for the Settings configuration class."""

    @patch.dict(os.environ, {}, clear=True)
    def test_default_values(self) -> None:
        """Settings loads with sane defaults."""
        s = Settings(
            browsercron_env="test",
            database_url="sqlite+aiosqlite:///:memory:",
            _env_file=None,
        )
        assert s.browsercron_env == "test"
        assert s.api_port == 8000
        assert s.browsercron_log_level == "INFO"
        assert s.due_selection_strategy == "next_run_at"
        assert s.due_window_minutes == 5
        assert s.provider_max_poll_attempts == 60
        assert s.provider_stream_max_poll_attempts == 120
        assert s.internal_dispatch_interval_minutes == 0

    def test_strategy_is_normalized(self) -> None:
        s = Settings(database_url="sqlite+aiosqlite:///:memory:", due_selection_strategy=" CRON ")
        assert s.due_selection_strategy == "cron"

    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(database_url="sqlite+aiosqlite:///:memory:", due_selection_strategy="random")

    @patch.dict(os.environ, {}, clear=True)
    def test_configured_flags(self) -> None:
        """Provider and SMTP flags follow credential presence."""
        bare = Settings(database_url="sqlite+aiosqlite:///:memory:", _env_file=None)
        assert bare.provider_configured is False
        assert bare.smtp_configured is False

        full = Settings(
            database_url="sqlite+aiosqlite:///:memory:",
            browser_use_api_key="bu-key",
            smtp_server="smtp.example.com",
            smtp_username="bot",
            _env_file=None,
        )
        assert full.provider_configured is True
        assert full.smtp_configured is True
