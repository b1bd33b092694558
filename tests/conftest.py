"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("BROWSERCRON_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BROWSERCRON_LOG_LEVEL", "WARNING")

from browsercron.config import Settings
from browsercron.database import Base
from browsercron.modules.browser.models import ExecutionResult, ExecutionStatus
from browsercron.store import Store

NOW = dt.datetime(2025, 3, 14, 12, 0, tzinfo=dt.UTC)


class FakeClock:
    """Controllable UTC clock for services that accept a ``clock``."""

    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    """Return test settings."""
    return Settings(
        browsercron_env="test",
        database_url="sqlite+aiosqlite:///:memory:",
        browsercron_log_level="WARNING",
        browser_use_api_key="test-key",
        cron_secret="test-cron-secret",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a clean file-backed database per test.

    A file is used instead of ``:memory:`` so concurrent sessions see the
    same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture
def completed_result():
    """Factory for successful execution results."""
    def _make(result=None, logs=None) -> ExecutionResult:
        return ExecutionResult(
            id="bu-task-1",
            status=ExecutionStatus.COMPLETED,
            result=result if result is not None else {"result": ["ok"]},
            logs=logs or [],
        )
    return _make


@pytest.fixture
def mock_browser(completed_result):
    """A BrowserService double whose runs succeed by default."""
    browser = AsyncMock()
    browser.run_task = AsyncMock(return_value=completed_result())
    browser.stream_task = AsyncMock(return_value=completed_result())
    return browser
