"""Tests for the browsercron CLI."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from browsercron.cli.commands import app
from browsercron.modules.scheduler.service import DispatchReport, TaskOutcome

runner = CliRunner()


def test_check_cron_lists_fire_times():
    result = runner.invoke(app, ["check-cron", "0 9 * * *", "-n", "3"])
    assert result.exit_code == 0
    assert "Valid" in result.output
    assert result.output.count("→") == 3


def test_check_cron_invalid_expression():
    result = runner.invoke(app, ["check-cron", "99 * * * *"])
    assert result.exit_code == 1
    assert "Invalid cron expression" in result.output


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "browsercron version" in result.output


def _patched_orchestrator(report: DispatchReport):
    orch = MagicMock()
    orch.dispatcher.run_due_tasks = AsyncMock(return_value=report)
    orch.notifications.drain = AsyncMock()
    orch.provider.close = AsyncMock()
    return orch


def test_run_due_prints_results():
    report = DispatchReport(processed=1, results=[TaskOutcome("t1", "r1", True)])
    orch = _patched_orchestrator(report)
    with patch("browsercron.orchestrator.Orchestrator", return_value=orch), \
            patch("browsercron.database.init_db", new=AsyncMock()), \
            patch("browsercron.database.close_db", new=AsyncMock()):
        result = runner.invoke(app, ["run-due"])

    assert result.exit_code == 0
    assert "Processed 1 task(s)" in result.output
    orch.notifications.drain.assert_awaited_once()
    orch.provider.close.assert_awaited_once()


def test_run_due_reports_dispatch_failure():
    orch = _patched_orchestrator(DispatchReport(error="database is locked"))
    with patch("browsercron.orchestrator.Orchestrator", return_value=orch), \
            patch("browsercron.database.init_db", new=AsyncMock()), \
            patch("browsercron.database.close_db", new=AsyncMock()):
        result = runner.invoke(app, ["run-due"])

    assert result.exit_code == 1
    assert "database is locked" in result.output


def _fresh_checkout(tmp_path, monkeypatch):
    """Empty working directory using the default relative SQLite path."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///data/browsercron.db")
    monkeypatch.setattr("browsercron.config._settings", None)
    monkeypatch.setattr("browsercron.database._engine", None)
    monkeypatch.setattr("browsercron.database._session_factory", None)


def test_init_db_in_fresh_directory(tmp_path, monkeypatch):
    _fresh_checkout(tmp_path, monkeypatch)

    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "data" / "browsercron.db").exists()


def test_run_due_in_fresh_directory(tmp_path, monkeypatch):
    _fresh_checkout(tmp_path, monkeypatch)

    result = runner.invoke(app, ["run-due"])

    assert result.exit_code == 0, result.output
    assert "No tasks due" in result.output
