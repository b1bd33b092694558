"""browsercron CLI: dispatch, schedule checks, and server control."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(help="browsercron: scheduled browser automation", no_args_is_help=True)
console = Console()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


@app.command("run-due")
def run_due() -> None:
    """Run every due task once and print the outcome of each."""
    from browsercron.database import close_db, init_db
    from browsercron.logging_config import setup_logging
    from browsercron.orchestrator import Orchestrator

    setup_logging()

    async def _run():
        await init_db()
        orch = Orchestrator()
        try:
            report = await orch.dispatcher.run_due_tasks()
            await orch.notifications.drain(timeout=60)
        finally:
            await orch.provider.close()
            await close_db()
        return report

    report = _async_run(_run())
    if report.error:
        console.print(f"[red]✗ Dispatch failed:[/red] {report.error}")
        raise typer.Exit(1)

    if not report.results:
        console.print("[dim]No tasks due.[/dim]")
        return

    table = Table(title=f"Processed {report.processed} task(s)")
    table.add_column("Task", style="cyan")
    table.add_column("Run")
    table.add_column("Result")
    table.add_column("Error", style="dim")
    for r in report.results:
        result = "[green]success[/green]" if r.success else "[red]failed[/red]"
        table.add_row(r.task_id, r.task_run_id or "-", result, r.error or "")
    console.print(table)


@app.command("check-cron")
def check_cron(
    expression: str = typer.Argument(..., help="Cron expression (5 or 6 fields)"),
    count: int = typer.Option(5, "--count", "-n", help="Number of upcoming fire times"),
    timezone: str = typer.Option("UTC", "--tz", help="Evaluation timezone"),
) -> None:
    """Validate a cron expression and show its next fire times."""
    from browsercron.errors import InvalidScheduleError
    from browsercron.modules.scheduler.cron import is_due, next_run_time

    now = dt.datetime.now(dt.UTC)
    try:
        upcoming = []
        cursor: Optional[dt.datetime] = now
        for _ in range(count):
            cursor = next_run_time(expression, now=cursor, timezone=timezone)
            if cursor is None:
                break
            upcoming.append(cursor)
    except InvalidScheduleError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Valid: [bold]{expression}[/bold]")
    console.print(f"  Due now (±5 min): {'yes' if is_due(expression, now=now, timezone=timezone) else 'no'}")
    for fire in upcoming:
        console.print(f"  → {fire.isoformat()}")


@app.command("init-db")
def init_database() -> None:
    """Create database tables."""
    from browsercron.database import close_db, init_db

    async def _run():
        await init_db()
        await close_db()

    _async_run(_run())
    console.print("[green]✓[/green] Database initialized")


@app.command()
def serve() -> None:
    """Start the API server."""
    from browsercron.main import main

    main()


@app.command()
def version() -> None:
    """Show version information."""
    from browsercron import __version__

    console.print(f"browsercron version {__version__}")


if __name__ == "__main__":
    app()
