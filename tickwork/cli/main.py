"""
Tickwork CLI entry point.

Commands:
    tickwork run       — Start the scheduler with the configured jobs
    tickwork status    — Show configured jobs and their last runs
    tickwork validate  — Check job definitions without running anything
    tickwork version   — Show version
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="tickwork",
    help="Tickwork — declarative recurring jobs.",
    add_completion=False,
)

console = Console()

_OUTCOME_STYLE = {
    "success": "green",
    "failure": "red",
    "timed_out": "yellow",
    "never_run": "dim",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to tickwork.toml")


def _load_config(config_path: Path | None):
    from tickwork.core.config import TickworkConfig
    from tickwork.core.errors import ConfigError

    if config_path is not None and not config_path.exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return TickworkConfig.load(project_path=config_path)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


def _job_dicts(config) -> list[dict[str, Any]]:
    """Configured jobs with the default timezone filled in."""
    tz = config.scheduler.default_timezone
    return [
        {**raw, "timezone": raw.get("timezone") or tz} if tz else dict(raw)
        for raw in config.jobs
    ]


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def run(
    config_path: Path = ConfigOption,
    once: bool = typer.Option(False, "--once", help="Run a single tick, wait for its jobs, then exit"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Start the scheduler and run until interrupted."""
    config = _load_config(config_path)
    try:
        ok = asyncio.run(_run(config, once=once, verbose=verbose))
    except KeyboardInterrupt:
        ok = True
    if not ok:
        raise typer.Exit(1)


async def _run(config, once: bool, verbose: bool) -> bool:
    from tickwork.core.bus import EventBus
    from tickwork.core.errors import TickworkError
    from tickwork.core.events import Event, EventType
    from tickwork.core.logs import EventLogger, setup_logging
    from tickwork.scheduler.engine import SchedulerEngine
    from tickwork.scheduler.executors import ShellExecutor
    from tickwork.scheduler.store import SQLiteRunStore

    setup_logging(
        log_dir=config.get_log_dir(),
        console_level=logging.DEBUG if verbose else config.logging.console_level,
        file_level=config.logging.file_level,
    )
    logger = logging.getLogger("tickwork")

    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler is disabled in the configuration.[/yellow]")
        return True

    bus = EventBus()
    if config.logging.log_events:
        bus.on(EventType.ALL, EventLogger(log_dir=config.get_log_dir()).handle)

    async def echo(event: Event) -> None:
        name = event.source.removeprefix("job:")
        if event.type == EventType.JOB_STARTED:
            console.print(f"[cyan]▶[/cyan] {name}")
        elif event.type == EventType.JOB_COMPLETED:
            console.print(f"[green]✓[/green] {name}")
        elif event.type in (EventType.JOB_FAILED, EventType.JOB_TIMED_OUT, EventType.JOB_ERROR):
            console.print(f"[red]✗[/red] {name}: {event.data.get('error')}")

    bus.on("job:*", echo)

    store = SQLiteRunStore(config.get_db_path())
    await store.initialize()
    engine = SchedulerEngine.build(
        executor=ShellExecutor(
            shell=config.executor.shell,
            cwd=Path(config.executor.cwd).expanduser(),
        ),
        store=store,
        bus=bus,
        tick_interval=config.scheduler.tick_interval,
    )

    ok = True
    for raw in _job_dicts(config):
        try:
            await engine.add_job(raw)
        except TickworkError as e:
            ok = False
            console.print(f"[red]Skipping job {raw.get('name', '?')!r}: {e.message}[/red]")

    if not len(engine.registry):
        console.print("[yellow]No jobs to schedule.[/yellow]")
        await store.close()
        return ok

    try:
        if once:
            await engine.tracker.load()
            await engine.tick()
            await engine.drain()
        else:
            await engine.start()
            console.print(
                f"[dim]Scheduling {len(engine.registry)} job(s), "
                f"checking every {engine.tick_interval:g}s. Ctrl+C to stop.[/dim]"
            )
            await asyncio.Event().wait()
    finally:
        await engine.stop()
        if not await engine.drain(timeout=10):
            logger.warning("Some jobs were still running at shutdown")
        await store.close()
    return ok


@app.command()
def status(config_path: Path = ConfigOption) -> None:
    """Show configured jobs with their last recorded run."""
    config = _load_config(config_path)
    asyncio.run(_status(config))


async def _status(config) -> None:
    from tickwork.core.errors import TickworkError
    from tickwork.scheduler.job import JobDefinition
    from tickwork.scheduler.store import SQLiteRunStore
    from tickwork.scheduler.tracker import RunRecord

    if not config.jobs:
        console.print("[dim]No jobs configured.[/dim]")
        return

    records: dict[str, RunRecord] = {}
    db_path = config.get_db_path()
    if db_path.exists():
        store = SQLiteRunStore(db_path)
        try:
            records = await store.load_run_records()
        finally:
            await store.close()

    table = Table(title="Scheduled jobs")
    table.add_column("Name", style="bold")
    table.add_column("Schedule")
    table.add_column("Last outcome")
    table.add_column("Last started")
    table.add_column("Last ended")
    table.add_column("Runs", justify="right")
    table.add_column("Error", style="dim")

    for raw in _job_dicts(config):
        name = raw.get("name", "?")
        try:
            schedule = JobDefinition.from_dict(raw).describe()
        except TickworkError as e:
            schedule = f"[red]invalid: {e.message}[/red]"
        record = records.get(name, RunRecord())
        outcome = "running" if record.is_running else record.last_outcome.value
        style = "cyan" if record.is_running else _OUTCOME_STYLE[record.last_outcome.value]
        table.add_row(
            name,
            schedule,
            f"[{style}]{outcome}[/{style}]",
            _fmt_ts(record.last_run_started_at),
            _fmt_ts(record.last_run_ended_at),
            str(record.run_count),
            record.last_error or "",
        )

    console.print(table)


@app.command()
def validate(config_path: Path = ConfigOption) -> None:
    """Check every configured job definition."""
    from tickwork.core.errors import TickworkError
    from tickwork.scheduler.job import JobDefinition

    config = _load_config(config_path)
    if not config.jobs:
        console.print("[dim]No jobs configured.[/dim]")
        raise typer.Exit(0)

    errors = 0
    seen: set[str] = set()
    for raw in _job_dicts(config):
        name = raw.get("name", "?")
        try:
            job = JobDefinition.from_dict(raw)
        except TickworkError as e:
            errors += 1
            console.print(f"[red]✗[/red] {name}: {e.message}")
            continue
        if job.name in seen:
            errors += 1
            console.print(f"[red]✗[/red] {name}: duplicate job name")
            continue
        seen.add(job.name)
        console.print(f"[green]✓[/green] {job.name} [dim]({job.describe()})[/dim]")

    if errors:
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show Tickwork version."""
    from tickwork import __version__
    console.print(f"Tickwork v{__version__}")


if __name__ == "__main__":
    app()
