"""schedbot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone

import typer
from rich.console import Console
from rich.table import Table

from schedbot import __version__

app = typer.Typer(
    name="schedbot",
    help="schedbot - scheduled agent task runner",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"schedbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """schedbot - scheduled agent task runner."""


def _engine():
    from schedbot.core.config.loader import load_config
    from schedbot.core.cron.service import build_engine

    return build_engine(load_config())


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


# ════════════════════════════════════════════════════════════
# run — start the scheduler daemon
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="Override logging.level"),
) -> None:
    """Start the scheduler (one-shot dispatch + sweep) and run until interrupted."""
    from loguru import logger

    engine = _engine()
    logger.remove()
    logger.add(sys.stderr, level=(log_level or engine.config.logging.level).upper())

    if not engine.config.scheduler.enabled:
        console.print("[yellow]Scheduler disabled (scheduler.enabled = false)[/yellow]")
        raise typer.Exit(code=1)
    if not engine.config.agent_api_configured:
        console.print("[yellow]Agent API key not set; scheduled runs will be skipped.[/yellow]")

    async def _serve() -> None:
        await engine.scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await engine.scheduler.stop()

    console.print(f"[green]schedbot running[/green] (db: {engine.config.database.path})")
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\nBye!")


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and task status."""
    engine = _engine()
    config = engine.config
    stats = engine.service.stats()

    table = Table(title="schedbot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Agent API", config.agent_api.base_url)
    table.add_row("API Key", "set" if config.agent_api_configured else "missing")
    table.add_row("Email", "configured" if config.email_configured else "off")
    table.add_row("DB Path", config.database.path)
    table.add_row("Tasks", str(stats.total))
    table.add_row("Active", str(stats.active))
    table.add_row("Errored", str(stats.errored))
    table.add_row("Running", str(stats.running))

    console.print(table)


# ════════════════════════════════════════════════════════════
# task — task management (sub-command group)
# ════════════════════════════════════════════════════════════

task_app = typer.Typer(help="Manage scheduled tasks")
app.add_typer(task_app, name="task")


@task_app.command("list")
def task_list(
    owner: str | None = typer.Option(None, "--owner", "-o", help="Only this owner's tasks"),
) -> None:
    """List tasks (active first)."""
    from schedbot.core.cron.evaluator import describe_schedule

    tasks = _engine().service.list_tasks(owner)
    if not tasks:
        console.print("[dim]No tasks found.[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Schedule", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Last Run", style="dim")
    table.add_column("Next Run", style="blue")

    for t in tasks:
        state = t.status
        if t.is_running:
            state += " (running)"
        elif t.consecutive_failures:
            state += f" ({t.consecutive_failures} failures)"
        table.add_row(
            t.id,
            t.name,
            describe_schedule(t.schedule),
            state,
            f"{_fmt_ms(t.last_run_at)} {t.last_run_status or ''}".strip(),
            _fmt_ms(t.next_run_at),
        )

    console.print(table)


@task_app.command("add")
def task_add(
    name: str = typer.Argument(help="Task name"),
    prompt: str = typer.Argument(help="Instructions sent to the agent"),
    schedule: str = typer.Option(..., "--schedule", "-s", help="5-field cron, e.g. '0 9 * * *'"),
    engine: str | None = typer.Option(None, "--engine", "-e", help="Agent engine"),
    tz: str | None = typer.Option(None, "--tz", help="IANA timezone"),
    owner: str | None = typer.Option(None, "--owner", "-o", help="Owner ID"),
    email: str | None = typer.Option(None, "--email", help="Notify this address"),
) -> None:
    """Create a task."""
    from schedbot.core.cron.errors import TaskError
    from schedbot.core.cron.evaluator import is_valid_cron

    if not is_valid_cron(schedule):
        console.print(f"[red]Invalid cron expression:[/red] {schedule}")
        raise typer.Exit(code=1)

    try:
        task = _engine().service.create(
            name=name, prompt=prompt, schedule=schedule, engine=engine,
            timezone=tz, owner_id=owner, notify_email=email,
        )
    except TaskError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Task created:[/green] {task.id}")
    console.print(f"  [dim]next run: {_fmt_ms(task.next_run_at)}[/dim]")


@task_app.command("pause")
def task_pause(task_id: str = typer.Argument(help="Task ID")) -> None:
    """Pause a task."""
    from schedbot.core.cron.errors import TaskNotFoundError

    try:
        _engine().service.pause(task_id)
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Paused:[/green] {task_id}")


@task_app.command("resume")
def task_resume(task_id: str = typer.Argument(help="Task ID")) -> None:
    """Resume a paused or errored task."""
    from schedbot.core.cron.errors import TaskNotFoundError

    try:
        task = _engine().service.resume(task_id)
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Resumed:[/green] {task_id} (next run: {_fmt_ms(task.next_run_at)})")


@task_app.command("remove")
def task_remove(task_id: str = typer.Argument(help="Task ID to remove")) -> None:
    """Remove a task with its history and notification settings."""
    from schedbot.core.cron.errors import TaskNotFoundError

    try:
        _engine().service.remove(task_id)
    except TaskNotFoundError:
        console.print(f"[red]Task not found:[/red] {task_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed task:[/green] {task_id}")


@task_app.command("trigger")
def task_trigger(task_id: str = typer.Argument(help="Task ID")) -> None:
    """Run a task now and wait for the result."""
    from schedbot.core.cron.errors import TaskError
    from schedbot.core.cron.results import extract_result_text

    engine = _engine()
    try:
        outcome = asyncio.run(engine.service.trigger(task_id))
    except TaskError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if outcome.failed:
        console.print(f"[red]Run failed:[/red] {outcome.error}")
        raise typer.Exit(code=1)
    console.print(f"[green]Run {outcome.status}[/green] ({outcome.duration_ms}ms)")
    text = extract_result_text(outcome.result)
    if text:
        console.print(text)


@task_app.command("history")
def task_history(
    task_id: str = typer.Argument(help="Task ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs"),
) -> None:
    """Show recent runs of a task."""
    results = _engine().service.history(task_id, limit=limit)
    if not results:
        console.print("[dim]No runs yet.[/dim]")
        return

    table = Table(title=f"Runs of {task_id}")
    table.add_column("#", style="dim")
    table.add_column("Started", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Duration", style="yellow")
    table.add_column("Error", style="red")

    for r in results:
        duration = f"{r.duration_ms / 1000:.1f}s" if r.duration_ms is not None else "-"
        table.add_row(str(r.id), _fmt_ms(r.started_at), r.status, duration, r.error or "")

    console.print(table)


@task_app.command("notify")
def task_notify(
    task_id: str = typer.Argument(help="Task ID"),
    email: str | None = typer.Option(None, "--email", help="Recipient address"),
    on_success: bool = typer.Option(True, "--on-success/--no-on-success"),
    on_failure: bool = typer.Option(True, "--on-failure/--no-on-failure"),
    subject: str | None = typer.Option(None, "--subject", help="Custom subject"),
    disable: bool = typer.Option(False, "--disable", help="Turn notifications off"),
) -> None:
    """Show or set email notifications for a task."""
    from schedbot.core.cron.errors import TaskNotFoundError
    from schedbot.core.cron.types import NotificationChannel

    service = _engine().service
    try:
        if disable:
            prefs = service.get_notifications(task_id)
            prefs = service.set_notifications(task_id, False, prefs.channels)
        elif email:
            channel = NotificationChannel(
                channel="email", to=email, on_success=on_success,
                on_failure=on_failure, custom_subject=subject,
            )
            prefs = service.set_notifications(task_id, True, [channel])
        else:
            service.get(task_id)
            prefs = service.get_notifications(task_id)
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    state = "[green]enabled[/green]" if prefs.enabled else "[dim]disabled[/dim]"
    console.print(f"Notifications for {task_id}: {state}")
    for c in prefs.channels:
        events = [e for e, on in (("success", c.on_success), ("failure", c.on_failure)) if on]
        console.print(f"  {c.channel} → {c.to} ({', '.join(events) or 'none'})")
