"""
agentcron CLI entry point.

Commands:
    agentcron list / add / update / remove / enable / disable
    agentcron run ID        — run a saved schedule now and wait for it
    agentcron test          — run an unsaved definition once
    agentcron next ID       — next trigger time
    agentcron history       — recent runs
    agentcron commands      — discovered command templates
    agentcron validate CRON — check a cron expression
    agentcron daemon        — keep the scheduler running
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentcron.agent.cli_runner import CLIAgentRunner
from agentcron.commands.registry import CommandRegistry
from agentcron.core.bus import EventBus
from agentcron.core.config import AgentCronConfig
from agentcron.core.errors import AgentCronError
from agentcron.core.events import Event, EventType
from agentcron.scheduler.cron import describe_cron, format_next_run, next_run_time, validate_cron
from agentcron.scheduler.engine import SchedulerEngine
from agentcron.scheduler.models import (
    CommandRef,
    Constraints,
    ExecutionMode,
    OutputConfig,
    OutputType,
    RunRecord,
    RunStatus,
    Schedule,
    TargetType,
)
from agentcron.scheduler.store import ScheduleStore
from agentcron.scheduler.tracker import ExecutionTracker
from agentcron.store.sqlite import SQLiteStorage

app = typer.Typer(
    name="agentcron",
    help="agentcron — run AI agent prompts and commands on cron schedules.",
    add_completion=False,
)

console = Console()

T = TypeVar("T")

_STATUS_STYLE = {
    RunStatus.SUCCESS: "green",
    RunStatus.FAILURE: "red",
    RunStatus.SKIPPED: "yellow",
    RunStatus.RUNNING: "cyan",
}


def get_agentcron_home() -> Path:
    """Get the agentcron home directory."""
    return Path.home() / ".agentcron"


# ━━━ Wiring ━━━


@dataclass
class Services:
    """Everything a command needs, built from the loaded config."""

    config: AgentCronConfig
    bus: EventBus
    kv: SQLiteStorage
    store: ScheduleStore
    commands: CommandRegistry
    runner: CLIAgentRunner
    tracker: ExecutionTracker
    engine: SchedulerEngine

    async def close(self) -> None:
        await self.engine.stop()
        await self.tracker.shutdown()
        await self.runner.close()
        await self.store.close()


def load_config(workspace: Path | None) -> AgentCronConfig:
    if workspace is None:
        return AgentCronConfig.load(user_path=get_agentcron_home() / "config.toml")
    return AgentCronConfig.load(
        overrides={"workspace": str(workspace)},
        project_path=workspace / "agentcron.toml",
        user_path=get_agentcron_home() / "config.toml",
    )


async def open_services(config: AgentCronConfig) -> Services:
    workspace = config.get_workspace()

    kv = SQLiteStorage(config.resolve(config.storage.state_db))
    await kv.initialize()
    store = ScheduleStore(
        config.resolve(config.storage.schedules_file),
        kv,
        history_limit=config.scheduler.history_limit,
    )

    commands = CommandRegistry(config.resolve(config.commands.directory), workspace=workspace)
    commands.reload()

    bus = EventBus()
    runner = CLIAgentRunner(config.agent.command, workspace=workspace, timeout=config.agent.timeout)
    tracker = ExecutionTracker(store, runner, commands=commands, bus=bus)
    engine = SchedulerEngine(
        store, tracker, bus=bus, sweep_interval=config.scheduler.sweep_interval
    )
    return Services(config, bus, kv, store, commands, runner, tracker, engine)


def _run(ctx: typer.Context, action: Callable[[Services], Awaitable[T]]) -> T:
    """Run an async action against freshly opened services; domain errors exit 1."""

    async def _main() -> T:
        services = await open_services(load_config(ctx.obj.get("workspace")))
        try:
            return await action(services)
        finally:
            await services.close()

    try:
        return asyncio.run(_main())
    except AgentCronError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    workspace: Path = typer.Option(
        None, "--workspace", "-w", help="Workspace root (default: current directory)"
    ),
) -> None:
    ctx.obj = {"workspace": workspace.expanduser().resolve() if workspace else None}


# ━━━ Formatting ━━━


def _fmt_time(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _status_text(status: RunStatus) -> str:
    style = _STATUS_STYLE.get(status, "")
    return f"[{style}]{status.value}[/{style}]" if style else status.value


def _print_record(record: RunRecord) -> None:
    lines = [
        f"[bold]Status:[/bold] {_status_text(record.status)}",
        f"[bold]Started:[/bold] {_fmt_time(record.started_at)}",
        f"[bold]Finished:[/bold] {_fmt_time(record.finished_at)}",
        f"[bold]Duration:[/bold] {record.execution_time or 0:.1f}s",
    ]
    if record.files_changed is not None:
        lines.append(f"[bold]Files changed:[/bold] {record.files_changed}")
    if record.output_location:
        lines.append(f"[bold]Output:[/bold] {escape(record.output_location)}")
    if record.error:
        lines.append(f"[bold red]Error:[/bold red] {escape(record.error)}")
    if record.summary:
        lines.append("")
        lines.append(escape(record.summary))
    console.print(Panel(
        "\n".join(lines),
        title=f"[bold]{escape(record.schedule_name)}[/bold]",
        border_style=_STATUS_STYLE.get(record.status, "dim"),
    ))


def _output_type(value: str) -> OutputType:
    try:
        return OutputType(value)
    except ValueError:
        raise typer.BadParameter(f"Unknown output type: {value}")


def _build_schedule(
    base: Schedule,
    *,
    cron: str | None = None,
    prompt: str | None = None,
    command_file: str | None = None,
    command_id: str | None = None,
    timezone: str | None = None,
    mode: str | None = None,
    output_type: str | None = None,
    output_location: str | None = None,
    max_runtime: float | None = None,
    max_files: int | None = None,
) -> Schedule:
    """Apply CLI options on top of a schedule (new or existing)."""
    if cron is not None:
        base.cron = cron
    if prompt is not None:
        base.target_type = TargetType.PROMPT
        base.prompt_template = prompt
        base.command_ref = None
    if command_file is not None or command_id is not None:
        if not command_file or not command_id:
            raise typer.BadParameter("--command-file and --command-id go together")
        base.target_type = TargetType.COMMAND
        base.command_ref = CommandRef(file_path=command_file, command_id=command_id)
        base.prompt_template = None
    if timezone is not None:
        base.timezone = timezone or None
    if mode is not None:
        try:
            base.execution_mode = ExecutionMode(mode)
        except ValueError:
            raise typer.BadParameter(f"Unknown execution mode: {mode}")
    if output_type is not None or output_location is not None:
        base.output_config = OutputConfig(
            type=_output_type(output_type) if output_type else base.output_config.type,
            location=output_location if output_location is not None else base.output_config.location,
        )
    if max_runtime is not None or max_files is not None:
        limits = Constraints(max_runtime_seconds=max_runtime, max_files_changed=max_files)
        base.constraints = limits.merged_over(base.constraints)
    return base


# ━━━ Schedule commands ━━━


@app.command("list")
def list_schedules(ctx: typer.Context) -> None:
    """List schedules with their next run time."""

    async def action(s: Services) -> None:
        schedules = await s.engine.get_schedules()
        if not schedules:
            console.print("[dim]No schedules yet. Add one with 'agentcron add'.[/dim]")
            return

        table = Table(title="Schedules", border_style="cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Name", style="bold", no_wrap=True)
        table.add_column("Enabled")
        table.add_column("Cron")
        table.add_column("Target")
        table.add_column("Next run")
        for schedule in schedules:
            table.add_row(
                schedule.id,
                escape(schedule.name),
                "[green]yes[/green]" if schedule.enabled else "[dim]no[/dim]",
                f"{schedule.cron}\n[dim]{describe_cron(schedule.cron)}[/dim]",
                escape(schedule.target_label),
                format_next_run(schedule.cron, schedule.timezone) if schedule.enabled else "-",
            )
        console.print(table)

    _run(ctx, action)


@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Schedule name"),
    cron: str = typer.Option(..., "--cron", "-c", help="5-field cron expression"),
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt template"),
    command_file: str = typer.Option(None, "--command-file", help="Command file path"),
    command_id: str = typer.Option(None, "--command-id", help="Command id in that file"),
    timezone: str = typer.Option(None, "--timezone", "-z", help="IANA timezone"),
    mode: str = typer.Option("ide", "--mode", help="Execution mode: ide or cloud"),
    output_type: str = typer.Option(None, "--output", help="Output type: none, markdown, diff, pr"),
    output_location: str = typer.Option(None, "--output-location", help="Output path"),
    max_runtime: float = typer.Option(None, "--max-runtime", help="Max runtime in seconds"),
    max_files: int = typer.Option(None, "--max-files", help="Max files changed"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the schedule disabled"),
) -> None:
    """Add a schedule."""
    if prompt is None and command_id is None:
        console.print("[red]Error:[/red] either --prompt or --command-file/--command-id is required")
        raise typer.Exit(1)

    schedule = _build_schedule(
        Schedule.new(name, cron, enabled=not disabled),
        prompt=prompt,
        command_file=command_file,
        command_id=command_id,
        timezone=timezone,
        mode=mode,
        output_type=output_type,
        output_location=output_location,
        max_runtime=max_runtime,
        max_files=max_files,
    )

    async def action(s: Services) -> None:
        await s.engine.add_schedule(schedule)
        console.print(f"[green]Added schedule[/green] {escape(schedule.name)} [dim]({schedule.id})[/dim]")
        if schedule.enabled:
            console.print(f"[dim]Next run: {format_next_run(schedule.cron, schedule.timezone)}[/dim]")

    _run(ctx, action)


@app.command()
def update(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    name: str = typer.Option(None, "--name", "-n", help="New name"),
    cron: str = typer.Option(None, "--cron", "-c", help="5-field cron expression"),
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt template"),
    command_file: str = typer.Option(None, "--command-file", help="Command file path"),
    command_id: str = typer.Option(None, "--command-id", help="Command id in that file"),
    timezone: str = typer.Option(None, "--timezone", "-z", help="IANA timezone ('' for local)"),
    mode: str = typer.Option(None, "--mode", help="Execution mode: ide or cloud"),
    output_type: str = typer.Option(None, "--output", help="Output type: none, markdown, diff, pr"),
    output_location: str = typer.Option(None, "--output-location", help="Output path"),
    max_runtime: float = typer.Option(None, "--max-runtime", help="Max runtime in seconds"),
    max_files: int = typer.Option(None, "--max-files", help="Max files changed"),
) -> None:
    """Update fields of an existing schedule."""

    async def action(s: Services) -> None:
        schedule = await s.engine.get_schedule(schedule_id)
        if name is not None:
            schedule.name = name
        _build_schedule(
            schedule,
            cron=cron,
            prompt=prompt,
            command_file=command_file,
            command_id=command_id,
            timezone=timezone,
            mode=mode,
            output_type=output_type,
            output_location=output_location,
            max_runtime=max_runtime,
            max_files=max_files,
        )
        await s.engine.update_schedule(schedule)
        console.print(f"[green]Updated schedule[/green] {escape(schedule.name)} [dim]({schedule.id})[/dim]")

    _run(ctx, action)


@app.command()
def remove(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
) -> None:
    """Remove a schedule."""

    async def action(s: Services) -> None:
        await s.engine.remove_schedule(schedule_id)
        console.print(f"[green]Removed schedule[/green] {schedule_id}")

    _run(ctx, action)


@app.command()
def enable(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
) -> None:
    """Enable a schedule in this workspace."""

    async def action(s: Services) -> None:
        nxt = await s.engine.enable_schedule(schedule_id)
        console.print(f"[green]Enabled[/green] {schedule_id}")
        if nxt is not None:
            console.print(f"[dim]Next run: {_fmt_time(nxt)}[/dim]")

    _run(ctx, action)


@app.command()
def disable(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
) -> None:
    """Disable a schedule in this workspace."""

    async def action(s: Services) -> None:
        await s.engine.disable_schedule(schedule_id)
        console.print(f"[yellow]Disabled[/yellow] {schedule_id}")

    _run(ctx, action)


@app.command("next")
def next_run(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
) -> None:
    """Show when a schedule runs next."""

    async def action(s: Services) -> None:
        schedule = await s.engine.get_schedule(schedule_id)
        nxt = await s.engine.get_next_run_time(schedule_id)
        if not schedule.enabled:
            console.print(f"{escape(schedule.name)}: [dim]disabled[/dim]")
        elif nxt is None:
            console.print(f"{escape(schedule.name)}: [red]cannot compute next run[/red]")
        else:
            console.print(
                f"{escape(schedule.name)}: {_fmt_time(nxt)} "
                f"[dim]({describe_cron(schedule.cron)})[/dim]"
            )

    _run(ctx, action)


# ━━━ Runs ━━━


@app.command()
def run(
    ctx: typer.Context,
    schedule_id: str = typer.Argument(..., help="Schedule id"),
) -> None:
    """Run a saved schedule now and wait for the result."""

    async def action(s: Services) -> RunRecord | None:
        run_id = await s.engine.run_schedule(schedule_id)
        console.print(f"[dim]Started {run_id}[/dim]")
        return await s.tracker.wait(run_id)

    record = _run(ctx, action)
    if record is not None:
        _print_record(record)
        if record.status is not RunStatus.SUCCESS:
            raise typer.Exit(1)


@app.command()
def test(
    ctx: typer.Context,
    cron: str = typer.Option("* * * * *", "--cron", "-c", help="Cron expression to validate"),
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt template"),
    command_file: str = typer.Option(None, "--command-file", help="Command file path"),
    command_id: str = typer.Option(None, "--command-id", help="Command id in that file"),
    name: str = typer.Option("Test run", "--name", "-n", help="Label for the run"),
    max_runtime: float = typer.Option(None, "--max-runtime", help="Max runtime in seconds"),
    max_files: int = typer.Option(None, "--max-files", help="Max files changed"),
) -> None:
    """Run a schedule definition once without saving it."""
    if prompt is None and command_id is None:
        console.print("[red]Error:[/red] either --prompt or --command-file/--command-id is required")
        raise typer.Exit(1)

    schedule = _build_schedule(
        Schedule.new(name, cron),
        prompt=prompt,
        command_file=command_file,
        command_id=command_id,
        max_runtime=max_runtime,
        max_files=max_files,
    )

    async def action(s: Services) -> RunRecord | None:
        run_id = await s.engine.run_schedule_direct(schedule)
        return await s.tracker.wait(run_id)

    record = _run(ctx, action)
    if record is not None:
        _print_record(record)
        if record.status is not RunStatus.SUCCESS:
            raise typer.Exit(1)


@app.command()
def history(
    ctx: typer.Context,
    schedule_id: str = typer.Option(None, "--schedule", "-s", help="Only this schedule"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
) -> None:
    """Show recent runs, newest first."""

    async def action(s: Services) -> None:
        records = await s.engine.get_run_history(schedule_id, limit)
        if not records:
            console.print("[dim]No runs recorded.[/dim]")
            return

        table = Table(title="Run history", border_style="cyan")
        table.add_column("Started", style="dim")
        table.add_column("Schedule", style="bold", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Time", justify="right")
        table.add_column("Files", justify="right")
        table.add_column("Summary")
        for record in records:
            detail = record.error if record.status is not RunStatus.SUCCESS else record.summary
            table.add_row(
                _fmt_time(record.started_at),
                escape(record.schedule_name),
                _status_text(record.status),
                f"{record.execution_time or 0:.1f}s",
                "-" if record.files_changed is None else str(record.files_changed),
                escape((detail or "")[:80]),
            )
        console.print(table)

    _run(ctx, action)


@app.command("clear-history")
def clear_history(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all run history for this workspace."""
    if not yes and not typer.confirm("Delete all run history?"):
        raise typer.Exit(0)

    async def action(s: Services) -> None:
        await s.engine.clear_run_history()
        console.print("[green]Run history cleared[/green]")

    _run(ctx, action)


# ━━━ Commands & cron ━━━


@app.command("commands")
def list_commands(ctx: typer.Context) -> None:
    """List command templates found in the commands directory."""

    async def action(s: Services) -> None:
        grouped = s.commands.by_file()
        if not grouped:
            console.print(f"[dim]No commands found in {s.commands.commands_dir}[/dim]")
            return

        table = Table(title="Commands", border_style="cyan")
        table.add_column("File", style="dim")
        table.add_column("ID", style="bold")
        table.add_column("Description")
        workspace = s.config.get_workspace()
        for file_path, commands in grouped.items():
            path = Path(file_path)
            shown = path.relative_to(workspace) if path.is_relative_to(workspace) else path
            for command in commands:
                table.add_row(str(shown), escape(command.id), escape(command.description or ""))
        console.print(table)

    _run(ctx, action)


@app.command()
def validate(
    expression: str = typer.Argument(..., help="Cron expression, quoted"),
    timezone: str = typer.Option(None, "--timezone", "-z", help="IANA timezone"),
) -> None:
    """Check a cron expression and show its next run."""
    check = validate_cron(expression)
    if not check.valid:
        console.print(f"[red]Invalid:[/red] {escape(check.error or expression)}")
        raise typer.Exit(1)

    nxt = next_run_time(expression, timezone)
    if nxt is None:
        console.print(f"[red]Invalid timezone:[/red] {escape(timezone or '')}")
        raise typer.Exit(1)

    console.print(f"[green]Valid[/green] {describe_cron(expression)}")
    console.print(f"[dim]Next run: {_fmt_time(nxt)}[/dim]")


# ━━━ Daemon ━━━


@app.command()
def daemon(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the scheduler until interrupted."""
    try:
        asyncio.run(_run_daemon(ctx.obj.get("workspace"), verbose))
    except AgentCronError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


async def _run_daemon(workspace: Path | None, verbose: bool = False) -> None:
    from agentcron.middleware.logging import EventLogger, setup_logging

    config = load_config(workspace)
    console_level = logging.DEBUG if verbose else getattr(
        logging, config.logging.level.upper(), logging.INFO
    )
    setup_logging(log_dir=config.get_log_dir(), console_level=console_level)

    services = await open_services(config)
    services.bus.use(EventLogger(config.get_log_dir(), config.logging.log_events).middleware)

    async def on_run_event(event: Event) -> None:
        message = event.data.get("message")
        if not message:
            return
        style = {
            EventType.RUN_SUCCESS: "green",
            EventType.RUN_FAILURE: "red",
            EventType.RUN_SKIPPED: "yellow",
            EventType.RUN_CANCELLED: "yellow",
        }.get(event.type, "cyan")
        console.print(f"[{style}]{escape(message)}[/{style}]")

    services.bus.on("run:*", on_run_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    try:
        await services.engine.start()
        console.print(Panel(
            f"[bold]Workspace:[/bold] {config.get_workspace()}\n"
            f"[bold]Schedules armed:[/bold] {len(services.engine.jobs)}\n"
            f"[dim]Ctrl-C to stop[/dim]",
            title="[bold cyan]agentcron daemon[/bold cyan]",
            border_style="cyan",
        ))
        await stop.wait()
    finally:
        await services.close()


@app.command()
def version() -> None:
    """Show agentcron version."""
    from agentcron import __version__
    console.print(f"agentcron v{__version__}")


if __name__ == "__main__":
    app()
