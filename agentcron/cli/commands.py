"""agentcron CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
import signal

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from agentcron import __version__

app = typer.Typer(
    name="agentcron",
    help="agentcron - scheduled Claude agent jobs",
    no_args_is_help=True,
)

console = Console()

_RELOAD_HINT = "[dim]A running daemon picks this up after `kill -HUP <pid>` or a restart.[/dim]"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"agentcron v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """agentcron - scheduled Claude agent jobs."""


def _open_store():
    from agentcron.core.config.loader import load_config
    from agentcron.memory.store import MemoryStore

    config = load_config()
    return config, MemoryStore(config.database.path)


def _build_scheduler(config, db):
    """Scheduler wired to the Claude runner, the DB source and (optional) Telegram."""
    from agentcron.core.cron.runner import ClaudeRunner
    from agentcron.core.cron.scheduler import CronScheduler
    from agentcron.core.delivery.queue import DeliveryQueue
    from agentcron.core.delivery.telegram import make_telegram_sender

    queue = DeliveryQueue(
        db,
        default_target=config.delivery.default_chat_id,
        max_attempts=config.delivery.max_attempts,
    )
    if config.delivery_enabled:
        queue.on_send(make_telegram_sender(config.delivery.telegram_token))

    scheduler = CronScheduler(
        db,
        ClaudeRunner(config.claude),
        jobs=config.cron.jobs,
        source=db,
        delivery=queue,
        max_concurrent=config.cron.max_concurrent,
    )
    return scheduler, queue


def _install_signal_handlers(loop, stop, scheduler) -> set:
    """SIGINT/SIGTERM set ``stop``; SIGHUP re-reads agent schedules from the DB.

    Returns the set holding pending reload tasks.
    """
    reloads: set = set()

    def _reload() -> None:
        logger.info("SIGHUP received, reloading cron jobs")
        task = loop.create_task(scheduler.reload())
        reloads.add(task)
        task.add_done_callback(reloads.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    loop.add_signal_handler(signal.SIGHUP, _reload)
    return reloads


# ════════════════════════════════════════════════════════════
# run — start the scheduler daemon
# ════════════════════════════════════════════════════════════


@app.command()
def run() -> None:
    """Start the scheduler and run until SIGINT/SIGTERM. SIGHUP reloads jobs."""
    from agentcron.core.config.log import setup_logging

    config, db = _open_store()
    setup_logging(config.logging)

    if not config.cron.enabled:
        console.print("[yellow]Cron is disabled in config (cron.enabled = false).[/yellow]")
        raise typer.Exit(code=1)

    config.workspace_path.mkdir(parents=True, exist_ok=True)
    scheduler, queue = _build_scheduler(config, db)

    async def _serve() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        _install_signal_handlers(loop, stop, scheduler)

        await scheduler.start()
        if config.delivery_enabled:
            await queue.start(config.delivery.retry_interval_s)
        console.print(
            f"[green]agentcron running[/green] ({len(scheduler.list_jobs())} jobs, "
            f"max_concurrent={config.cron.max_concurrent})"
        )
        try:
            await stop.wait()
        finally:
            queue.stop()
            await scheduler.stop()
            await scheduler.drain(timeout=config.claude.timeout_s)
            console.print("Bye!")

    asyncio.run(_serve())


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and database status."""
    config, db = _open_store()

    table = Table(title="agentcron status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Model", config.claude.model or "-")
    table.add_row("Workspace", str(config.workspace_path))
    table.add_row("DB Path", config.database.path)
    table.add_row("Max Concurrent", str(config.cron.max_concurrent))
    table.add_row("Static Jobs", str(len(config.cron.jobs)))
    table.add_row("Agents", str(len(db.list_agents())))
    table.add_row("Schedules", str(len(db.list_schedules())))
    table.add_row("Runs", str(db.count_runs()))
    table.add_row("Delivery", "telegram" if config.delivery_enabled else "disabled")
    table.add_row("Pending Deliveries", str(db.count_pending_deliveries()))

    console.print(table)


# ════════════════════════════════════════════════════════════
# cron — job inspection + manual trigger (sub-command group)
# ════════════════════════════════════════════════════════════

cron_app = typer.Typer(help="Inspect and trigger cron jobs")
app.add_typer(cron_app, name="cron")


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip() if value else "-"


@cron_app.command("list")
def cron_list() -> None:
    """List all effective jobs (static + dynamic)."""
    config, db = _open_store()
    scheduler, _ = _build_scheduler(config, db)

    jobs = scheduler.list_jobs()
    if not jobs:
        console.print("[dim]No cron jobs found.[/dim]")
        return

    table = Table(title="Cron Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Source", style="blue")
    table.add_column("Schedule", style="yellow")
    table.add_column("Next Run", style="white")
    table.add_column("Last Run", style="dim")
    table.add_column("Runs", style="magenta")
    table.add_column("Enabled", style="green")

    for job in jobs:
        table.add_row(
            job.id,
            job.source,
            f"{job.schedule} ({job.timezone})",
            _fmt_time(job.next_run) if job.enabled else "-",
            _fmt_time(job.last_run),
            str(job.run_count),
            str(job.enabled),
        )

    console.print(table)


@cron_app.command("trigger")
def cron_trigger(
    job_id: str = typer.Argument(help="Job ID, agent ID or schedule prefix"),
) -> None:
    """Run a job right now, outside its schedule."""
    config, db = _open_store()
    scheduler, _ = _build_scheduler(config, db)

    result = asyncio.run(scheduler.run_now(job_id))
    if result is None:
        console.print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(code=1)
    if result.skipped:
        console.print(f"[yellow]Job already running:[/yellow] {job_id}")
        return

    style = "red" if result.is_error else "green"
    console.print(
        f"[{style}]{result.job_id}[/{style}] "
        f"[dim]{result.duration_ms}ms | ${result.cost_usd:.4f} | {result.num_turns} turns[/dim]\n"
    )
    console.print(result.text, markup=False)
    if result.is_error:
        raise typer.Exit(code=1)


@cron_app.command("history")
def cron_history(
    job_id: str = typer.Argument(help="Job ID (or agent ID prefix)"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """Show recent runs of a job, newest first."""
    config, db = _open_store()
    scheduler, _ = _build_scheduler(config, db)

    runs = scheduler.get_run_history(job_id, limit)
    if not runs:
        console.print(f"[dim]No runs found for {job_id}.[/dim]")
        return

    table = Table(title=f"Run History: {job_id}")
    table.add_column("Started", style="cyan")
    table.add_column("Duration", style="yellow")
    table.add_column("Cost", style="magenta")
    table.add_column("Turns", style="blue")
    table.add_column("Status", style="green")
    table.add_column("Result", style="white")

    for r in runs:
        table.add_row(
            _fmt_time(r.started_at),
            f"{r.duration_ms}ms",
            f"${r.cost_usd:.4f}",
            str(r.num_turns),
            "[red]error[/red]" if r.is_error else "ok",
            r.result_preview.replace("\n", " "),
        )

    console.print(table)


# ════════════════════════════════════════════════════════════
# agent — dynamic agent management (sub-command group)
# ════════════════════════════════════════════════════════════

agent_app = typer.Typer(help="Manage agents")
app.add_typer(agent_app, name="agent")


@agent_app.command("add")
def agent_add(
    agent_id: str = typer.Argument(help="Agent ID (e.g. 'researcher')"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    model: str | None = typer.Option(None, "--model", "-m", help="Claude model"),
    system_prompt: str | None = typer.Option(None, "--system-prompt", help="Appended system prompt"),
    max_turns: int | None = typer.Option(None, "--max-turns", help="Max agent turns"),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory"),
    tools: str | None = typer.Option(None, "--tools", help="Comma-separated allowed tools"),
    deliver_to: str | None = typer.Option(None, "--deliver-to", "-d", help="Telegram chat ID"),
    suppress: str | None = typer.Option(None, "--suppress", help="Regex that suppresses delivery"),
    no_announce: bool = typer.Option(False, "--no-announce", help="Never deliver results"),
) -> None:
    """Add a new agent."""
    from agentcron.memory.models import Agent

    _, db = _open_store()

    if db.get_agent(agent_id):
        console.print(f"[yellow]Agent already exists:[/yellow] {agent_id}")
        return

    db.add_agent(
        Agent(
            id=agent_id,
            name=name or agent_id,
            model=model,
            system_prompt=system_prompt,
            max_turns=max_turns,
            working_directory=workdir,
            tools=[t.strip() for t in tools.split(",") if t.strip()] if tools else None,
            deliver_to=deliver_to,
            suppress_pattern=suppress,
            announce=not no_announce,
        )
    )
    console.print(f"[green]Agent created:[/green] {agent_id}")


@agent_app.command("list")
def agent_list() -> None:
    """List all agents."""
    _, db = _open_store()

    agents = db.list_agents()
    if not agents:
        console.print("[dim]No agents found.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Model", style="yellow")
    table.add_column("Deliver To", style="white")
    table.add_column("Schedules", style="magenta")
    table.add_column("Enabled", style="green")

    for a in agents:
        table.add_row(
            a.id,
            a.name,
            a.model or "-",
            a.deliver_to or "-",
            str(len(db.list_schedules(agent_id=a.id))),
            str(a.enabled),
        )

    console.print(table)


@agent_app.command("remove")
def agent_remove(
    agent_id: str = typer.Argument(help="Agent ID to remove"),
) -> None:
    """Remove an agent and all of its schedules."""
    _, db = _open_store()

    if db.remove_agent(agent_id):
        console.print(f"[green]Removed agent:[/green] {agent_id}")
    else:
        console.print(f"[red]Agent not found:[/red] {agent_id}")
        raise typer.Exit(code=1)


# ════════════════════════════════════════════════════════════
# schedule — dynamic schedule management (sub-command group)
# ════════════════════════════════════════════════════════════

schedule_app = typer.Typer(help="Manage agent schedules")
app.add_typer(schedule_app, name="schedule")


@schedule_app.command("add")
def schedule_add(
    agent_id: str = typer.Argument(help="Owning agent ID"),
    expression: str = typer.Argument(help="Cron expression or every:<N><s|m|h|d>"),
    prompt: str = typer.Argument(help="Prompt sent to the agent"),
    schedule_id: str | None = typer.Option(None, "--id", help="Schedule ID (default <agent>-default)"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone"),
) -> None:
    """Attach a schedule to an agent."""
    from agentcron.core.cron.expression import ScheduleError, validate
    from agentcron.core.cron.sources import derived_schedule_id
    from agentcron.memory.models import Schedule

    _, db = _open_store()

    if not db.get_agent(agent_id):
        console.print(f"[red]Agent not found:[/red] {agent_id}")
        raise typer.Exit(code=1)

    try:
        validate(expression, tz)
    except ScheduleError as e:
        console.print(f"[red]Invalid schedule:[/red] {e}")
        raise typer.Exit(code=1)

    schedule_id = schedule_id or derived_schedule_id(agent_id)
    if db.get_schedule(schedule_id):
        console.print(f"[yellow]Schedule already exists:[/yellow] {schedule_id}")
        raise typer.Exit(code=1)

    db.add_schedule(
        Schedule(
            id=schedule_id,
            agent_id=agent_id,
            name=name,
            schedule=expression,
            timezone=tz,
            prompt=prompt,
        )
    )
    console.print(f"[green]Schedule created:[/green] {schedule_id} ({expression}, {tz})")
    console.print(_RELOAD_HINT)


@schedule_app.command("list")
def schedule_list(
    agent_id: str | None = typer.Option(None, "--agent", "-a", help="Filter by agent"),
) -> None:
    """List schedules."""
    _, db = _open_store()

    schedules = db.list_schedules(agent_id=agent_id)
    if not schedules:
        console.print("[dim]No schedules found.[/dim]")
        return

    table = Table(title="Schedules")
    table.add_column("ID", style="cyan")
    table.add_column("Agent", style="blue")
    table.add_column("Schedule", style="yellow")
    table.add_column("Prompt", style="white")
    table.add_column("Enabled", style="green")

    for s in schedules:
        prompt = s.prompt if len(s.prompt) <= 60 else s.prompt[:57] + "..."
        table.add_row(s.id, s.agent_id, f"{s.schedule} ({s.timezone})", prompt, str(s.enabled))

    console.print(table)


@schedule_app.command("remove")
def schedule_remove(
    schedule_id: str = typer.Argument(help="Schedule ID to remove"),
) -> None:
    """Remove a schedule."""
    _, db = _open_store()

    if db.remove_schedule(schedule_id):
        console.print(f"[green]Removed schedule:[/green] {schedule_id}")
        console.print(_RELOAD_HINT)
    else:
        console.print(f"[red]Schedule not found:[/red] {schedule_id}")
        raise typer.Exit(code=1)


def _set_schedule_enabled(schedule_id: str, enabled: bool) -> None:
    from agentcron.memory.models import ScheduleUpdate

    _, db = _open_store()

    if db.update_schedule(schedule_id, ScheduleUpdate(enabled=enabled)) is None:
        console.print(f"[red]Schedule not found:[/red] {schedule_id}")
        raise typer.Exit(code=1)
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Schedule {state}:[/green] {schedule_id}")
    console.print(_RELOAD_HINT)


@schedule_app.command("enable")
def schedule_enable(
    schedule_id: str = typer.Argument(help="Schedule ID"),
) -> None:
    """Enable a schedule. Send SIGHUP to a running daemon (or restart it) to apply."""
    _set_schedule_enabled(schedule_id, True)


@schedule_app.command("disable")
def schedule_disable(
    schedule_id: str = typer.Argument(help="Schedule ID"),
) -> None:
    """Disable a schedule. Send SIGHUP to a running daemon (or restart it) to apply."""
    _set_schedule_enabled(schedule_id, False)
