import asyncio
import os
from pathlib import Path
from uuid import uuid4

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from warden.agent.safety import SafetyLevel
from warden.config import PERSIST_KEYS, Config, get_config, load_user_settings, save_user_settings
from warden.database import Database
from warden.events import SessionStopped
from warden.history.store import HistoryStore
from warden.llm.gateway import Gateway
from warden.llm.models import PROVIDERS
from warden.logging import configure_logging
from warden.memory.formatting import CATEGORY_LABELS
from warden.memory.store import LearningStore
from warden.session.models import SessionOptions
from warden.skills.registry import SkillRegistry, skill_dirs
from warden.terminal.profiles import PROFILES, get_profile

console = Console()


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """warden - keeps an AI coding CLI working while you are away"""
    ctx.ensure_object(dict)
    try:
        config = get_config()
    except ValidationError as e:
        ctx.obj["config_error"] = str(e)
    else:
        ctx.obj["config"] = config
        configure_logging(config.log_level)

    if ctx.invoked_subcommand is None:
        console.print("[bold]warden[/bold] - keeps an AI coding CLI working while you are away\n")
        console.print('Run [cyan]warden run -t "your task"[/cyan] to supervise a CLI session.')
        console.print("\nUse [cyan]warden --help[/cyan] for all commands.")


def _config(ctx) -> Config:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.pass_context
def status(ctx):
    """Show configuration and which providers have keys."""
    config = _config(ctx)

    console.print("[bold]warden status[/bold]")
    console.print()
    console.print(f"Data dir: [cyan]{config.db_dir}[/cyan]")
    console.print(f"CLI profile: {config.cli_profile}")
    console.print(f"Safety level: {config.default_safety_level}")
    console.print(f"Idle timeout: {config.idle_timeout:g}s, time limit: {config.max_duration} min")
    console.print()
    for name in PROVIDERS:
        key = "[green]key set[/green]" if config.api_key_for(name) else "[dim]no key[/dim]"
        marker = " (default)" if name == config.default_provider else ""
        console.print(f"  {name}{marker}: {config.model_for(name)} {key}")


@main.command()
@click.option("-t", "--task", required=True, help="Task to hand to the CLI")
@click.option("--cli", "cli_profile", type=click.Choice(list(PROFILES)), default=None, help="CLI to supervise")
@click.option("--project", type=click.Path(exists=True, file_okay=False), default=None, help="Project directory")
@click.option("--safety", type=click.Choice([s.value for s in SafetyLevel]), default=None, help="Safety level")
@click.option("--minutes", type=int, default=None, help="Time limit in minutes, 0 = unlimited")
@click.option("--provider", type=click.Choice(list(PROVIDERS)), default=None, help="LLM provider")
@click.option("--skill", "skills", multiple=True, help="Only advertise these skills")
@click.argument("command", nargs=-1)
@click.pass_context
def run(ctx, task, cli_profile, project, safety, minutes, provider, skills, command):
    """Start a CLI under a pseudo-terminal and supervise it until it ends.

    COMMAND overrides the CLI invocation, e.g. `warden run -t "..." -- claude --model opus`.
    """
    config = _config(ctx)
    profile = get_profile(cli_profile or config.cli_profile)
    argv = list(command) or [profile.binary]
    project_path = str(Path(project).resolve()) if project else os.getcwd()

    options = SessionOptions(
        time_limit_minutes=minutes,
        safety_level=SafetyLevel(safety) if safety else None,
        project_path=project_path,
        cli_profile=profile.name,
        provider=provider,
        active_skills=tuple(skills),
    )
    asyncio.run(_run_supervised(config, task, argv, options))


async def _run_supervised(
    config: Config,
    task: str,
    argv: list[str],
    options: SessionOptions,
    gateway: Gateway | None = None,
    echo: bool = True,
) -> SessionStopped | None:
    from warden.host.pty import PtyHost
    from warden.supervisor import Supervisor

    session_id = uuid4().hex[:8]
    supervisor: Supervisor | None = None

    def on_output(sid: str, chunk: str) -> None:
        if supervisor:
            supervisor.on_output(sid, chunk)

    def on_exit(sid: str) -> None:
        if supervisor:
            supervisor.on_process_exit(sid)

    host = PtyHost(on_output=on_output, on_exit=on_exit)
    supervisor = Supervisor(host, config=config, gateway=gateway)
    await supervisor.connect()

    finished = asyncio.Event()
    stopped: list[SessionStopped] = []

    async def on_stopped(event: SessionStopped) -> None:
        stopped.append(event)
        finished.set()

    supervisor.channel.subscribe(SessionStopped, on_stopped)

    try:
        # Register the session first so output printed during startup reaches its buffer
        if not await supervisor.start(task, session_id, options):
            console.print("[red]Could not start supervision.[/red] Check `warden status` for API keys.")
            return None
        try:
            await host.spawn(session_id, argv, cwd=options.project_path, echo=echo)
        except OSError as e:
            console.print(f"[red]Could not start {argv[0]}:[/red] {e}")
            return None
        await finished.wait()
    finally:
        supervisor.stop(session_id)
        await host.close()
        await supervisor.close()

    if not stopped:
        return None
    _print_summary(stopped[0])
    return stopped[0]


def _print_summary(event: SessionStopped) -> None:
    s = event.summary
    console.print()
    console.print(f"[bold]Session {s.status}[/bold] after {s.duration}s")
    table = Table(show_header=False, box=None)
    for key, value in s.stats.items():
        table.add_row(key.replace("_", " "), str(value))
    table.add_row("tokens", str(s.usage.get("total", 0)))
    console.print(table)


@main.command()
@click.option("-n", "--limit", default=20, help="Number of sessions to show")
@click.pass_context
def history(ctx, limit: int):
    """List recent supervised sessions."""
    config = _config(ctx)
    asyncio.run(_show_history(config, limit))


async def _show_history(config: Config, limit: int) -> None:
    db = Database(config.history_db_path)
    await db.connect()
    try:
        store = HistoryStore(db.conn)
        await store.init_schema()
        summaries = await store.list_recent(limit)
    finally:
        await db.close()

    if not summaries:
        console.print("[dim]No sessions yet.[/dim]")
        return

    table = Table("Started", "Mode", "Status", "Duration", "Model", "Task")
    for s in summaries:
        table.add_row(
            s.start_time.strftime("%Y-%m-%d %H:%M"),
            s.mode,
            s.status,
            f"{s.duration}s",
            s.model,
            s.task[:60],
        )
    console.print(table)


@main.group()
def memory():
    """Inspect or clear learned project memory."""


@memory.command("show")
@click.argument("project", required=False)
@click.pass_context
def memory_show(ctx, project: str | None):
    """Show learnings for PROJECT (default: current directory)."""
    config = _config(ctx)
    asyncio.run(_show_memory(config, str(Path(project or os.getcwd()).resolve())))


async def _show_memory(config: Config, project_path: str) -> None:
    db = Database(config.memory_db_path)
    await db.connect()
    try:
        store = LearningStore(db.conn)
        await store.init_schema()
        entries = await store.list_entries(project_path)
    finally:
        await db.close()

    if not entries:
        console.print(f"[dim]No learnings for {project_path}.[/dim]")
        return

    table = Table("Category", "Confidence", "Seen", "Learning")
    for e in entries:
        table.add_row(CATEGORY_LABELS[e.category], f"{e.confidence:.2f}", str(e.session_count), e.content)
    console.print(table)


@memory.command("clear")
@click.argument("project", required=False)
@click.confirmation_option(prompt="Delete all learnings for this project?")
@click.pass_context
def memory_clear(ctx, project: str | None):
    """Delete learnings for PROJECT (default: current directory)."""
    config = _config(ctx)
    project_path = str(Path(project or os.getcwd()).resolve())
    removed = asyncio.run(_clear_memory(config, project_path))
    console.print(f"Removed {removed} learning(s) for [cyan]{project_path}[/cyan]")


async def _clear_memory(config: Config, project_path: str) -> int:
    db = Database(config.memory_db_path)
    await db.connect()
    try:
        store = LearningStore(db.conn)
        await store.init_schema()
        return await store.clear(project_path)
    finally:
        await db.close()


@main.command()
@click.option("--project", type=click.Path(exists=True, file_okay=False), default=None)
@click.pass_context
def skills(ctx, project: str | None):
    """List skills the supervised CLI will be told about."""
    config = _config(ctx)
    registry = SkillRegistry()
    registry.load(skill_dirs(project or os.getcwd(), config.skills_dir))
    if not len(registry):
        console.print("[dim]No skills found.[/dim]")
        return
    for name in registry.names:
        meta = registry.get(name)
        console.print(f"[cyan]/{meta.name}[/cyan] [dim]({meta.location})[/dim] {meta.description}")


@main.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def set_setting(ctx, key: str, value: str):
    """Persist a setting to ~/.warden/settings.json."""
    if key not in PERSIST_KEYS:
        console.print(f"[red]Unknown setting:[/red] {key}. Choose from: {', '.join(sorted(PERSIST_KEYS))}")
        raise SystemExit(1)
    config = _config(ctx)
    try:
        setattr(config, key, value)
    except ValidationError as e:
        console.print(f"[red]Invalid value:[/red] {e.errors()[0]['msg']}")
        raise SystemExit(1) from None
    settings = load_user_settings()
    settings[key] = getattr(config, key)
    save_user_settings(settings)
    console.print(f"{key} = [cyan]{settings[key]}[/cyan]")
