"""CLI commands for agent-autopilot."""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from agent_autopilot import __logo__, __version__

app = typer.Typer(
    name="agent_autopilot",
    help="agent-autopilot - supervise CLI coding agents running in terminals",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} agent-autopilot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """agent-autopilot entrypoint."""
    del version


# ============================================================================
# Setup
# ============================================================================


@app.command()
def onboard(
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite existing config without prompt.",
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Do not ask interactive questions during setup.",
    ),
) -> None:
    """Write the default configuration file."""
    from agent_autopilot.config.loader import get_config_path, save_config
    from agent_autopilot.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        if not force and non_interactive:
            console.print(f"[yellow]Config already exists at {config_path} (skip).[/yellow]")
            raise typer.Exit()
        if not force:
            console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
            if not typer.confirm("Overwrite?"):
                raise typer.Exit()

    config = Config()
    _run_setup_wizard(config, interactive=not non_interactive)
    save_config(config)
    console.print(f"[green]OK[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} agent-autopilot is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Add a decision API key (groqApiKey or openaiApiKey) to [cyan]{config_path}[/cyan]")
    console.print('  2. Run: [cyan]agent-autopilot supervise "Add a /health endpoint" --provider claude[/cyan]')


def _detect_available_clis() -> dict[str, str]:
    """Detect installed CLI assistants from PATH."""
    from agent_autopilot.providers.registry import CLI_DEFS

    detected: dict[str, str] = {}
    for key, cli_def in CLI_DEFS.items():
        command = cli_def.resolve_command()
        binary = command.split()[0] if command else ""
        if not binary:
            continue
        resolved = shutil.which(binary)
        if resolved:
            detected[key] = resolved
    return detected


def _run_setup_wizard(config: "Config", *, interactive: bool) -> bool:
    """
    First-launch setup: detect CLI assistants and ask for a safety level.

    Returns True if configuration was modified.
    """
    detected = _detect_available_clis()
    changed = False
    if not detected:
        console.print("[yellow]No installed CLI assistants detected in PATH.[/yellow]")
        console.print("Install at least one of: claude, codex, gemini")
    else:
        console.print("\nDetected CLI assistants:")
        for key, path in detected.items():
            console.print(f"  - {key}: [cyan]{path}[/cyan]")
        if not interactive or typer.confirm("Use the detected binaries?", default=True):
            for key, path in detected.items():
                if not config.cli.command_for(key):
                    setattr(config.cli, key, path)
                    changed = True

    if interactive:
        level = typer.prompt("Safety level (safe, moderate, yolo)", default=config.safety_level).strip().lower()
        if level in ("safe", "moderate", "yolo") and level != config.safety_level:
            config.safety_level = level
            changed = True
    return changed


@app.command("config")
def show_config(
    reveal: bool = typer.Option(False, "--reveal", help="Show API keys instead of masking them."),
) -> None:
    """Show the effective configuration."""
    from agent_autopilot.config.loader import convert_to_camel, get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    data = convert_to_camel(config.model_dump(mode="json"))
    if not reveal:
        for key in ("groqApiKey", "openaiApiKey"):
            if data["decision"].get(key):
                data["decision"][key] = "***"

    console.print(f"Config: {config_path} {'[green]OK[/green]' if config_path.exists() else '[dim]defaults[/dim]'}")
    console.print_json(json.dumps(data))


# ============================================================================
# Run modes
# ============================================================================


def _setup_logging(verbose: bool, log_file: Optional[Path]) -> None:
    from agent_autopilot.utils.helpers import configure_logging

    configure_logging("DEBUG" if verbose else "WARNING", log_file)


def _load_run_config(safety: str, working_dir: str) -> "Config":
    from agent_autopilot.config.loader import load_config

    config = load_config()
    if safety:
        if safety not in ("safe", "moderate", "yolo"):
            console.print(f"[red]Unknown safety level '{safety}'. Expected: safe, moderate, yolo[/red]")
            raise typer.Exit(1)
        config.safety_level = safety
    if working_dir:
        config.cli.working_dir = working_dir
    return config


def _build_decision_client(config: "Config") -> "DecisionClient | None":
    """Decision client from config, or None when no API key is configured."""
    from agent_autopilot.engine.decision import DecisionClient
    from agent_autopilot.providers.openai_compat import OpenAICompatibleProvider

    settings = config.decision
    if not settings.api_key:
        console.print(
            f"[yellow]No {settings.provider} API key configured; only fast-path prompts will be answered.[/yellow]"
        )
        return None
    provider = OpenAICompatibleProvider(
        provider=settings.provider,
        api_key=settings.api_key,
        api_base=settings.api_base or None,
        model=settings.model,
        request_timeout_s=settings.request_timeout_s,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )
    return DecisionClient(
        provider,
        safety_level=config.safety_level,
        summary_max_chars=settings.summary_max_chars,
        limiter=asyncio.Semaphore(settings.max_concurrent),
    )


def _print_entry(entry: "ActivityEntry") -> None:
    console.print(entry.format(), markup=False, highlight=False)


def _check_provider(provider: str) -> str:
    from agent_autopilot.providers.registry import CLI_DEFS

    key = provider.strip().lower()
    if key not in CLI_DEFS:
        choices = ", ".join(sorted(CLI_DEFS))
        console.print(f"[red]Unknown provider '{provider}'. Expected: {choices}[/red]")
        raise typer.Exit(1)
    return key


@app.command()
def supervise(
    task: str = typer.Argument(..., help="Task to hand to the CLI assistant"),
    provider: str = typer.Option("claude", "--provider", "-p", help="CLI assistant (claude|codex|gemini)"),
    immediate: bool = typer.Option(False, "--immediate", help="Send the task without waiting for the prompt"),
    time_limit: float = typer.Option(0, "--time-limit", help="Minutes before the session is stopped (5-60)"),
    safety: str = typer.Option("", "--safety", help="Override safety level (safe|moderate|yolo)"),
    working_dir: str = typer.Option("", "--cwd", help="Working directory for the terminal"),
    verbose: bool = typer.Option(False, "--verbose", help="Print debug logs"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write debug logs to this file"),
) -> None:
    """Run one CLI assistant on a task and answer its prompts until it is done."""
    from agent_autopilot.engine.models import TaskDelivery

    _setup_logging(verbose, log_file)
    key = _check_provider(provider)
    config = _load_run_config(safety, working_dir)
    if time_limit:
        if not 5 <= time_limit <= 60:
            console.print("[red]--time-limit must be between 5 and 60 minutes[/red]")
            raise typer.Exit(1)
        config.timing.time_limit_min = time_limit
    delivery = TaskDelivery.IMMEDIATE if immediate else TaskDelivery.ON_READY

    console.print(f"{__logo__} Supervising [cyan]{key}[/cyan] (safety: {config.safety_level})")
    try:
        state = asyncio.run(_run_supervise(config, key, task, delivery))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    console.print(f"Session finished: [bold]{state.value}[/bold]")
    if state.value == "errored":
        raise typer.Exit(1)


async def _run_supervise(config: "Config", provider: str, task: str, delivery: "TaskDelivery") -> "SessionState":
    from agent_autopilot.engine.supervisor import SessionSupervisor
    from agent_autopilot.providers.registry import get_cli_def
    from agent_autopilot.providers.runtime.host import PTYTerminalHost

    host = PTYTerminalHost()
    cli = get_cli_def(provider)
    cwd = str(config.working_dir) if config.cli.working_dir else None
    session_id = await host.create_session(config.cli.cols, config.cli.rows, cwd)
    supervisor = SessionSupervisor(
        host,
        session_id,
        cli,
        task,
        config=config,
        decision_client=_build_decision_client(config),
        delivery=delivery,
        launch_command=config.cli.command_for(cli.key) or cli.resolve_command(),
    )
    supervisor.activity.add_listener(_print_entry)
    try:
        await supervisor.start()
        return await supervisor.wait()
    finally:
        supervisor.stop("cli exiting")
        await host.close()


@app.command()
def orchestrate(
    task: str = typer.Argument(..., help="Master task"),
    agent: List[str] = typer.Option(
        ["claude", "codex"], "--agent", "-a", help="CLI assistant per terminal; repeat for more terminals"
    ),
    mode: str = typer.Option("split", "--mode", "-m", help="split: decompose the task; parallel: one task each"),
    subtask: List[str] = typer.Option([], "--task", "-t", help="Parallel mode: task per terminal, in --agent order"),
    safety: str = typer.Option("", "--safety", help="Override safety level (safe|moderate|yolo)"),
    working_dir: str = typer.Option("", "--cwd", help="Working directory for the terminals"),
    reassign: bool = typer.Option(False, "--reassign-on-error", help="Hand subtasks of failed terminals to siblings"),
    verbose: bool = typer.Option(False, "--verbose", help="Print debug logs"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write debug logs to this file"),
) -> None:
    """Run several terminals on one master task (split) or on independent tasks (parallel)."""
    from agent_autopilot.coordination.orchestrator import OrchestratorMode, TerminalSpec
    from agent_autopilot.engine.errors import InsufficientSessionsError

    _setup_logging(verbose, log_file)
    try:
        run_mode = OrchestratorMode(mode.strip().lower())
    except ValueError:
        console.print(f"[red]Unknown mode '{mode}'. Expected: split, parallel[/red]")
        raise typer.Exit(1)
    providers = [_check_provider(p) for p in agent]
    config = _load_run_config(safety, working_dir)
    if reassign:
        config.orchestrator.reassign_on_error = True
    terminals = [
        TerminalSpec(provider=p, task=subtask[i] if i < len(subtask) else None) for i, p in enumerate(providers)
    ]

    console.print(f"{__logo__} {run_mode.value} run with {len(terminals)} terminals")
    try:
        outcome = asyncio.run(_run_orchestrate(config, run_mode, task, terminals))
    except InsufficientSessionsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    console.print(f"Run finished: [bold]{outcome.value}[/bold]")
    if outcome.value == "failed":
        raise typer.Exit(1)


async def _run_orchestrate(
    config: "Config",
    mode: "OrchestratorMode",
    task: str,
    terminals: "list[TerminalSpec]",
) -> "OrchestratorOutcome":
    from agent_autopilot.coordination.orchestrator import MultiSessionOrchestrator
    from agent_autopilot.providers.runtime.host import PTYTerminalHost

    host = PTYTerminalHost()
    orchestrator = MultiSessionOrchestrator(host, config=config, decision_client=_build_decision_client(config))
    orchestrator.log.add_listener(_print_entry)
    try:
        plan = await orchestrator.start(mode, task, terminals)
        for supervisor in orchestrator.supervisors.values():
            supervisor.activity.add_listener(_print_entry)
        table = Table(title="Plan")
        table.add_column("Terminal")
        table.add_column("Provider", style="cyan")
        table.add_column("Subtask")
        for assignment in plan.assignments:
            table.add_row(orchestrator.supervisors[assignment.terminal_id].label, assignment.provider, assignment.subtask)
        console.print(table)
        return await orchestrator.wait()
    finally:
        orchestrator.stop("cli exiting")
        await orchestrator.close_sessions()
        await host.close()


@app.command()
def race(
    task: str = typer.Argument(..., help="Task both competitors receive"),
    first: str = typer.Option("claude", "--first", help="First competitor (claude|codex|gemini)"),
    second: str = typer.Option("codex", "--second", help="Second competitor (claude|codex|gemini)"),
    ceiling: float = typer.Option(0, "--ceiling", help="Seconds before the race is called"),
    working_dir: str = typer.Option("", "--cwd", help="Working directory for the terminals"),
    verbose: bool = typer.Option(False, "--verbose", help="Print debug logs"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write debug logs to this file"),
) -> None:
    """Race two CLI assistants on the same task and score them."""
    from agent_autopilot.engine.errors import InsufficientSessionsError

    _setup_logging(verbose, log_file)
    providers = [_check_provider(first), _check_provider(second)]
    config = _load_run_config("", working_dir)
    if ceiling > 0:
        config.timing.race_ceiling_s = ceiling

    console.print(f"{__logo__} Race: [cyan]{providers[0]}[/cyan] vs [cyan]{providers[1]}[/cyan]")
    try:
        result = asyncio.run(_run_race(config, task, providers))
    except InsufficientSessionsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    if result is None:
        return

    table = Table(title=f"Race over: {result.reason} ({result.duration_s:.0f}s)")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Tests", justify="right")
    table.add_column("Files", justify="right")
    table.add_column("Lines", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Score", justify="right", style="bold")
    for m in result.metrics:
        table.add_row(
            m.provider,
            m.status.value,
            str(m.tests_passed),
            str(m.files_created),
            str(m.lines_of_code),
            str(m.errors_hit),
            f"{m.score:.1f}",
        )
    console.print(table)
    if result.winner is not None:
        console.print(f"Winner: [bold green]{result.winner.provider}[/bold green]")


async def _run_race(config: "Config", task: str, providers: list[str]) -> "RaceResult | None":
    from agent_autopilot.coordination.race import CompetitionCoordinator
    from agent_autopilot.providers.runtime.host import PTYTerminalHost

    host = PTYTerminalHost()
    coordinator = CompetitionCoordinator(host, config=config, decision_client=_build_decision_client(config))
    coordinator.log.add_listener(_print_entry)
    try:
        await coordinator.start(task, providers)
        return await coordinator.wait()
    finally:
        if not coordinator.is_finished:
            logger.info("[race] stopping on exit")
        coordinator.stop("cli exiting")
        await coordinator.close_sessions()
        await host.close()
