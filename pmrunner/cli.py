"""CLI entry point for pm-runner.

Commands:
- pmrunner init: Create .pmrunner/config.yaml with commented defaults
- pmrunner preflight: Check the agent CLI is installed and logged in
- pmrunner run: Execute one task under the supervisor
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from pmrunner import __version__
from pmrunner.cli_ui.renderer import LiveOutputPrinter, ResultRenderer
from pmrunner.config import config_path, load_config, write_default_config
from pmrunner.core.errors import ConfigError, RunnerError
from pmrunner.core.models import ExecutionStatus, Task, TaskKind
from pmrunner.core.workdir_lock import WorkdirLock
from pmrunner.executor.preflight import CliProbe
from pmrunner.executor.supervisor import ProcessSupervisor
from pmrunner.stream.broadcaster import OutputBroadcaster

console = Console()

EXIT_CONFIG_ERROR = 2


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(repo_path: Path, overrides: dict | None = None):
    try:
        return load_config(repo_path, overrides)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {escape(str(e))}")
        sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """pm-runner - fail-closed supervisor for agent CLIs.

    Runs the agent CLI non-interactively and reports COMPLETE only when
    file-system evidence proves the task did something.
    """
    pass


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(force: bool) -> None:
    """Initialize project for pm-runner."""
    repo_path = get_repo_path()
    if config_path(repo_path).exists() and not force:
        console.print("[yellow]Project already initialized[/yellow]")
        return

    try:
        path = write_default_config(repo_path, force=force)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(EXIT_CONFIG_ERROR)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {escape(str(path))}\n"
            "Evidence for read-only tasks is written under .pmrunner/evidence/",
            title="pm-runner Initialized",
        )
    )


@main.command()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def preflight(verbose: bool) -> None:
    """Check that the agent CLI is installed and logged in."""
    _configure_logging(verbose)
    config = _load_or_exit(get_repo_path())
    probe = CliProbe(
        config.cli_path,
        version_timeout=config.version_probe_timeout,
        auth_timeout=config.auth_probe_timeout,
    )
    auth = asyncio.run(probe.check_auth_status())

    table = Table(title="Preflight")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("CLI path", escape(config.cli_path))
    table.add_row("Available", "[green]yes[/]" if auth.available else "[red]no[/]")
    table.add_row("Logged in", "[green]yes[/]" if auth.logged_in else "[red]no[/]")
    if auth.error:
        table.add_row("Detail", escape(auth.error))
    console.print(table)

    if not (auth.available and auth.logged_in):
        if auth.available:
            console.print("[yellow]Run: claude login  (or: claude setup-token)[/yellow]")
        sys.exit(1)


@main.command()
@click.argument("prompt", required=True)
@click.option(
    "--workdir",
    "-C",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Working directory for the agent (default: current directory)",
)
@click.option(
    "--kind",
    type=click.Choice([k.value for k in TaskKind], case_sensitive=False),
    default=TaskKind.IMPLEMENTATION.value,
    help="Task kind; READ_INFO and REPORT complete on a generated evidence file",
)
@click.option("--model", "-m", default=None, help="Model passed through to the agent CLI")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Overall timeout in seconds",
)
@click.option("--no-timeout", is_flag=True, help="Disable the overall timeout")
@click.option(
    "--progress-aware",
    is_flag=True,
    help="Reset the overall timeout on every output event",
)
@click.option("--task-id", default=None, help="Task ID (auto-generated if not provided)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(
    prompt: str,
    workdir: Path | None,
    kind: str,
    model: str | None,
    timeout: float | None,
    no_timeout: bool,
    progress_aware: bool,
    task_id: str | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Run PROMPT through the agent CLI under supervision.

    Example:
        pmrunner run "Add a README section on configuration" -C ./repo
    """
    _configure_logging(verbose)
    workdir = (workdir or get_repo_path()).resolve()
    overrides = {
        "timeout": timeout,
        "disable_overall_timeout": True if no_timeout else None,
        "progress_aware_timeout": True if progress_aware else None,
    }
    config = _load_or_exit(workdir, overrides)

    task = Task(
        id=task_id or f"task-{uuid.uuid4().hex[:8]}",
        prompt=prompt,
        working_directory=workdir,
        selected_model=model,
        task_kind=TaskKind(kind.upper()),
    )

    broadcaster = OutputBroadcaster()
    session_id = f"session-{uuid.uuid4().hex[:8]}"
    broadcaster.set_session_id(session_id)
    unsubscribe = None
    if not as_json:
        console.print(f"\n[bold]Task:[/bold] {escape(task.id)} ({task.task_kind.value})")
        console.print(f"[dim]Working directory: {escape(str(workdir))}[/dim]\n")
        printer = LiveOutputPrinter(
            console,
            task.id,
            session_id=session_id,
            task_created_at=datetime.now(timezone.utc),
        )
        unsubscribe = broadcaster.subscribe(printer)

    supervisor = ProcessSupervisor(config, broadcaster)
    try:
        with WorkdirLock(workdir):
            result = asyncio.run(supervisor.execute(task))
    except RunnerError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    finally:
        if unsubscribe is not None:
            unsubscribe()

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        console.print()
        ResultRenderer(console).render(result)

    sys.exit(0 if result.status == ExecutionStatus.COMPLETE else 1)


if __name__ == "__main__":
    main()
