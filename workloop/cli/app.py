"""The workloop Typer app.

Global options are resolved here before any command runs. Hook commands
are started by the agent host from whatever directory it happens to be
in, so the project and config can also come from WORKLOOP_PROJECT and
WORKLOOP_CONFIG.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from workloop import __version__
from workloop.cli.common import get_console, set_config_path, set_project_dir

app = typer.Typer(
    name="workloop",
    help="Drive an autonomous worker through planning and building iterations",
    add_completion=False,
    no_args_is_help=True,
)

console = get_console()


def _print_version(value: bool) -> None:
    if value:
        console.print(f"workloop version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        "-p",
        envvar="WORKLOOP_PROJECT",
        help="Repository the sessions belong to (default: current directory).",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="WORKLOOP_CONFIG",
        help="Configuration file (default: config.yaml in the project).",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_print_version,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """
    Iterative agentic-workflow session controller.

    A session plans a task into tracker work units, then builds them one
    ready unit per iteration, within the iteration budget of the task's
    complexity tier.
    """
    set_config_path(str(config) if config else None)
    set_project_dir(None)
    if project is None:
        return
    if not project.is_dir():
        console.print(f"[red]Error: Project directory not found: {project}[/red]")
        raise typer.Exit(1)
    set_project_dir(str(project.resolve()))


from workloop.cli.hooks import app as hook_app  # noqa: E402
from workloop.cli.leases import app as leases_app  # noqa: E402

app.add_typer(hook_app, name="hook")
app.add_typer(leases_app, name="leases")

# Registers start, build, resume, status and the other top-level commands
import workloop.cli.session  # noqa: F401, E402


def cli_main() -> None:
    app()


__all__ = ["app", "cli_main"]
