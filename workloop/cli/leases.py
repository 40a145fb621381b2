"""Lease recovery commands.

Commands for listing, sweeping and force-releasing isolated workspaces,
and for supervising a worker so its workspaces are released however it
exits.
This module should NOT import heavy modules at the top level - use lazy imports inside functions.
"""
from __future__ import annotations

import os
import subprocess
from pathlib import Path

import typer

from workloop.cli.common import build_lease_manager, get_console, load_config_or_exit
from workloop.cli.display import leases_table

app = typer.Typer(
    name="leases",
    help="Inspect and recover isolated workspaces",
    no_args_is_help=True,
)

console = get_console()


@app.command("list")
def list_leases() -> None:
    """List durable lease tracker records."""
    config = load_config_or_exit()
    records = build_lease_manager(config).list_records()
    if not records:
        console.print("[dim]No leases tracked.[/dim]")
        return
    console.print(leases_table(records))


@app.command()
def sweep() -> None:
    """
    Release leases whose owner died or which outlived the stale timeout.

    Examples:
        workloop leases sweep
    """
    config = load_config_or_exit()
    released = build_lease_manager(config).sweep()
    if not released:
        console.print("[dim]No stale leases found.[/dim]")
        return
    for path in released:
        console.print(f"  [green]Released[/green] {path}")
    console.print(f"[green]Sweep complete:[/green] {len(released)} lease(s) released.")


@app.command()
def release(
    record: Path = typer.Argument(..., help="Tracker record to force-release."),
) -> None:
    """Remove a workspace and its tracker record using only the record."""
    config = load_config_or_exit()
    if not record.exists():
        console.print(f"[yellow]No tracker record at {record}[/yellow]")
        raise typer.Exit(1)

    if build_lease_manager(config).force_release(record):
        console.print(f"[green]Released lease recorded in {record}[/green]")
    else:
        console.print(f"[red]Could not fully release {record}; see logs.[/red]")
        raise typer.Exit(1)


@app.command(
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def supervise(
    command: list[str] = typer.Argument(..., help="Worker command to run, after --."),
) -> None:
    """
    Run a worker and release every workspace it acquired when it exits.

    Leases taken by workloop processes started under the worker name this
    process as their owner. On normal exit, SIGTERM, SIGINT or SIGHUP they
    are released without publishing.

    Examples:
        workloop leases supervise -- claude --continue
    """
    from workloop.leases import SUPERVISOR_ENV, LeaseGuard

    config = load_config_or_exit()
    manager = build_lease_manager(config, owner_pid=os.getpid())
    env = dict(os.environ)
    env[SUPERVISOR_ENV] = str(os.getpid())

    guard = LeaseGuard(manager, sweep_records=True)
    guard.install()
    try:
        result = subprocess.run(command, cwd=config.repo_root, env=env)
    except FileNotFoundError:
        console.print(f"[red]Command not found: {command[0]}[/red]")
        raise typer.Exit(127)
    finally:
        released = guard.cleanup()
        guard.uninstall()

    if released:
        console.print(f"[dim]Released {len(released)} leftover workspace(s).[/dim]")
    raise typer.Exit(result.returncode)
