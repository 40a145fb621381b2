"""Host hook commands.

The agent host calls these on its lifecycle events. Output is plain text
or JSON on stdout so the host can consume it; nothing here uses Rich
markup.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import typer

from workloop.cli.common import build_controller, load_config_or_exit

app = typer.Typer(
    name="hook",
    help="Commands invoked by the agent host",
    no_args_is_help=True,
)


def _read_worker_output(output_file: Optional[Path]) -> Optional[str]:
    if output_file is not None:
        return output_file.read_text(encoding="utf-8")
    if sys.stdin is None or sys.stdin.isatty():
        return None
    return sys.stdin.read()


@app.command()
def stop(
    session_id: str = typer.Argument(..., help="Host session id."),
    output_file: Optional[Path] = typer.Option(
        None,
        "--output-file",
        help="Worker's final output (default: read from stdin when piped).",
    ),
) -> None:
    """
    Decide whether the worker continues after a turn.

    Prints the decision as JSON. The exit code is 0 for both continue and
    halt; the "action" field tells them apart.
    """
    config = load_config_or_exit()
    controller = build_controller(config)

    try:
        worker_output = _read_worker_output(output_file)
    except OSError as e:
        typer.echo(f"Cannot read worker output: {e}", err=True)
        raise typer.Exit(1)

    decision = controller.on_stop(session_id, worker_output)
    typer.echo(json.dumps(decision.to_dict(), indent=2))


@app.command()
def tool(
    session_id: str = typer.Argument(..., help="Host session id."),
    tool_name: str = typer.Argument(..., help="Tool the worker just used."),
    args: str = typer.Option("{}", "--args", help="Tool arguments as a JSON object."),
) -> None:
    """Record edit and commit evidence from a tool invocation."""
    try:
        parsed = json.loads(args)
    except json.JSONDecodeError as e:
        typer.echo(f"--args is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(parsed, dict):
        typer.echo("--args must be a JSON object", err=True)
        raise typer.Exit(1)

    controller = build_controller(load_config_or_exit())
    evidence = controller.observe_tool_use(session_id, tool_name, parsed)
    typer.echo(json.dumps({
        "modified_path": evidence.modified_path,
        "commit_made": evidence.commit_made,
    }))


@app.command()
def context(
    session_id: str = typer.Argument(..., help="Host session id."),
) -> None:
    """Print the state block to inject into the worker's system context."""
    controller = build_controller(load_config_or_exit())
    block = controller.context_block(session_id)
    if block:
        typer.echo(block)


@app.command()
def compact(
    session_id: str = typer.Argument(..., help="Host session id."),
) -> None:
    """Print the state block that must survive conversation compaction."""
    controller = build_controller(load_config_or_exit())
    block = controller.preserved_state(session_id)
    if block:
        typer.echo(block)


@app.command()
def end(
    session_id: str = typer.Argument(..., help="Host session id."),
) -> None:
    """Discard a session the host has deleted, releasing its workspace."""
    controller = build_controller(load_config_or_exit())
    if controller.end_session(session_id):
        typer.echo(f"Session {session_id} ended")
    else:
        typer.echo(f"No session {session_id}")
