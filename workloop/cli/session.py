"""Session commands.

Commands for classifying tasks and starting, building, resuming,
cancelling and inspecting workflow sessions.
This module should NOT import heavy modules at the top level - use lazy imports inside functions.
"""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.table import Table

from workloop.cli.app import app
from workloop.cli.common import (
    build_controller,
    build_logger,
    get_console,
    lease_guard,
    load_config_or_exit,
)
from workloop.cli.display import decision_panel, events_table, sessions_table, status_panel
from workloop.models import ComplexityTier

console = get_console()

sessions_app = typer.Typer(
    name="sessions",
    help="Inspect stored sessions",
    no_args_is_help=True,
)
app.add_typer(sessions_app, name="sessions")


def _fail(message: str, code: int = 1) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code)


def _show_decision(decision, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(decision.to_dict(), indent=2))
        return
    console.print(decision_panel(decision))
    if decision.directive:
        console.print()
        console.print(decision.directive.prompt, markup=False, highlight=False)


# =============================================================================
# Policy Commands
# =============================================================================


@app.command()
def classify(
    description: str = typer.Argument(..., help="Task description to classify."),
    complexity: Optional[str] = typer.Option(
        None,
        "--complexity",
        help="Override: trivial, simple, standard or critical.",
    ),
) -> None:
    """
    Show the complexity tier and budgets a task would get.

    Examples:
        workloop classify "fix typo in README"
        workloop classify "add OAuth login"
    """
    from workloop.budget import iteration_limits, resolve_validation
    from workloop.complexity import classify as classify_task

    try:
        tier = classify_task(description, complexity)
    except ValueError as e:
        _fail(str(e))

    planning, building = iteration_limits(tier)
    console.print(f"Tier: [bold]{tier.name.lower()}[/bold]")
    console.print(f"Planning iterations: {planning}")
    console.print(f"Building iterations: {building}")
    console.print(f"Validation: {resolve_validation(tier).name.lower()}")


@app.command()
def budget(
    tier: Optional[str] = typer.Argument(None, help="Tier to show (all tiers if omitted)."),
) -> None:
    """Show the iteration budget table."""
    from workloop.budget import iteration_limits, resolve_validation

    if tier is None:
        tiers = list(ComplexityTier)
    else:
        try:
            tiers = [ComplexityTier.parse(tier)]
        except ValueError as e:
            _fail(str(e))

    table = Table(title="Iteration Budgets")
    table.add_column("Tier", style="cyan")
    table.add_column("Planning", justify="right")
    table.add_column("Building", justify="right")
    table.add_column("Validation")
    for item in tiers:
        planning, building = iteration_limits(item)
        table.add_row(
            item.name.lower(),
            str(planning),
            str(building),
            resolve_validation(item).name.lower(),
        )
    console.print(table)


# =============================================================================
# Lifecycle Commands
# =============================================================================


@app.command()
def start(
    task: str = typer.Argument(..., help="Task description."),
    session_id: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Host session id (generated if omitted).",
    ),
    mode: str = typer.Option("build", "--mode", "-m", help="plan or build."),
    epic: Optional[str] = typer.Option(None, "--epic", help="Existing epic id."),
    group: Optional[str] = typer.Option(None, "--group", help="Existing work unit group id."),
    complexity: Optional[str] = typer.Option(
        None,
        "--complexity",
        help="Override: trivial, simple, standard or critical.",
    ),
    validate: bool = typer.Option(False, "--validate", help="Force validation."),
    skip_validate: bool = typer.Option(False, "--skip-validate", help="Skip validation (not for critical)."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Override the budget."),
    worktree: bool = typer.Option(False, "--worktree", help="Build in an isolated git worktree."),
    pr: bool = typer.Option(False, "--pr", help="Push and open a pull request on completion."),
    priority: int = typer.Option(2, "--priority", help="Epic priority (0-4)."),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON."),
) -> None:
    """
    Start a planning or building session.

    Examples:
        workloop start "add rate limiting" --mode plan
        workloop start "fix typo in docs" --session abc123 --worktree --pr
    """
    from workloop.controller import ControllerError
    from workloop.session_store import SessionStoreError

    config = load_config_or_exit()
    controller = build_controller(config)
    session_id = session_id or f"wl-{uuid.uuid4().hex[:8]}"

    try:
        with lease_guard(controller):
            decision = controller.start_session(
                session_id,
                task,
                mode=mode,
                epic_ref=epic,
                group_ref=group,
                complexity=complexity,
                force_validation=validate,
                skip_validation=skip_validate,
                max_iterations=max_iterations,
                use_lease=worktree,
                create_pull_request=pr,
                priority=priority,
            )
    except (ControllerError, SessionStoreError, ValueError) as e:
        _fail(str(e))

    if not as_json:
        console.print(f"Session: [cyan]{session_id}[/cyan]")
    _show_decision(decision, as_json)


@app.command()
def build(
    session_id: str = typer.Argument(..., help="Session whose plan is ready."),
    group: Optional[str] = typer.Option(None, "--group", help="Existing work unit group id."),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON."),
) -> None:
    """Begin building a session whose plan is ready."""
    from workloop.controller import ControllerError
    from workloop.session_store import SessionStoreError

    controller = build_controller(load_config_or_exit())
    try:
        with lease_guard(controller):
            decision = controller.begin_building(session_id, group_ref=group)
    except (ControllerError, SessionStoreError) as e:
        _fail(str(e))
    _show_decision(decision, as_json)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Paused session."),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        help="New iteration ceiling (must exceed the current count).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON."),
) -> None:
    """Resume a paused session where it left off."""
    from workloop.controller import ControllerError
    from workloop.session_store import SessionStoreError

    controller = build_controller(load_config_or_exit())
    try:
        with lease_guard(controller):
            decision = controller.resume(session_id, max_iterations=max_iterations)
    except (ControllerError, SessionStoreError) as e:
        _fail(str(e))
    _show_decision(decision, as_json)


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Session to cancel."),
    reason: str = typer.Option("", "--reason", "-r", help="Why the session is cancelled."),
) -> None:
    """Pause a session without publishing its work."""
    from workloop.controller import ControllerError
    from workloop.session_store import SessionStoreError

    controller = build_controller(load_config_or_exit())
    try:
        decision = controller.cancel(session_id, reason)
    except (ControllerError, SessionStoreError) as e:
        _fail(str(e))
    console.print(decision_panel(decision))


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to report on."),
) -> None:
    """Show a session's mode, budget and group progress."""
    from workloop.session_store import SessionStoreError

    controller = build_controller(load_config_or_exit())
    try:
        report = controller.status(session_id)
    except SessionStoreError as e:
        _fail(str(e))
    console.print(status_panel(report))


# =============================================================================
# Work Unit Commands
# =============================================================================


@app.command()
def fail(
    session_id: str = typer.Argument(..., help="Session the unit belongs to."),
    unit_id: str = typer.Argument(..., help="Unit that failed."),
    summary: str = typer.Argument(..., help="One-line failure summary."),
) -> None:
    """Record a failed attempt at a work unit."""
    from workloop.session_store import SessionStoreError
    from workloop.store import StoreError

    controller = build_controller(load_config_or_exit())
    try:
        decision = controller.report_failure(session_id, unit_id, summary)
    except (SessionStoreError, StoreError) as e:
        _fail(str(e))

    if decision.noop:
        console.print(f"[yellow]{unit_id} is already blocked; nothing recorded.[/yellow]")
    elif decision.tripped:
        console.print(f"[red]{unit_id} blocked after {decision.attempts} failed attempts.[/red]")
    else:
        console.print(f"Recorded attempt {decision.attempts} for {unit_id}; it will be retried.")


@app.command()
def close(
    session_id: str = typer.Argument(..., help="Session the unit belongs to."),
    unit_id: str = typer.Argument(..., help="Finished unit."),
    diff_file: Optional[Path] = typer.Option(
        None,
        "--diff-file",
        help="Diff to review (default: git diff HEAD~1 in the session workspace).",
    ),
) -> None:
    """Validate a finished unit and close it on approval."""
    from workloop.controller import ControllerError
    from workloop.session_store import SessionStoreError
    from workloop.store import StoreError
    from workloop.validation import ValidationOutcome
    from workloop.vcs import GitVersionControl, VersionControlError

    config = load_config_or_exit()
    controller = build_controller(config)

    try:
        if diff_file is not None:
            diff = diff_file.read_text(encoding="utf-8")
        else:
            session = controller.sessions.get(session_id)
            workdir = session.lease.path if session and session.lease else None
            diff = GitVersionControl(config).diff(workdir=workdir)
    except (OSError, VersionControlError) as e:
        _fail(f"Could not read the diff: {e}")

    try:
        result = controller.complete_unit(session_id, unit_id, diff)
    except (ControllerError, SessionStoreError, StoreError) as e:
        _fail(str(e))

    if result.outcome is ValidationOutcome.REJECTED:
        console.print(f"[yellow]Rejected:[/yellow] {result.feedback}")
        if result.breaker and result.breaker.tripped:
            console.print(f"[red]{unit_id} blocked after repeated rejections.[/red]")
        raise typer.Exit(1)

    label = "approved" if result.outcome is ValidationOutcome.APPROVED else "closed without review"
    console.print(f"[green]{unit_id} {label}.[/green]")


# =============================================================================
# Sessions Sub-App
# =============================================================================


@sessions_app.command("list")
def list_sessions() -> None:
    """List stored sessions."""
    from workloop.session_store import SessionStore

    config = load_config_or_exit()
    sessions = SessionStore(config).list_sessions()
    if not sessions:
        console.print("[dim]No sessions found.[/dim]")
        return
    console.print(sessions_table(sessions))


@sessions_app.command("logs")
def session_logs(
    session_id: Optional[str] = typer.Argument(None, help="Only events for this session."),
    level: Optional[str] = typer.Option(None, "--level", "-l", help="Minimum level: debug, info, warn or error."),
    component: Optional[str] = typer.Option(None, "--component", help="Only events from this component."),
    limit: int = typer.Option(50, "--limit", "-n", help="Show the most recent N events."),
    as_json: bool = typer.Option(False, "--json", help="Print events as JSON lines."),
) -> None:
    """Show recent controller events from the event log."""
    config = load_config_or_exit()
    try:
        entries = build_logger(config).read_logs(
            min_level=level,
            component=component,
            session_id=session_id,
            limit=limit,
        )
    except ValueError as e:
        _fail(str(e))

    if as_json:
        for entry in entries:
            typer.echo(json.dumps(entry))
        return
    if not entries:
        console.print("[dim]No events logged.[/dim]")
        return
    console.print(events_table(entries))
