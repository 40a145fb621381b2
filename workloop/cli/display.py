"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for modes, decisions and session tables.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from workloop.models import ComplexityTier, WorkflowMode, WorkflowSession

if TYPE_CHECKING:
    from workloop.controller import Decision, SessionStatus
    from workloop.leases import LeaseRecord

# Mode display names and colors
MODE_DISPLAY: dict[WorkflowMode, tuple[str, str]] = {
    WorkflowMode.IDLE: ("Idle", "dim"),
    WorkflowMode.PLANNING: ("Planning", "yellow"),
    WorkflowMode.READY_FOR_BUILD: ("Ready for Build", "cyan bold"),
    WorkflowMode.BUILDING: ("Building", "cyan"),
    WorkflowMode.PAUSED: ("Paused", "yellow bold"),
    WorkflowMode.COMPLETE: ("Complete", "green bold"),
}

TIER_DISPLAY: dict[ComplexityTier, tuple[str, str]] = {
    ComplexityTier.TRIVIAL: ("Trivial", "dim"),
    ComplexityTier.SIMPLE: ("Simple", "blue"),
    ComplexityTier.STANDARD: ("Standard", "cyan"),
    ComplexityTier.CRITICAL: ("Critical", "red bold"),
}


def format_mode(mode: WorkflowMode) -> Text:
    name, style = MODE_DISPLAY.get(mode, (mode.name, "white"))
    return Text(name, style=style)


def format_tier(tier: ComplexityTier | None) -> Text:
    if tier is None:
        return Text("-", style="dim")
    name, style = TIER_DISPLAY.get(tier, (tier.name, "white"))
    return Text(name, style=style)


def format_iterations(session: WorkflowSession) -> str:
    return f"{session.iteration_count}/{session.max_iterations}"


def decision_panel(decision: "Decision") -> Panel:
    """Panel summarizing a controller decision."""
    if decision.should_continue:
        title = "[green]Continue[/green]"
        body = decision.message or ""
        if decision.directive and decision.directive.unit_id:
            body += f"\nNext unit: [cyan]{decision.directive.unit_id}[/cyan] {decision.directive.unit_title or ''}"
        border = "green"
    else:
        reason = decision.reason.name.lower() if decision.reason else "halt"
        title = f"[yellow]Halt[/yellow] ({reason})"
        body = decision.message or ""
        border = "yellow"
    return Panel(body.strip() or "-", title=title, border_style=border)


def sessions_table(sessions: list[WorkflowSession]) -> Table:
    table = Table(title="Workflow Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Mode")
    table.add_column("Tier")
    table.add_column("Iterations", justify="right")
    table.add_column("Epic")
    table.add_column("Group")
    table.add_column("Updated", style="dim")

    for session in sessions:
        table.add_row(
            session.session_id,
            format_mode(session.mode),
            format_tier(session.complexity_tier),
            format_iterations(session),
            session.epic_ref or "-",
            session.group_ref or "-",
            session.updated_at,
        )
    return table


def status_panel(report: "SessionStatus") -> Panel:
    """Panel with the status report for one session."""
    session = report.session
    lines = [
        f"Mode:        {MODE_DISPLAY[session.mode][0]}",
        f"Task:        {session.task or '-'}",
        f"Tier:        {session.complexity_tier.name.lower() if session.complexity_tier else '-'}",
        f"Validation:  {session.validation.name.lower()}",
        f"Iterations:  {format_iterations(session)}",
        f"Epic:        {session.epic_ref or '-'}",
        f"Group:       {session.group_ref or '-'}",
        f"Workspace:   {session.lease.path if session.lease else '-'}",
    ]
    if session.pause_reason:
        lines.append(f"Paused:      {session.pause_reason}")
    if report.progress is not None:
        lines.append(f"Progress:    {report.progress}%")
    if session.group_ref and report.store_error is None:
        lines.append(f"Blocked:     {report.blocked_count}")
        ready = ", ".join(unit.id for unit in report.ready[:5]) or "none"
        lines.append(f"Ready:       {ready}")
    if session.modified_paths:
        lines.append(f"Edited:      {len(session.modified_paths)} file(s)")
    if session.commit_made:
        lines.append("Committed:   yes")
    if report.store_error:
        lines.append(f"[red]Store:       {report.store_error}[/red]")
    return Panel("\n".join(lines), title=f"Session {session.session_id}", border_style="cyan")


def leases_table(records: list["LeaseRecord"]) -> Table:
    table = Table(title="Lease Tracker Records")
    table.add_column("Group", style="cyan")
    table.add_column("Workspace")
    table.add_column("Branch")
    table.add_column("Owner PID", justify="right")
    table.add_column("Host")
    table.add_column("Created", style="dim")

    for record in records:
        table.add_row(
            record.group_ref or "-",
            record.path,
            record.branch_name or "-",
            str(record.owner_pid or "-"),
            record.hostname or "-",
            record.created_at or "-",
        )
    return table


LEVEL_STYLES = {"debug": "dim", "info": "", "warn": "yellow", "error": "red bold"}


def events_table(entries: list[dict]) -> Table:
    table = Table(title="Events")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Session", style="cyan")
    table.add_column("Component")
    table.add_column("Event")
    table.add_column("Data", overflow="fold")

    for entry in entries:
        level = entry.get("level", "")
        data = entry.get("data") or {}
        table.add_row(
            entry.get("timestamp", "")[:19].replace("T", " "),
            Text(level, style=LEVEL_STYLES.get(level, "")),
            entry.get("session_id", "-"),
            entry.get("component", "-"),
            entry.get("event_type", ""),
            ", ".join(f"{key}={value}" for key, value in data.items()),
        )
    return table
