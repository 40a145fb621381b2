"""
Directive text handed to the worker.

Each directive is self-contained: the worker is assumed to remember
nothing between iterations and to rebuild its picture of the world from
the dependency store every time.
"""

from __future__ import annotations

from typing import Optional

from workloop.circuit_breaker import FAILURE_PREFIX, REJECTION_PREFIX, THRESHOLD
from workloop.models import (
    CompletionSignal,
    ValidationRequirement,
    WorkflowMode,
    WorkflowSession,
    WorkUnit,
)
from workloop.worker_output import render_signal


def _header(session: WorkflowSession, title: str) -> str:
    return (
        f"[workloop iteration {session.iteration_count}/{session.max_iterations}] {title}\n"
        f"Task: {session.task or '(none)'}\n"
        f"Epic: {session.epic_ref or 'none'}"
    )


def planning_directive(session: WorkflowSession) -> str:
    """Directive for one planning iteration."""
    epic = session.epic_ref or "<epic>"
    return f"""{_header(session, "PLANNING")}

Decompose the task into work units under epic {epic}. Do not implement
code and do not commit.

1. Review the epic and the units that already exist under it.
2. Study the relevant code before deciding something is missing.
3. Create one unit per gap with a clear title, acceptance criteria as a
   checklist, and a priority (1 = critical path, 4 = nice-to-have).
4. Add dependencies between units so they form an acyclic graph.
5. Leave a short progress comment on the epic.

When every unit exists with acceptance criteria and the dependency graph
is acyclic, output this on a line of its own:

{render_signal(CompletionSignal.PLAN_READY)}
"""


def _attempt_warning(unit: WorkUnit) -> str:
    lines = []
    if unit.failure_attempts:
        lines.append(
            f"This unit has {unit.failure_attempts} recorded failure(s) "
            f"({FAILURE_PREFIX}n] entries). At {THRESHOLD} it is blocked."
        )
    if unit.rejection_attempts:
        lines.append(
            f"This unit has {unit.rejection_attempts} review rejection(s) "
            f"({REJECTION_PREFIX} entries). Read the feedback in its comments first."
        )
    return "\n".join(lines)


def _validation_note(requirement: ValidationRequirement) -> str:
    if requirement is ValidationRequirement.SKIP:
        return "Validation: none. Close the unit once tests pass."
    if requirement is ValidationRequirement.REQUIRED:
        return (
            "Validation: REQUIRED. An independent reviewer sees only the acceptance "
            "criteria and your diff. The unit closes only on approval."
        )
    return (
        "Validation: automatic. An independent reviewer checks the diff against the "
        "acceptance criteria before the unit closes."
    )


def building_directive(session: WorkflowSession, unit: WorkUnit) -> str:
    """Directive targeting one ready work unit."""
    test_command = session.test_command or "(no test command detected)"
    criteria = unit.description.strip() or "(no acceptance criteria recorded)"
    warning = _attempt_warning(unit)
    workspace = session.lease.path if session.lease else "current working tree"

    text = f"""{_header(session, "BUILDING")}
Group: {session.group_ref or 'none'}
Workspace: {workspace}

Next unit: {unit.id} - {unit.title}
Work on this unit only. Do not pick a different one.

Acceptance criteria:
{criteria}
"""
    if warning:
        text += f"\n{warning}\n"

    text += f"""
1. Mark {unit.id} in progress.
2. Study the code it touches before changing anything.
3. Make incremental changes that follow existing patterns.
4. Run the tests and fix failures before committing: {test_command}
5. Commit only the files you meant to change.
6. {_validation_note(session.validation)}

If the unit cannot be completed, report the failure instead of retrying
silently. After {THRESHOLD} failures the unit is blocked and skipped.
"""
    return text


def verify_completion_directive(session: WorkflowSession, progress: int) -> str:
    """Directive used when nothing is ready and the group reports full progress."""
    test_command = session.test_command or "(no test command detected)"
    return f"""{_header(session, "VERIFY")}
Group: {session.group_ref or 'none'}
Progress: {progress}%

No work units are ready and the group reports completion. Verify:

- the tests pass: {test_command}
- the working tree is clean and every change is committed

If both hold, output this on a line of its own:

{render_signal(CompletionSignal.DONE)}
"""


def blocked_diagnostic(progress: int, blocked: list[WorkUnit]) -> str:
    """Explanation for a halt with no ready work left."""
    if blocked:
        listed = ", ".join(f"{unit.id} ({unit.title})" if unit.title else unit.id for unit in blocked)
        detail = f"{len(blocked)} blocked unit(s): {listed}"
    else:
        detail = "no blocked units; check for missing units or dependency cycles"
    return f"No ready work at {progress}% progress. {detail}."


def render_context_block(session: WorkflowSession) -> Optional[str]:
    """Compact state summary injected into the worker's system context."""
    if session.mode in (WorkflowMode.IDLE, WorkflowMode.PAUSED, WorkflowMode.COMPLETE):
        return None
    return (
        "<workloop-context>\n"
        f"  <mode>{session.mode.value_name}</mode>\n"
        f"  <epic-id>{session.epic_ref or 'none'}</epic-id>\n"
        f"  <group-id>{session.group_ref or 'none'}</group-id>\n"
        f"  <iteration>{session.iteration_count}</iteration>\n"
        f"  <max-iterations>{session.max_iterations}</max-iterations>\n"
        f"  <workspace>{session.lease.path if session.lease else 'none'}</workspace>\n"
        "</workloop-context>"
    )


def render_preserved_state(session: WorkflowSession) -> Optional[str]:
    """State block that must survive the host compacting the conversation."""
    if session.mode in (WorkflowMode.IDLE, WorkflowMode.PAUSED, WorkflowMode.COMPLETE):
        return None
    return (
        "<workloop-preserved-state>\n"
        f"  <session-id>{session.session_id}</session-id>\n"
        f"  <mode>{session.mode.value_name}</mode>\n"
        f"  <epic-id>{session.epic_ref or 'none'}</epic-id>\n"
        f"  <group-id>{session.group_ref or 'none'}</group-id>\n"
        f"  <iteration>{session.iteration_count}</iteration>\n"
        "</workloop-preserved-state>\n"
        f"Resume with: workloop resume {session.session_id}"
    )
