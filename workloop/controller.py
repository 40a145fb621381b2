"""
Workflow session controller.

The controller is driven by the host's per-session hook invocations. Each
call to on_stop() evaluates one transition and returns a Decision: either
CONTINUE with a directive for the worker, or HALT with a reason.

┌──────────┐   start    ┌──────────┐ PLAN_READY ┌─────────────────┐
│   IDLE   │ ─────────> │ PLANNING │ ─────────> │ READY_FOR_BUILD │
└──────────┘            └──────────┘            └─────────────────┘
     │ start (build)         │ ▲                         │ begin_building
     │                 pause │ │ resume                  ▼
     │                       ▼ │                  ┌──────────────┐  DONE  ┌──────────┐
     │                  ┌──────────┐   pause      │   BUILDING   │ ─────> │ COMPLETE │
     └────────────────> │  PAUSED  │ <─────────── │              │        └──────────┘
                        └──────────┘ ──────────>  └──────────────┘
                                        resume

Rules for on_stop(), in order:
1. Mode not PLANNING/BUILDING: halt, no state change.
2. Iteration budget exhausted: pause (a checkpoint, not a failure), halt.
3. Completion signal matches the mode's token: finalize, halt.
4. Planning: count the iteration and continue planning.
   Building: ask the store for ready units. The first one is the next
   directive. With none ready, halt with a diagnostic unless the group is
   fully done, in which case the worker is asked to verify and signal DONE.

Store failures halt without touching session state and are never retried
here; the next hook invocation simply tries again.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

from workloop.budget import budget_for
from workloop.circuit_breaker import BreakerDecision, CircuitBreaker
from workloop.complexity import classify
from workloop.framework import detect_framework
from workloop.leases import LeaseConflictError, LeaseError, LeaseManager
from workloop.models import (
    CompletionSignal,
    ComplexityTier,
    ResourceLease,
    WorkflowMode,
    WorkflowSession,
    WorkUnit,
    WorkUnitStatus,
)
from workloop.prompts import (
    blocked_diagnostic,
    building_directive,
    planning_directive,
    render_context_block,
    render_preserved_state,
    verify_completion_directive,
)
from workloop.session_store import SessionNotFoundError, SessionStore, SessionStoreError
from workloop.store import (
    DependencyStore,
    StoreContractError,
    StoreError,
    validate_ready_units,
)
from workloop.validation import (
    Reviewer,
    ValidationGate,
    ValidationOutcome,
    ValidationResult,
)
from workloop.worker_output import ToolEvidence, inspect_tool_use, parse_completion_signal

if TYPE_CHECKING:
    from workloop.logger import LoopLogger


class ControllerError(Exception):
    """Raised when an operation is not valid for the session's current state."""
    pass


class DecisionType(Enum):
    CONTINUE = auto()                # Host should hand the directive to the worker
    HALT = auto()                    # Host should let the worker stop


class HaltReason(Enum):
    INACTIVE = auto()                # Session missing, idle, paused or complete
    BUDGET_EXHAUSTED = auto()        # Iteration ceiling reached; session paused
    PLAN_READY = auto()              # Planning finished; waiting for building
    COMPLETE = auto()                # Building finished and finalized
    NO_READY_WORK = auto()           # Nothing unblocked and group not done
    STORE_UNAVAILABLE = auto()       # Dependency store query failed
    LEASE_CONFLICT = auto()          # Workspace or tracker record already exists
    LEASE_UNAVAILABLE = auto()       # Workspace could not be created
    CANCELLED = auto()               # Explicit cancel
    CONTRACT_VIOLATION = auto()      # Store returned an invalid ready list


EXPECTED_SIGNAL = {
    WorkflowMode.PLANNING: CompletionSignal.PLAN_READY,
    WorkflowMode.BUILDING: CompletionSignal.DONE,
}


@dataclass(frozen=True)
class Directive:
    """What the worker should do next."""
    unit_id: Optional[str]
    unit_title: Optional[str]
    prompt: str


@dataclass
class Decision:
    """Result of one controller invocation."""
    action: DecisionType
    session_id: str
    reason: Optional[HaltReason] = None
    message: str = ""
    directive: Optional[Directive] = None

    @classmethod
    def halt(cls, session_id: str, reason: HaltReason, message: str = "") -> Decision:
        return cls(DecisionType.HALT, session_id, reason=reason, message=message)

    @classmethod
    def proceed(cls, session_id: str, directive: Directive, message: str = "") -> Decision:
        return cls(DecisionType.CONTINUE, session_id, message=message, directive=directive)

    @property
    def should_continue(self) -> bool:
        return self.action is DecisionType.CONTINUE

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.name.lower(),
            "session_id": self.session_id,
            "reason": self.reason.name.lower() if self.reason else None,
            "message": self.message,
            "directive": {
                "unit_id": self.directive.unit_id,
                "unit_title": self.directive.unit_title,
                "prompt": self.directive.prompt,
            } if self.directive else None,
        }


@dataclass
class SessionStatus:
    """Diagnostic snapshot of a session and its work group."""
    session: WorkflowSession
    progress: Optional[int] = None
    ready: list[WorkUnit] = field(default_factory=list)
    blocked: list[WorkUnit] = field(default_factory=list)
    store_error: Optional[str] = None

    @property
    def blocked_count(self) -> int:
        return len(self.blocked)


@dataclass
class _BuildStep:
    unit: Optional[WorkUnit] = None
    progress: int = 0
    blocked: list[WorkUnit] = field(default_factory=list)

    @property
    def stuck(self) -> bool:
        return self.unit is None and self.progress < 100


class WorkflowController:
    """
    Drives workflow sessions through planning and building.

    All session state goes through the SessionStore; nothing about a
    session is held in memory between calls.
    """

    def __init__(
        self,
        sessions: SessionStore,
        store: DependencyStore,
        leases: Optional[LeaseManager] = None,
        reviewer: Optional[Reviewer] = None,
        logger: Optional[LoopLogger] = None,
        repo_root: Optional[str] = None,
    ) -> None:
        self.sessions = sessions
        self.store = store
        self.leases = leases
        self.breaker = CircuitBreaker(store, logger)
        self.gate = ValidationGate(store, self.breaker, reviewer, logger) if reviewer else None
        self.repo_root = repo_root or "."
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "controller"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _load(self, session_id: str) -> WorkflowSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _find(self, session_id: str) -> Optional[WorkflowSession]:
        """Session for a host id; None when there is none or the id cannot name one."""
        try:
            return self.sessions.get(session_id)
        except SessionStoreError as e:
            self._log("session_lookup_failed", {"error": str(e)}, level="warn")
            return None

    def _comment(self, ref: Optional[str], body: str) -> None:
        """Leave a progress note on the epic; the note is not essential."""
        if not ref:
            return
        try:
            self.store.append_comment(ref, body)
        except StoreError as e:
            self._log("comment_failed", {"ref": ref, "error": str(e)}, level="warn")

    # Leases

    def _acquire_lease(self, session_id: str, group_ref: str, create_pull_request: bool) -> ResourceLease:
        if self.leases is None:
            raise ControllerError("Isolated workspaces requested but no lease manager is configured")
        return self.leases.acquire(group_ref, create_pull_request=create_pull_request)

    @contextmanager
    def _unpersisted(self, lease: Optional[ResourceLease]) -> Iterator[None]:
        """Release a freshly acquired lease if the block storing it does not finish."""
        try:
            yield
        except BaseException:
            if lease is not None and self.leases is not None:
                self.leases.release(lease, finalize=False)
            raise

    def _release_lease(self, session: WorkflowSession, finalize: bool) -> bool:
        """Release the session's lease; True when no lease remains."""
        if session.lease is None:
            return True
        if self.leases is None:
            self._log("lease_release_skipped", {
                "session_id": session.session_id,
                "path": session.lease.path,
            }, level="error")
            return False
        return self.leases.release(session.lease, finalize=finalize)

    def _lease_halt(self, session_id: str, error: LeaseError) -> Decision:
        reason = (
            HaltReason.LEASE_CONFLICT
            if isinstance(error, LeaseConflictError)
            else HaltReason.LEASE_UNAVAILABLE
        )
        self._log("lease_failed", {
            "session_id": session_id,
            "reason": reason.name,
            "error": str(error),
        }, level="error")
        return Decision.halt(session_id, reason, str(error))

    # Directives

    def _query_build_step(self, session: WorkflowSession) -> _BuildStep:
        """
        Ask the store what to do next in building mode.

        Raises:
            StoreUnavailableError: If any query fails.
            StoreContractError: If the ready list is invalid.
        """
        if not session.group_ref:
            raise StoreContractError(f"Session {session.session_id} is building without a group")

        units = validate_ready_units(self.store.list_ready(session.group_ref))
        if units:
            return _BuildStep(unit=self.breaker.annotate(units[0]), progress=0)

        progress = self.store.query_progress(session.group_ref)
        if progress >= 100:
            return _BuildStep(progress=progress)

        blocked = self.store.list_units(session.group_ref, status=WorkUnitStatus.BLOCKED)
        return _BuildStep(progress=progress, blocked=blocked)

    def _render(self, session: WorkflowSession, step: Optional[_BuildStep] = None) -> Directive:
        if session.mode is WorkflowMode.PLANNING or step is None:
            return Directive(None, None, planning_directive(session))
        if step.unit is not None:
            return Directive(step.unit.id, step.unit.title, building_directive(session, step.unit))
        return Directive(None, None, verify_completion_directive(session, step.progress))

    def _store_halt(self, session_id: str, error: StoreError) -> Decision:
        if isinstance(error, StoreContractError):
            reason = HaltReason.CONTRACT_VIOLATION
        else:
            reason = HaltReason.STORE_UNAVAILABLE
        self._log("store_halt", {
            "session_id": session_id,
            "reason": reason.name,
            "error": str(error),
        }, level="error")
        return Decision.halt(session_id, reason, str(error))

    def _opening_decision(self, session: WorkflowSession, message: str) -> Decision:
        """First directive after a session starts or resumes; no iteration is counted."""
        if session.mode is WorkflowMode.PLANNING:
            return Decision.proceed(session.session_id, self._render(session), message)

        try:
            step = self._query_build_step(session)
        except StoreError as e:
            return self._store_halt(session.session_id, e)

        if step.stuck:
            diagnostic = blocked_diagnostic(step.progress, step.blocked)
            return Decision.halt(session.session_id, HaltReason.NO_READY_WORK, diagnostic)
        return Decision.proceed(session.session_id, self._render(session, step), message)

    # Hook entry point

    def on_stop(self, session_id: str, worker_output: Optional[str] = None) -> Decision:
        """
        Decide whether the worker continues after finishing a turn.

        worker_output is the worker's final message; a completion signal in
        it is recorded before the rules are evaluated.
        """
        session = self._find(session_id)
        if session is None:
            return Decision.halt(session_id, HaltReason.INACTIVE, "No workflow session")

        if worker_output is not None and session.mode.is_active:
            signal = parse_completion_signal(worker_output)
            if signal is not None:
                session = self.sessions.mutate(session_id, lambda s: setattr(s, "completion_signal", signal))
                self._log("signal_observed", {"session_id": session_id, "signal": signal.name})

        # 1. Only active sessions iterate
        if not session.mode.is_active:
            return Decision.halt(
                session_id,
                HaltReason.INACTIVE,
                f"Session is {session.mode.value_name}",
            )

        # 2. Budget ceiling
        if session.budget_exhausted:
            return self._pause_for_budget(session)

        # 3. Completion
        if session.completion_signal is EXPECTED_SIGNAL[session.mode]:
            return self._finalize_mode(session)

        # 4. Next iteration
        step = None
        if session.mode is WorkflowMode.BUILDING:
            try:
                step = self._query_build_step(session)
            except StoreError as e:
                return self._store_halt(session_id, e)

            if step.stuck:
                diagnostic = blocked_diagnostic(step.progress, step.blocked)
                self._log("no_ready_work", {
                    "session_id": session_id,
                    "progress": step.progress,
                    "blocked": [unit.id for unit in step.blocked],
                }, level="warn")
                return Decision.halt(session_id, HaltReason.NO_READY_WORK, diagnostic)

        session = self.sessions.mutate(session_id, lambda s: s.increment_iteration())
        directive = self._render(session, step)
        self._log("iteration_continue", {
            "session_id": session_id,
            "mode": session.mode.name,
            "iteration": session.iteration_count,
            "max_iterations": session.max_iterations,
            "unit_id": directive.unit_id,
        })
        return Decision.proceed(
            session_id,
            directive,
            f"Iteration {session.iteration_count}/{session.max_iterations}",
        )

    def _pause_for_budget(self, session: WorkflowSession) -> Decision:
        reason = f"Iteration budget of {session.max_iterations} exhausted"
        released = self._release_lease(session, finalize=True)

        def pause(s: WorkflowSession) -> None:
            s.paused_from = s.mode
            s.pause_reason = reason
            s.transition(WorkflowMode.PAUSED)
            if released:
                s.lease = None

        session = self.sessions.mutate(session.session_id, pause)
        self._comment(
            session.epic_ref,
            f"[PAUSED after {session.iteration_count} iterations] {reason}. "
            f"Resume: workloop resume {session.session_id}",
        )
        self._log("session_paused", {
            "session_id": session.session_id,
            "paused_from": session.paused_from.name if session.paused_from else None,
            "iteration": session.iteration_count,
        }, level="warn")
        return Decision.halt(session.session_id, HaltReason.BUDGET_EXHAUSTED, reason)

    def _finalize_mode(self, session: WorkflowSession) -> Decision:
        released = self._release_lease(session, finalize=True)
        planning = session.mode is WorkflowMode.PLANNING
        target = WorkflowMode.READY_FOR_BUILD if planning else WorkflowMode.COMPLETE

        def finish(s: WorkflowSession) -> None:
            s.transition(target)
            if released:
                s.lease = None

        session = self.sessions.mutate(session.session_id, finish)

        if planning:
            message = (
                f"Planning finished after {session.iteration_count} iterations. "
                f"Start building with: workloop build {session.session_id}"
            )
            self._comment(session.epic_ref, f"[PLAN READY] {message}")
            reason = HaltReason.PLAN_READY
        else:
            message = f"Group {session.group_ref} completed after {session.iteration_count} iterations"
            self._comment(session.epic_ref, f"[COMPLETE] {message}")
            reason = HaltReason.COMPLETE

        self._log("session_finalized", {
            "session_id": session.session_id,
            "mode": session.mode.name,
            "lease_released": released,
        })
        return Decision.halt(session.session_id, reason, message)

    # Lifecycle operations

    def start_session(
        self,
        session_id: str,
        task: str,
        mode: str | WorkflowMode = WorkflowMode.BUILDING,
        epic_ref: Optional[str] = None,
        group_ref: Optional[str] = None,
        complexity: Optional[str | ComplexityTier] = None,
        force_validation: bool = False,
        skip_validation: bool = False,
        max_iterations: Optional[int] = None,
        use_lease: bool = False,
        create_pull_request: bool = False,
        priority: int = 2,
    ) -> Decision:
        """
        Start a planning or building session.

        Nothing is persisted when the store is unreachable or the lease
        cannot be acquired.

        Raises:
            ControllerError: If the session exists or the arguments are invalid.
        """
        mode = WorkflowMode.parse(mode)
        if not mode.is_active:
            raise ControllerError(f"Sessions start in planning or building, not {mode.value_name}")
        if self.sessions.get(session_id) is not None:
            raise ControllerError(f"Session {session_id} already exists; resume or end it first")
        if max_iterations is not None and max_iterations <= 0:
            raise ControllerError("max_iterations must be positive")

        tier = classify(task, complexity)
        budget = budget_for(
            mode,
            tier,
            force_validation=force_validation,
            skip_validation=skip_validation,
        )

        try:
            self.store.ping()
            if not epic_ref:
                epic = self.store.create_work_unit(
                    " ".join(task.split())[:80] or "workloop task",
                    kind="epic",
                    priority=priority,
                    description=task,
                )
                epic_ref = epic.id
            if mode is WorkflowMode.BUILDING and not group_ref:
                group_ref = self.store.instantiate_group(epic_ref)
        except StoreError as e:
            return self._store_halt(session_id, e)

        lease = None
        if use_lease and mode is WorkflowMode.BUILDING:
            try:
                lease = self._acquire_lease(session_id, group_ref, create_pull_request)
            except LeaseError as e:
                return self._lease_halt(session_id, e)

        with self._unpersisted(lease):
            session = WorkflowSession(
                session_id=session_id,
                task=task,
                epic_ref=epic_ref,
                group_ref=group_ref if mode is WorkflowMode.BUILDING else None,
                max_iterations=max_iterations or budget.max_iterations,
                validation=budget.validation,
                lease=lease,
                use_lease=use_lease,
                create_pull_request=create_pull_request,
                test_command=detect_framework(self.repo_root).test_command,
            )
            session.set_complexity(tier)
            session.transition(mode)
            self.sessions.create(session)

        self._comment(
            epic_ref,
            f"[START] {mode.value_name} session {session_id}: tier={tier.name.lower()}, "
            f"max_iterations={session.max_iterations}, validation={session.validation.name.lower()}",
        )
        self._log("session_started", {
            "session_id": session_id,
            "mode": mode.name,
            "tier": tier.name,
            "max_iterations": session.max_iterations,
            "validation": session.validation.name,
            "epic_ref": epic_ref,
            "group_ref": session.group_ref,
            "lease": lease.path if lease else None,
        })
        return self._opening_decision(
            session,
            f"Started {mode.value_name} ({tier.name.lower()}, {session.max_iterations} iterations)",
        )

    def begin_building(self, session_id: str, group_ref: Optional[str] = None) -> Decision:
        """
        Move a session whose plan is ready into building.

        The building phase gets a fresh iteration budget for the same tier.

        Raises:
            ControllerError: If the session is not ready for building.
        """
        session = self._load(session_id)
        if session.mode is not WorkflowMode.READY_FOR_BUILD:
            raise ControllerError(
                f"Session {session_id} is {session.mode.value_name}, not ready_for_build"
            )

        try:
            group_ref = group_ref or session.group_ref or self.store.instantiate_group(session.epic_ref)
        except StoreError as e:
            return self._store_halt(session_id, e)

        budget = budget_for(WorkflowMode.BUILDING, session.complexity_tier or ComplexityTier.STANDARD)

        lease, acquired = session.lease, None
        if session.use_lease and lease is None:
            try:
                lease = acquired = self._acquire_lease(session_id, group_ref, session.create_pull_request)
            except LeaseError as e:
                return self._lease_halt(session_id, e)

        def build(s: WorkflowSession) -> None:
            s.group_ref = group_ref
            s.iteration_count = 0
            s.max_iterations = budget.max_iterations
            s.lease = lease
            s.transition(WorkflowMode.BUILDING)

        with self._unpersisted(acquired):
            session = self.sessions.mutate(session_id, build)
        self._comment(session.epic_ref, f"[BUILD] Building group {group_ref}")
        self._log("building_started", {"session_id": session_id, "group_ref": group_ref})
        return self._opening_decision(session, f"Building group {group_ref}")

    def resume(self, session_id: str, max_iterations: Optional[int] = None) -> Decision:
        """
        Resume a paused session in the mode it was paused from.

        The iteration count and complexity tier carry over, and work unit
        statuses are left alone. A still-exhausted budget is extended by
        one more budget for the mode unless max_iterations says otherwise.

        Raises:
            ControllerError: If the session is not paused or the maximum is too low.
        """
        session = self._load(session_id)
        if session.mode is not WorkflowMode.PAUSED or session.paused_from is None:
            raise ControllerError(f"Session {session_id} is {session.mode.value_name}, not paused")

        target = session.paused_from
        if max_iterations is not None:
            if max_iterations <= session.iteration_count:
                raise ControllerError(
                    f"max_iterations must exceed the current count ({session.iteration_count})"
                )
            new_max = max_iterations
        elif session.budget_exhausted:
            tier = session.complexity_tier or ComplexityTier.STANDARD
            new_max = session.iteration_count + budget_for(target, tier).max_iterations
        else:
            new_max = session.max_iterations

        lease, acquired = session.lease, None
        if session.use_lease and target is WorkflowMode.BUILDING and lease is None:
            try:
                lease = acquired = self._acquire_lease(
                    session_id, session.group_ref, session.create_pull_request,
                )
            except LeaseError as e:
                return self._lease_halt(session_id, e)

        def wake(s: WorkflowSession) -> None:
            s.max_iterations = new_max
            s.paused_from = None
            s.pause_reason = None
            s.lease = lease
            s.transition(target)

        with self._unpersisted(acquired):
            session = self.sessions.mutate(session_id, wake)
        self._comment(
            session.epic_ref,
            f"[RESUMED] {target.value_name} at iteration {session.iteration_count}/{new_max}",
        )
        self._log("session_resumed", {
            "session_id": session_id,
            "mode": target.name,
            "iteration": session.iteration_count,
            "max_iterations": new_max,
        })
        return self._opening_decision(
            session,
            f"Resumed {target.value_name} at iteration {session.iteration_count}/{new_max}",
        )

    def cancel(self, session_id: str, reason: str = "") -> Decision:
        """
        Pause an active session at the user's request.

        The lease is released without pushing or opening a pull request.

        Raises:
            ControllerError: If the session is not planning or building.
        """
        session = self._load(session_id)
        if not session.mode.is_active:
            raise ControllerError(f"Session {session_id} is {session.mode.value_name}; nothing to cancel")

        note = reason.strip() or "Cancelled by user"
        released = self._release_lease(session, finalize=False)

        def pause(s: WorkflowSession) -> None:
            s.paused_from = s.mode
            s.pause_reason = note
            s.transition(WorkflowMode.PAUSED)
            if released:
                s.lease = None

        session = self.sessions.mutate(session_id, pause)
        self._comment(session.epic_ref, f"[CANCELLED] {note}")
        self._log("session_cancelled", {"session_id": session_id, "reason": note}, level="warn")
        return Decision.halt(session_id, HaltReason.CANCELLED, note)

    def end_session(self, session_id: str) -> bool:
        """
        Discard a session when the host deletes it.

        Returns:
            False if there was no such session.
        """
        session = self._find(session_id)
        if session is None:
            return False
        self._release_lease(session, finalize=False)
        self.sessions.destroy(session_id)
        self._log("session_ended", {"session_id": session_id})
        return True

    # Worker observation

    def observe_output(self, session_id: str, text: str) -> Optional[CompletionSignal]:
        """Record a completion signal found in the worker's final output."""
        signal = parse_completion_signal(text)
        session = self._find(session_id)
        if signal is None or session is None or not session.mode.is_active:
            return signal
        self.sessions.mutate(session_id, lambda s: setattr(s, "completion_signal", signal))
        self._log("signal_observed", {"session_id": session_id, "signal": signal.name})
        return signal

    def observe_tool_use(
        self,
        session_id: str,
        tool: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> ToolEvidence:
        """Record edit and commit evidence from a tool invocation."""
        evidence = inspect_tool_use(tool, args)
        if evidence.is_empty or self._find(session_id) is None:
            return evidence

        def record(s: WorkflowSession) -> None:
            if evidence.modified_path:
                s.record_modified_path(evidence.modified_path)
            if evidence.commit_made:
                s.commit_made = True

        self.sessions.mutate(session_id, record)
        return evidence

    # Work unit outcomes

    def report_failure(self, session_id: str, unit_id: str, summary: str) -> BreakerDecision:
        """
        Record a failed attempt at a unit.

        Raises:
            StoreUnavailableError: If the store cannot record the attempt.
        """
        self._load(session_id)
        decision = self.breaker.record_failure(unit_id, summary)
        self._log("unit_failed", {
            "session_id": session_id,
            "unit_id": unit_id,
            "attempts": decision.attempts,
            "blocked": decision.tripped,
        }, level="warn")
        return decision

    def complete_unit(self, session_id: str, unit_id: str, diff: str) -> ValidationResult:
        """
        Close a finished unit, passing it through validation first.

        Raises:
            ControllerError: If validation is needed but no reviewer is configured.
            StoreUnavailableError: If the store cannot be read or updated.
        """
        session = self._load(session_id)
        if session.validation.reviews:
            if self.gate is None:
                raise ControllerError("Validation is enabled but no reviewer is configured")
            result = self.gate.evaluate(unit_id, diff, session.validation)
        else:
            result = ValidationResult(unit_id, ValidationOutcome.SKIPPED)

        if result.may_close:
            self.store.update_status(unit_id, WorkUnitStatus.CLOSED)
            self._log("unit_closed", {
                "session_id": session_id,
                "unit_id": unit_id,
                "outcome": result.outcome.name,
            })
        return result

    # Diagnostics

    def status(self, session_id: str) -> SessionStatus:
        """Snapshot of the session plus its group's progress, where reachable."""
        session = self._load(session_id)
        report = SessionStatus(session=session)
        if not session.group_ref:
            return report

        try:
            report.progress = self.store.query_progress(session.group_ref)
            report.ready = self.store.list_ready(session.group_ref)
            report.blocked = self.store.list_units(session.group_ref, status=WorkUnitStatus.BLOCKED)
        except StoreError as e:
            report.store_error = str(e)
            self._log("status_store_error", {"session_id": session_id, "error": str(e)}, level="warn")
        return report

    def context_block(self, session_id: str) -> Optional[str]:
        session = self._find(session_id)
        return render_context_block(session) if session else None

    def preserved_state(self, session_id: str) -> Optional[str]:
        session = self._find(session_id)
        return render_preserved_state(session) if session else None
