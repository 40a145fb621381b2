"""
Core data models for workloop.

This module defines the foundational data structures used throughout the system:
- Enums for workflow modes, complexity tiers, validation and unit status
- Dataclasses for sessions, work units and resource leases
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class WorkflowMode(Enum):
    """
    Modes in the session lifecycle.

    IDLE -> PLANNING -> READY_FOR_BUILD -> BUILDING -> COMPLETE, with PAUSED
    reachable from PLANNING or BUILDING and resumable back into them.
    """
    IDLE = auto()                    # Session exists, no workflow started
    PLANNING = auto()                # Worker is decomposing the task into units
    READY_FOR_BUILD = auto()         # Plan accepted, waiting for building to begin
    BUILDING = auto()                # Worker is executing ready units
    PAUSED = auto()                  # Checkpoint: budget exhausted or cancelled
    COMPLETE = auto()                # All work done and finalized

    @property
    def is_active(self) -> bool:
        """Only active modes accept iteration increments."""
        return self in (WorkflowMode.PLANNING, WorkflowMode.BUILDING)

    @property
    def value_name(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str | WorkflowMode) -> WorkflowMode:
        """Parse a mode name, accepting the short aliases used on the CLI."""
        if isinstance(value, WorkflowMode):
            return value
        aliases = {
            "plan": cls.PLANNING,
            "build": cls.BUILDING,
            "pause": cls.PAUSED,
            "done": cls.COMPLETE,
        }
        normalized = value.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls[normalized.upper()]
        except KeyError:
            raise ValueError(f"Unknown workflow mode: {value}") from None


class ComplexityTier(Enum):
    """Task complexity, controlling iteration budget and validation strictness."""
    TRIVIAL = auto()                 # typos, comments, whitespace
    SIMPLE = auto()                  # toggles, flags, version bumps
    STANDARD = auto()                # typical features
    CRITICAL = auto()                # auth, security, payments, migrations

    @classmethod
    def parse(cls, value: str | ComplexityTier) -> ComplexityTier:
        if isinstance(value, ComplexityTier):
            return value
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown complexity tier: {value}") from None


class ValidationRequirement(Enum):
    """Whether an independent review gates work unit closure."""
    SKIP = auto()
    AUTO = auto()
    REQUIRED = auto()

    @property
    def reviews(self) -> bool:
        return self is not ValidationRequirement.SKIP


class CompletionSignal(Enum):
    """Tokens a worker emits to declare the current mode's goal met."""
    PLAN_READY = auto()
    DONE = auto()


class WorkUnitStatus(Enum):
    """Status of a work unit in the external dependency store."""
    OPEN = auto()
    IN_PROGRESS = auto()
    BLOCKED = auto()
    CLOSED = auto()

    @classmethod
    def parse(cls, value: str | WorkUnitStatus) -> WorkUnitStatus:
        if isinstance(value, WorkUnitStatus):
            return value
        try:
            return cls[value.strip().upper().replace("-", "_")]
        except KeyError:
            raise ValueError(f"Unknown work unit status: {value}") from None

    @property
    def store_name(self) -> str:
        """Spelling used by the tracker CLI (open, in_progress, ...)."""
        return self.name.lower()


class LeaseState(Enum):
    """Lifecycle of an isolated-execution lease."""
    CREATED = auto()                 # Tracker record written, workspace pending
    ACTIVE = auto()                  # Workspace exists and is owned by a session
    RELEASED = auto()                # Workspace and tracker record removed


@dataclass
class WorkUnit:
    """
    A schedulable item of work tracked by the dependency store.

    Referenced, not owned: the store is the source of truth. The attempt
    counters are filled in from the unit's comment log when known.
    """
    id: str
    title: str = ""
    status: WorkUnitStatus = WorkUnitStatus.OPEN
    priority: int = 2
    description: str = ""            # Acceptance criteria
    dependencies: list[str] = field(default_factory=list)
    failure_attempts: int = 0
    rejection_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkUnit:
        data = data.copy()
        data["status"] = WorkUnitStatus.parse(data.get("status", "OPEN"))
        return cls(**data)


@dataclass
class ResourceLease:
    """
    An isolated working copy + branch owned by one session.

    Mirrored by a durable tracker record on disk so an independent
    process can find and release it if the owner dies.
    """
    group_ref: str                   # Work unit group the lease is keyed by
    path: str                        # Absolute path of the isolated workspace
    branch_name: str                 # Branch checked out in the workspace
    tracker_path: str                # Durable tracker record location
    create_pull_request: bool = False
    state: LeaseState = LeaseState.CREATED
    created_at: str = field(default_factory=now_iso)

    @property
    def is_released(self) -> bool:
        return self.state == LeaseState.RELEASED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceLease:
        data = data.copy()
        data["state"] = LeaseState[data.get("state", "CREATED")]
        return cls(**data)


class SessionInvariantError(Exception):
    """Raised when a mutation would break a WorkflowSession invariant."""
    pass


@dataclass
class WorkflowSession:
    """
    State of one orchestrated workflow run.

    Persisted to <state_dir>/sessions/<session_id>.json
    """
    session_id: str                  # Opaque host session identifier
    mode: WorkflowMode = WorkflowMode.IDLE
    task: str = ""                   # Task description the session works on
    epic_ref: Optional[str] = None   # External epic identifier
    group_ref: Optional[str] = None  # Work unit group, set once building begins
    iteration_count: int = 0
    max_iterations: int = 0
    complexity_tier: Optional[ComplexityTier] = None
    validation: ValidationRequirement = ValidationRequirement.AUTO
    completion_signal: Optional[CompletionSignal] = None
    lease: Optional[ResourceLease] = None   # Present only while the workspace exists
    use_lease: bool = False          # Build in an isolated workspace
    create_pull_request: bool = False
    modified_paths: list[str] = field(default_factory=list)
    commit_made: bool = False
    test_command: str = ""
    paused_from: Optional[WorkflowMode] = None
    pause_reason: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        """Set timestamps if not provided."""
        now = now_iso()
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = now

    @property
    def budget_exhausted(self) -> bool:
        return self.iteration_count >= self.max_iterations

    def set_complexity(self, tier: ComplexityTier) -> None:
        """Set the complexity tier; it may not change once set."""
        if self.complexity_tier is not None and self.complexity_tier != tier:
            raise SessionInvariantError(
                f"Complexity tier for session {self.session_id} is already "
                f"{self.complexity_tier.name.lower()}"
            )
        self.complexity_tier = tier

    def transition(self, new_mode: WorkflowMode) -> None:
        """Change mode; the completion signal never survives a transition."""
        self.mode = new_mode
        self.completion_signal = None
        self.touch()

    def increment_iteration(self) -> int:
        """Count one more iteration, enforcing the budget invariant."""
        if not self.mode.is_active:
            raise SessionInvariantError(
                f"Cannot iterate session {self.session_id} in mode {self.mode.value_name}"
            )
        if self.iteration_count >= self.max_iterations:
            raise SessionInvariantError(
                f"Session {self.session_id} is at its iteration limit ({self.max_iterations})"
            )
        self.iteration_count += 1
        self.touch()
        return self.iteration_count

    def record_modified_path(self, path: str) -> None:
        if path not in self.modified_paths:
            self.modified_paths.append(path)

    def touch(self) -> None:
        self.updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["mode"] = self.mode.name
        data["complexity_tier"] = self.complexity_tier.name if self.complexity_tier else None
        data["validation"] = self.validation.name
        data["completion_signal"] = (
            self.completion_signal.name if self.completion_signal else None
        )
        data["lease"] = self.lease.to_dict() if self.lease else None
        data["paused_from"] = self.paused_from.name if self.paused_from else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowSession:
        """Create from dictionary."""
        data = data.copy()
        data["mode"] = WorkflowMode[data.get("mode", "IDLE")]
        if data.get("complexity_tier"):
            data["complexity_tier"] = ComplexityTier[data["complexity_tier"]]
        data["validation"] = ValidationRequirement[data.get("validation", "AUTO")]
        if data.get("completion_signal"):
            data["completion_signal"] = CompletionSignal[data["completion_signal"]]
        if data.get("lease"):
            data["lease"] = ResourceLease.from_dict(data["lease"])
        if data.get("paused_from"):
            data["paused_from"] = WorkflowMode[data["paused_from"]]
        return cls(**data)


class LoopEncoder(json.JSONEncoder):
    """JSON encoder that handles workloop model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.name
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=LoopEncoder, **kwargs)
