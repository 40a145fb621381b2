"""
Circuit breaker for work units.

Failure and review-rejection attempts are recorded as structured entries
in the unit's append-only comment log, so the counts can always be
reconstructed from history after a restart:

    [ATTEMPT:1] Failed: <summary>
    [VALIDATION REJECTED] <feedback>
    [CIRCUIT BREAKER] <why the unit was blocked>
    [UNBLOCKED] <note>

The two counters are independent. When either reaches THRESHOLD the unit
is set BLOCKED and drops out of ready selection until someone unblocks
it explicitly. Only records after the latest [UNBLOCKED] entry count.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from workloop.models import WorkUnit, WorkUnitStatus
from workloop.store import Comment, DependencyStore

if TYPE_CHECKING:
    from workloop.logger import LoopLogger


THRESHOLD = 2

FAILURE_PREFIX = "[ATTEMPT:"
REJECTION_PREFIX = "[VALIDATION REJECTED]"
TRIP_PREFIX = "[CIRCUIT BREAKER]"
UNBLOCK_PREFIX = "[UNBLOCKED]"

_FAILURE_RE = re.compile(r"^\[ATTEMPT:\d+\]")


class AttemptKind(Enum):
    FAILURE = "failure"
    REJECTION = "rejection"


@dataclass(frozen=True)
class BreakerDecision:
    """Outcome of recording one failure or rejection."""
    unit_id: str
    kind: AttemptKind
    attempts: int                    # Count after this call
    tripped: bool                    # Unit is now BLOCKED
    noop: bool = False               # Unit was already BLOCKED; nothing recorded

    @property
    def should_retry(self) -> bool:
        return not self.tripped


def _since_last_unblock(comments: list[Comment]) -> list[Comment]:
    for index in range(len(comments) - 1, -1, -1):
        if comments[index].body.lstrip().startswith(UNBLOCK_PREFIX):
            return comments[index + 1:]
    return comments


def count_attempts(comments: list[Comment], kind: AttemptKind) -> int:
    """Count attempt records of one kind in a comment log."""
    relevant = _since_last_unblock(comments)
    if kind is AttemptKind.FAILURE:
        return sum(1 for c in relevant if _FAILURE_RE.match(c.body.lstrip()))
    return sum(1 for c in relevant if c.body.lstrip().startswith(REJECTION_PREFIX))


def _one_line(text: str) -> str:
    return " ".join((text or "").split()) or "no details"


class CircuitBreaker:
    """Tracks per-unit failure and rejection counts and blocks repeat offenders."""

    def __init__(
        self,
        store: DependencyStore,
        logger: Optional[LoopLogger] = None,
        threshold: int = THRESHOLD,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "circuit_breaker"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def failure_attempts(self, unit_id: str) -> int:
        return count_attempts(self.store.list_comments(unit_id), AttemptKind.FAILURE)

    def rejection_attempts(self, unit_id: str) -> int:
        return count_attempts(self.store.list_comments(unit_id), AttemptKind.REJECTION)

    def annotate(self, unit: WorkUnit) -> WorkUnit:
        """Fill a unit's attempt counters from its comment log."""
        comments = self.store.list_comments(unit.id)
        unit.failure_attempts = count_attempts(comments, AttemptKind.FAILURE)
        unit.rejection_attempts = count_attempts(comments, AttemptKind.REJECTION)
        return unit

    def record_failure(self, unit_id: str, summary: str) -> BreakerDecision:
        """Record a failed execution attempt for a unit."""
        return self._record(unit_id, AttemptKind.FAILURE, summary)

    def record_rejection(self, unit_id: str, feedback: str) -> BreakerDecision:
        """Record a validation rejection; the feedback stays on the unit."""
        return self._record(unit_id, AttemptKind.REJECTION, feedback)

    def _record(self, unit_id: str, kind: AttemptKind, text: str) -> BreakerDecision:
        unit = self.store.show(unit_id)
        comments = self.store.list_comments(unit_id)
        previous = count_attempts(comments, kind)

        if unit.status == WorkUnitStatus.BLOCKED:
            self._log("breaker_noop_blocked", {"unit_id": unit_id, "kind": kind.value})
            return BreakerDecision(unit_id, kind, previous, tripped=True, noop=True)

        attempts = previous + 1
        if kind is AttemptKind.FAILURE:
            body = f"{FAILURE_PREFIX}{attempts}] Failed: {_one_line(text)}"
        else:
            body = f"{REJECTION_PREFIX} {_one_line(text)}"
        self.store.append_comment(unit_id, body)

        tripped = attempts >= self.threshold
        if tripped:
            self.store.update_status(unit_id, WorkUnitStatus.BLOCKED)
            noun = "failed attempts" if kind is AttemptKind.FAILURE else "validation rejections"
            self.store.append_comment(
                unit_id,
                f"{TRIP_PREFIX} {attempts} {noun} - marking blocked",
            )
            self._log("breaker_tripped", {
                "unit_id": unit_id,
                "kind": kind.value,
                "attempts": attempts,
            }, level="warn")
        else:
            self._log("breaker_attempt_recorded", {
                "unit_id": unit_id,
                "kind": kind.value,
                "attempts": attempts,
            })

        return BreakerDecision(unit_id, kind, attempts, tripped=tripped)

    def unblock(self, unit_id: str, note: str) -> None:
        """
        Reopen a blocked unit after outside intervention.

        This is never called by the controller itself.
        """
        self.store.update_status(unit_id, WorkUnitStatus.OPEN)
        self.store.append_comment(unit_id, f"{UNBLOCK_PREFIX} {_one_line(note)}")
        self._log("breaker_unblocked", {"unit_id": unit_id})
