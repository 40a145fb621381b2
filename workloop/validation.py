"""
Validation gate for work unit closure.

An independent reviewer sees only the unit's acceptance criteria and the
diff, never the worker's reasoning, and answers with a single verdict
line. Rejections go to the circuit breaker, which records the feedback
on the unit and blocks it after repeated rejections.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

from workloop.circuit_breaker import BreakerDecision, CircuitBreaker
from workloop.models import ValidationRequirement
from workloop.store import DependencyStore

if TYPE_CHECKING:
    from workloop.config import LoopConfig
    from workloop.logger import LoopLogger


class ReviewerError(Exception):
    """Raised when the reviewer cannot produce a review."""

    def __init__(self, message: str, stderr: str = "", returncode: int = -1) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


REVIEW_PROMPT = """Review this code change against its acceptance criteria.
You have NOT seen the implementation reasoning, only the result.

## Unit
{unit_id}

## Acceptance Criteria
{criteria}

## Code Changes
{diff}

Respond with EXACTLY one line, one of:
APPROVED: <brief reason>
REJECTED: <specific issues that must be fixed>
"""


@dataclass(frozen=True)
class ReviewRequest:
    """Everything a reviewer is allowed to see."""
    unit_id: str
    acceptance_criteria: str
    diff: str

    def render_prompt(self) -> str:
        return REVIEW_PROMPT.format(
            unit_id=self.unit_id,
            criteria=self.acceptance_criteria.strip() or "(none recorded)",
            diff=self.diff.strip() or "(empty diff)",
        )


@dataclass(frozen=True)
class ReviewVerdict:
    approved: bool
    feedback: str


def parse_verdict(text: Optional[str]) -> ReviewVerdict:
    """
    Parse reviewer output.

    The first line starting with APPROVED: or REJECTED: decides. Output
    with neither is treated as a rejection.
    """
    for line in (text or "").splitlines():
        stripped = line.strip().lstrip("*#- ").strip()
        upper = stripped.upper()
        if upper.startswith("APPROVED:") or upper == "APPROVED":
            return ReviewVerdict(True, stripped.partition(":")[2].strip())
        if upper.startswith("REJECTED:") or upper == "REJECTED":
            feedback = stripped.partition(":")[2].strip()
            return ReviewVerdict(False, feedback or "Rejected without feedback")

    excerpt = " ".join((text or "").split())[:200]
    return ReviewVerdict(False, f"Malformed review (no verdict line): {excerpt or 'empty output'}")


class Reviewer(ABC):
    """An independent reviewer."""

    @abstractmethod
    def review(self, request: ReviewRequest) -> str:
        """Return raw review text for the request."""


class CommandReviewer(Reviewer):
    """Reviewer that pipes the rendered prompt to a configured CLI."""

    def __init__(self, config: LoopConfig, workdir: Optional[str] = None) -> None:
        self.config = config
        self.workdir = workdir

    def _build_command(self) -> list[str]:
        return [self.config.reviewer.binary] + list(self.config.reviewer.args)

    def review(self, request: ReviewRequest) -> str:
        timeout = self.config.reviewer.timeout_seconds
        try:
            proc = subprocess.run(
                self._build_command(),
                input=request.render_prompt(),
                capture_output=True,
                text=True,
                cwd=self.workdir or self.config.repo_root,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise ReviewerError(f"Reviewer CLI '{self.config.reviewer.binary}' not found")
        except subprocess.TimeoutExpired:
            raise ReviewerError(f"Reviewer timed out after {timeout}s")

        if proc.returncode != 0:
            raise ReviewerError(
                f"Reviewer exited with code {proc.returncode}",
                stderr=proc.stderr or "",
                returncode=proc.returncode,
            )
        return proc.stdout or ""


class ValidationOutcome(Enum):
    APPROVED = auto()
    REJECTED = auto()
    SKIPPED = auto()


@dataclass(frozen=True)
class ValidationResult:
    """Result of passing a unit through the gate."""
    unit_id: str
    outcome: ValidationOutcome
    feedback: str = ""
    breaker: Optional[BreakerDecision] = None

    @property
    def may_close(self) -> bool:
        return self.outcome is not ValidationOutcome.REJECTED


class ValidationGate:
    """Decides whether a finished unit may be closed."""

    def __init__(
        self,
        store: DependencyStore,
        breaker: CircuitBreaker,
        reviewer: Reviewer,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self.store = store
        self.breaker = breaker
        self.reviewer = reviewer
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "validation"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def evaluate(
        self,
        unit_id: str,
        diff: str,
        requirement: ValidationRequirement,
    ) -> ValidationResult:
        """
        Review a unit's diff when the requirement calls for it.

        Raises:
            StoreUnavailableError: If the unit cannot be read or updated.
        """
        if not requirement.reviews:
            self._log("validation_skipped", {"unit_id": unit_id})
            return ValidationResult(unit_id, ValidationOutcome.SKIPPED)

        unit = self.store.show(unit_id)
        request = ReviewRequest(unit_id, unit.description, diff)

        try:
            verdict = parse_verdict(self.reviewer.review(request))
        except ReviewerError as e:
            verdict = ReviewVerdict(False, f"Review failed: {e}")
            self._log("validation_reviewer_error", {
                "unit_id": unit_id,
                "error": str(e),
            }, level="warn")

        if verdict.approved:
            self._log("validation_approved", {"unit_id": unit_id})
            return ValidationResult(unit_id, ValidationOutcome.APPROVED, verdict.feedback)

        decision = self.breaker.record_rejection(unit_id, verdict.feedback)
        self._log("validation_rejected", {
            "unit_id": unit_id,
            "rejections": decision.attempts,
            "blocked": decision.tripped,
        }, level="warn")
        return ValidationResult(
            unit_id,
            ValidationOutcome.REJECTED,
            verdict.feedback,
            breaker=decision,
        )
