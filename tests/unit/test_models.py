"""Tests for WorkflowSession invariants and serialization."""

import json

import pytest

from workloop.models import (
    CompletionSignal,
    ComplexityTier,
    LeaseState,
    ResourceLease,
    SessionInvariantError,
    ValidationRequirement,
    WorkflowMode,
    WorkflowSession,
    WorkUnit,
    WorkUnitStatus,
    model_to_json,
)


def _building_session(**kwargs) -> WorkflowSession:
    session = WorkflowSession(session_id="s1", max_iterations=3, **kwargs)
    session.transition(WorkflowMode.BUILDING)
    return session


class TestWorkflowMode:

    def test_active_modes(self) -> None:
        assert WorkflowMode.PLANNING.is_active
        assert WorkflowMode.BUILDING.is_active
        assert not WorkflowMode.PAUSED.is_active
        assert not WorkflowMode.READY_FOR_BUILD.is_active

    def test_parse_aliases(self) -> None:
        assert WorkflowMode.parse("plan") == WorkflowMode.PLANNING
        assert WorkflowMode.parse("build") == WorkflowMode.BUILDING
        assert WorkflowMode.parse("ready_for_build") == WorkflowMode.READY_FOR_BUILD

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            WorkflowMode.parse("sleeping")


class TestWorkflowSession:

    def test_increment_counts_up_to_the_limit(self) -> None:
        session = _building_session()
        assert [session.increment_iteration() for _ in range(3)] == [1, 2, 3]
        assert session.budget_exhausted
        with pytest.raises(SessionInvariantError, match="iteration limit"):
            session.increment_iteration()
        assert session.iteration_count == 3

    def test_increment_rejected_when_inactive(self) -> None:
        session = WorkflowSession(session_id="s1", max_iterations=3)
        with pytest.raises(SessionInvariantError):
            session.increment_iteration()

    def test_transition_clears_completion_signal(self) -> None:
        session = _building_session()
        session.completion_signal = CompletionSignal.DONE
        session.transition(WorkflowMode.COMPLETE)
        assert session.completion_signal is None

    def test_complexity_cannot_change_once_set(self) -> None:
        session = WorkflowSession(session_id="s1")
        session.set_complexity(ComplexityTier.SIMPLE)
        session.set_complexity(ComplexityTier.SIMPLE)
        with pytest.raises(SessionInvariantError):
            session.set_complexity(ComplexityTier.CRITICAL)

    def test_modified_paths_are_unique(self) -> None:
        session = WorkflowSession(session_id="s1")
        session.record_modified_path("a.py")
        session.record_modified_path("a.py")
        assert session.modified_paths == ["a.py"]

    def test_round_trip_through_json(self) -> None:
        session = _building_session(
            epic_ref="wl-1",
            group_ref="wl-1-mol",
            complexity_tier=ComplexityTier.CRITICAL,
            validation=ValidationRequirement.REQUIRED,
            lease=ResourceLease(
                group_ref="wl-1-mol",
                path="/tmp/ws",
                branch_name="work/wl-1-mol",
                tracker_path="/tmp/ws.lease",
                state=LeaseState.ACTIVE,
            ),
            paused_from=WorkflowMode.BUILDING,
        )
        data = json.loads(model_to_json(session.to_dict()))
        assert data["mode"] == "BUILDING"
        assert data["lease"]["state"] == "ACTIVE"

        restored = WorkflowSession.from_dict(data)
        assert restored == session


class TestWorkUnit:

    def test_status_serialized_by_name(self) -> None:
        unit = WorkUnit(id="wl-2", status=WorkUnitStatus.IN_PROGRESS)
        assert unit.to_dict()["status"] == "IN_PROGRESS"
        assert WorkUnit.from_dict(unit.to_dict()) == unit

    def test_status_parses_tracker_spelling(self) -> None:
        assert WorkUnitStatus.parse("in-progress") == WorkUnitStatus.IN_PROGRESS
        assert WorkUnitStatus.parse("closed") == WorkUnitStatus.CLOSED
