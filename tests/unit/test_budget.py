"""Tests for iteration budgets and validation policy."""

import pytest

from workloop.budget import BudgetError, budget_for, iteration_limits, resolve_validation
from workloop.models import ComplexityTier, ValidationRequirement, WorkflowMode


class TestIterationLimits:

    @pytest.mark.parametrize("tier, expected", [
        (ComplexityTier.TRIVIAL, (2, 5)),
        (ComplexityTier.SIMPLE, (3, 10)),
        (ComplexityTier.STANDARD, (5, 20)),
        (ComplexityTier.CRITICAL, (8, 40)),
    ])
    def test_table(self, tier: ComplexityTier, expected: tuple) -> None:
        assert iteration_limits(tier) == expected


class TestResolveValidation:
    """REQUIRED is a floor; force raises, skip lowers only non-critical tiers."""

    def test_defaults(self) -> None:
        assert resolve_validation(ComplexityTier.TRIVIAL) == ValidationRequirement.SKIP
        assert resolve_validation(ComplexityTier.SIMPLE) == ValidationRequirement.SKIP
        assert resolve_validation(ComplexityTier.STANDARD) == ValidationRequirement.AUTO
        assert resolve_validation(ComplexityTier.CRITICAL) == ValidationRequirement.REQUIRED

    def test_skip_never_lowers_critical(self) -> None:
        result = resolve_validation(ComplexityTier.CRITICAL, skip_validation=True)
        assert result == ValidationRequirement.REQUIRED

    def test_skip_lowers_standard(self) -> None:
        result = resolve_validation(ComplexityTier.STANDARD, skip_validation=True)
        assert result == ValidationRequirement.SKIP

    def test_force_raises_trivial(self) -> None:
        result = resolve_validation(ComplexityTier.TRIVIAL, force_validation=True)
        assert result == ValidationRequirement.REQUIRED

    def test_force_wins_over_skip(self) -> None:
        result = resolve_validation(
            ComplexityTier.SIMPLE,
            force_validation=True,
            skip_validation=True,
        )
        assert result == ValidationRequirement.REQUIRED


class TestBudgetFor:

    def test_planning_budget(self) -> None:
        budget = budget_for(WorkflowMode.PLANNING, ComplexityTier.STANDARD)
        assert budget.max_iterations == 5
        assert budget.validation == ValidationRequirement.AUTO

    def test_building_budget(self) -> None:
        budget = budget_for(WorkflowMode.BUILDING, ComplexityTier.CRITICAL)
        assert budget.max_iterations == 40
        assert budget.validation == ValidationRequirement.REQUIRED

    @pytest.mark.parametrize("mode", [
        WorkflowMode.IDLE,
        WorkflowMode.READY_FOR_BUILD,
        WorkflowMode.PAUSED,
        WorkflowMode.COMPLETE,
    ])
    def test_inactive_modes_have_no_budget(self, mode: WorkflowMode) -> None:
        with pytest.raises(BudgetError):
            budget_for(mode, ComplexityTier.STANDARD)
