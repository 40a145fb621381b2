"""
Iteration budget and validation policy.

| tier     | planning | building | validation |
|----------|----------|----------|------------|
| trivial  | 2        | 5        | skip       |
| simple   | 3        | 10       | skip       |
| standard | 5        | 20       | auto       |
| critical | 8        | 40       | required   |

REQUIRED is a floor: a caller's skip request never lowers it, while a
force request can raise SKIP or AUTO to REQUIRED.
"""

from __future__ import annotations

from dataclasses import dataclass

from workloop.models import ComplexityTier, ValidationRequirement, WorkflowMode


class BudgetError(Exception):
    """Raised when a budget is requested for a mode that has none."""
    pass


@dataclass(frozen=True)
class IterationBudget:
    """Iteration ceiling and validation requirement for a (mode, tier) pair."""
    max_iterations: int
    validation: ValidationRequirement


# tier -> (planning iterations, building iterations, validation)
BUDGET_TABLE: dict[ComplexityTier, tuple[int, int, ValidationRequirement]] = {
    ComplexityTier.TRIVIAL: (2, 5, ValidationRequirement.SKIP),
    ComplexityTier.SIMPLE: (3, 10, ValidationRequirement.SKIP),
    ComplexityTier.STANDARD: (5, 20, ValidationRequirement.AUTO),
    ComplexityTier.CRITICAL: (8, 40, ValidationRequirement.REQUIRED),
}


def iteration_limits(tier: ComplexityTier) -> tuple[int, int]:
    """Return (planning, building) iteration ceilings for a tier."""
    planning, building, _ = BUDGET_TABLE[tier]
    return planning, building


def resolve_validation(
    tier: ComplexityTier,
    *,
    force_validation: bool = False,
    skip_validation: bool = False,
) -> ValidationRequirement:
    """Apply caller force/skip requests to the tier's default requirement."""
    default = BUDGET_TABLE[tier][2]

    if default is ValidationRequirement.REQUIRED or force_validation:
        return ValidationRequirement.REQUIRED
    if skip_validation:
        return ValidationRequirement.SKIP
    return default


def budget_for(
    mode: WorkflowMode,
    tier: ComplexityTier,
    *,
    force_validation: bool = False,
    skip_validation: bool = False,
) -> IterationBudget:
    """
    Look up the iteration budget for a mode and complexity tier.

    Raises:
        BudgetError: If mode is neither PLANNING nor BUILDING.
    """
    planning, building = iteration_limits(tier)
    if mode is WorkflowMode.PLANNING:
        max_iterations = planning
    elif mode is WorkflowMode.BUILDING:
        max_iterations = building
    else:
        raise BudgetError(f"No iteration budget for mode {mode.value_name}")

    return IterationBudget(
        max_iterations=max_iterations,
        validation=resolve_validation(
            tier,
            force_validation=force_validation,
            skip_validation=skip_validation,
        ),
    )
