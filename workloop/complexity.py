"""
Complexity classification for task descriptions.

Rules are checked in a fixed order: CRITICAL first, then TRIVIAL, then
SIMPLE, falling back to STANDARD. A description that mentions both a
trivial-sounding verb and a sensitive noun ("fix typo in auth token
check") is CRITICAL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Union

from workloop.models import ComplexityTier


@dataclass(frozen=True)
class ComplexityRule:
    """A tier and the pattern that selects it."""
    tier: ComplexityTier
    pattern: Pattern[str]

    def matches(self, description: str) -> bool:
        return self.pattern.search(description) is not None


RULES: tuple[ComplexityRule, ...] = (
    ComplexityRule(
        ComplexityTier.CRITICAL,
        re.compile(
            r"auth|security|payment|migration|credential|token|encrypt|password|"
            r"secret|api\s*key|oauth|jwt|session|permission|role|access\s*control|"
            r"vulnerability|injection|xss|csrf|sanitiz",
            re.IGNORECASE,
        ),
    ),
    ComplexityRule(
        ComplexityTier.TRIVIAL,
        re.compile(
            r"fix\s+typo|update\s+comment|rename|spelling|whitespace|typo|"
            r"correct\s+spelling|documentation\s+fix|docstring|comment",
            re.IGNORECASE,
        ),
    ),
    ComplexityRule(
        ComplexityTier.SIMPLE,
        re.compile(
            r"add\s+(button|toggle|flag)|toggle|flag|remove\s+unused|"
            r"update\s+(version|dep)|bump\s+version|add\s+const|"
            r"remove\s+dead\s+code|unused\s+import",
            re.IGNORECASE,
        ),
    ),
)

DEFAULT_TIER = ComplexityTier.STANDARD


def classify(
    description: str,
    override: Optional[Union[str, ComplexityTier]] = None,
) -> ComplexityTier:
    """
    Classify a task description into a complexity tier.

    Args:
        description: Free-text task description.
        override: Explicit tier (enum or name). Always wins when given.

    Returns:
        The ComplexityTier for the task.

    Raises:
        ValueError: If override is a string that names no tier.
    """
    if override is not None:
        return ComplexityTier.parse(override)

    for rule in RULES:
        if rule.matches(description or ""):
            return rule.tier

    return DEFAULT_TIER
