"""
Dependency store interface.

The controller consumes an external, dependency-aware task store. This
module defines the capability interface it relies on and validates the
store's ready-list contract at the boundary:

- listed units are unique
- none of them is BLOCKED or CLOSED
- their dependency edges form no cycle

Selection order is the store's. Nothing here reorders what it returns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from workloop.models import WorkUnit, WorkUnitStatus, now_iso


class StoreError(Exception):
    """Base exception for dependency store failures."""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached or returns unusable output."""
    pass


class StoreContractError(StoreError):
    """Raised when the store's answer violates the ready-list contract."""
    pass


@dataclass
class Comment:
    """One entry in a work unit's append-only comment log."""
    body: str
    created_at: str = field(default_factory=now_iso)
    author: str = ""


class DependencyStore(ABC):
    """
    Capability interface onto the external task store.

    Implementations raise StoreUnavailableError for any failure to reach
    the store; the controller surfaces those as halts and never retries.
    """

    @abstractmethod
    def ping(self) -> None:
        """Verify the store is reachable and initialized."""

    @abstractmethod
    def create_work_unit(
        self,
        title: str,
        *,
        kind: str = "task",
        parent: Optional[str] = None,
        priority: int = 2,
        description: str = "",
        labels: Sequence[str] = (),
    ) -> WorkUnit:
        """Create a unit (or epic, for kind='epic') and return it."""

    @abstractmethod
    def instantiate_group(self, epic_ref: str) -> str:
        """Instantiate the epic's planned units as a work group; return its ref."""

    @abstractmethod
    def show(self, unit_id: str) -> WorkUnit:
        """Fetch a single unit, including its acceptance criteria."""

    @abstractmethod
    def update_status(self, unit_id: str, status: WorkUnitStatus) -> None:
        """Set a unit's status."""

    @abstractmethod
    def list_ready(self, group_ref: str, limit: Optional[int] = None) -> list[WorkUnit]:
        """Unblocked units in the group, in the store's priority order."""

    @abstractmethod
    def list_units(
        self,
        parent_ref: str,
        status: Optional[WorkUnitStatus] = None,
    ) -> list[WorkUnit]:
        """All units under a parent, optionally filtered by status."""

    @abstractmethod
    def append_comment(self, unit_id: str, body: str) -> None:
        """Append an entry to the unit's comment log."""

    @abstractmethod
    def list_comments(self, unit_id: str) -> list[Comment]:
        """The unit's comment log, oldest first."""

    @abstractmethod
    def query_progress(self, group_ref: str) -> int:
        """Completion of the group as an integer percentage (0-100)."""


def find_dependency_cycle(units: Iterable[WorkUnit]) -> Optional[list[str]]:
    """
    Detect a dependency cycle among units using Kahn's algorithm.

    Only edges between the given units are considered.

    Returns:
        Ids of the units left on a cycle, or None if the graph is acyclic.
    """
    units = list(units)
    ids = {unit.id for unit in units}
    dependents: dict[str, list[str]] = {unit_id: [] for unit_id in ids}
    in_degree: dict[str, int] = {unit_id: 0 for unit_id in ids}

    for unit in units:
        for dep in unit.dependencies:
            if dep in ids:
                dependents[dep].append(unit.id)
                in_degree[unit.id] += 1

    queue = deque(node for node, degree in in_degree.items() if degree == 0)
    processed = 0

    while queue:
        node = queue.popleft()
        processed += 1
        for neighbor in dependents[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if processed != len(in_degree):
        return sorted(node for node, degree in in_degree.items() if degree > 0)
    return None


def validate_ready_units(units: Sequence[WorkUnit]) -> list[WorkUnit]:
    """
    Check a ready list against the store contract.

    Returns:
        The same units, unchanged and in the same order.

    Raises:
        StoreContractError: On duplicates, non-ready statuses, or a cycle.
    """
    seen: set[str] = set()
    for unit in units:
        if unit.id in seen:
            raise StoreContractError(f"Ready list contains {unit.id} more than once")
        seen.add(unit.id)
        if unit.status in (WorkUnitStatus.BLOCKED, WorkUnitStatus.CLOSED):
            raise StoreContractError(
                f"Ready list contains {unit.id} with status {unit.status.store_name}"
            )

    cycle = find_dependency_cycle(units)
    if cycle:
        raise StoreContractError(f"Circular dependency among ready units: {cycle}")

    return list(units)
