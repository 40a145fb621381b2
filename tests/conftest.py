"""Shared fixtures and in-memory collaborators for workloop tests."""

from __future__ import annotations

import shutil
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence, Union

import pytest

from workloop.config import LoopConfig, clear_config_cache
from workloop.controller import WorkflowController
from workloop.leases import SUPERVISOR_ENV, LeaseManager
from workloop.models import WorkUnit, WorkUnitStatus
from workloop.session_store import SessionStore
from workloop.store import Comment, DependencyStore, StoreUnavailableError
from workloop.validation import Reviewer, ReviewerError, ReviewRequest
from workloop.vcs import VersionControl, VersionControlError


class InMemoryStore(DependencyStore):
    """
    Dependency store kept in dictionaries.

    A group instantiated from an epic contains the units parented to the
    epic or to the group. Ready units are open/in-progress units whose
    dependencies are all closed, ordered by priority then creation.
    """

    def __init__(self) -> None:
        self.units: dict[str, WorkUnit] = {}
        self.parents: dict[str, Optional[str]] = {}
        self.epics: set[str] = set()
        self.comments: dict[str, list[Comment]] = {}
        self.groups: dict[str, str] = {}
        self.available = True
        self.ready_override: Optional[list[WorkUnit]] = None
        self.calls: list[str] = []
        self._counter = 0

    def _check(self, call: str) -> None:
        self.calls.append(call)
        if not self.available:
            raise StoreUnavailableError("tracker offline")

    def _next_id(self) -> str:
        self._counter += 1
        return f"wl-{self._counter}"

    def _members(self, ref: str) -> list[WorkUnit]:
        parents = {ref, self.groups.get(ref)}
        return [
            unit for unit_id, unit in self.units.items()
            if self.parents.get(unit_id) in parents and unit_id not in self.epics
        ]

    # Seeding helpers (no availability check)

    def add_epic(self, title: str = "Epic") -> WorkUnit:
        unit = WorkUnit(id=self._next_id(), title=title)
        self.units[unit.id] = unit
        self.parents[unit.id] = None
        self.epics.add(unit.id)
        return unit

    def add_unit(
        self,
        parent: str,
        title: str,
        *,
        priority: int = 2,
        description: str = "",
        dependencies: Sequence[str] = (),
        status: WorkUnitStatus = WorkUnitStatus.OPEN,
    ) -> WorkUnit:
        unit = WorkUnit(
            id=self._next_id(),
            title=title,
            status=status,
            priority=priority,
            description=description,
            dependencies=list(dependencies),
        )
        self.units[unit.id] = unit
        self.parents[unit.id] = parent
        return unit

    def bodies(self, unit_id: str) -> list[str]:
        return [c.body for c in self.comments.get(unit_id, [])]

    # DependencyStore

    def ping(self) -> None:
        self._check("ping")

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
        self._check("create_work_unit")
        if kind == "epic":
            unit = self.add_epic(title)
            unit.priority = priority
            unit.description = description
        else:
            unit = self.add_unit(parent or "", title, priority=priority, description=description)
        return replace(unit)

    def instantiate_group(self, epic_ref: str) -> str:
        self._check("instantiate_group")
        if epic_ref not in self.units:
            raise StoreUnavailableError(f"No epic {epic_ref}")
        group_ref = f"{epic_ref}-mol"
        self.groups[group_ref] = epic_ref
        return group_ref

    def show(self, unit_id: str) -> WorkUnit:
        self._check("show")
        if unit_id not in self.units:
            raise StoreUnavailableError(f"No unit {unit_id}")
        return replace(self.units[unit_id])

    def update_status(self, unit_id: str, status: WorkUnitStatus) -> None:
        self._check("update_status")
        if unit_id not in self.units:
            raise StoreUnavailableError(f"No unit {unit_id}")
        self.units[unit_id].status = status

    def list_ready(self, group_ref: str, limit: Optional[int] = None) -> list[WorkUnit]:
        self._check("list_ready")
        if self.ready_override is not None:
            return list(self.ready_override)

        ready = []
        for unit in self._members(group_ref):
            if unit.status in (WorkUnitStatus.BLOCKED, WorkUnitStatus.CLOSED):
                continue
            deps = [self.units[d] for d in unit.dependencies if d in self.units]
            if all(dep.status is WorkUnitStatus.CLOSED for dep in deps):
                ready.append(replace(unit))
        ready.sort(key=lambda u: u.priority)
        return ready[:limit] if limit else ready

    def list_units(
        self,
        parent_ref: str,
        status: Optional[WorkUnitStatus] = None,
    ) -> list[WorkUnit]:
        self._check("list_units")
        return [
            replace(unit) for unit in self._members(parent_ref)
            if status is None or unit.status is status
        ]

    def append_comment(self, unit_id: str, body: str) -> None:
        self._check("append_comment")
        self.comments.setdefault(unit_id, []).append(Comment(body=body))

    def list_comments(self, unit_id: str) -> list[Comment]:
        self._check("list_comments")
        return list(self.comments.get(unit_id, []))

    def query_progress(self, group_ref: str) -> int:
        self._check("query_progress")
        members = self._members(group_ref)
        if not members:
            return 0
        closed = sum(1 for unit in members if unit.status is WorkUnitStatus.CLOSED)
        return closed * 100 // len(members)


class FakeVersionControl(VersionControl):
    """Version control that creates plain directories and records calls."""

    def __init__(self) -> None:
        self.branches: set[str] = set()
        self.created: list[tuple[str, str, bool]] = []
        self.removed: list[str] = []
        self.pushed: list[str] = []
        self.reviews: list[str] = []
        self.fail_create = False
        self.fail_remove = False
        self.fail_push = False
        self.next_diff = "README.md | 1 +\n---\n+hello\n"

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    def create_isolated_workspace(self, path: str, branch: str, new_branch: bool) -> None:
        Path(path).mkdir(parents=True)
        if self.fail_create:
            raise VersionControlError("worktree add failed")
        (Path(path) / ".git").write_text(f"gitdir: {branch}\n")
        self.branches.add(branch)
        self.created.append((path, branch, new_branch))

    def remove_isolated_workspace(self, path: str) -> None:
        if self.fail_remove:
            raise VersionControlError("worktree remove failed")
        shutil.rmtree(path)
        self.removed.append(path)

    def push(self, branch: str) -> None:
        if self.fail_push:
            raise VersionControlError("push rejected")
        self.pushed.append(branch)

    def request_external_review(self, branch: str, title: str, body: str) -> str:
        self.reviews.append(branch)
        return f"pr-{len(self.reviews)}"

    def diff(self, workdir: Optional[str] = None, base: str = "HEAD~1") -> str:
        return self.next_diff


class FakeReviewer(Reviewer):
    """Reviewer that replays queued responses (text or ReviewerError)."""

    def __init__(self, *responses: Union[str, ReviewerError]) -> None:
        self.responses = list(responses)
        self.requests: list[ReviewRequest] = []

    def review(self, request: ReviewRequest) -> str:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else "APPROVED: looks good"
        if isinstance(response, ReviewerError):
            raise response
        return response


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch):
    for name in (SUPERVISOR_ENV, "WORKLOOP_PROJECT", "WORKLOOP_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config(tmp_path: Path) -> LoopConfig:
    return LoopConfig(repo_root=str(tmp_path))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def lease_manager(config: LoopConfig, vcs: FakeVersionControl) -> LeaseManager:
    return LeaseManager(config, vcs)


@pytest.fixture
def sessions(config: LoopConfig) -> SessionStore:
    return SessionStore(config)


@pytest.fixture
def reviewer() -> FakeReviewer:
    return FakeReviewer()


@pytest.fixture
def controller(
    config: LoopConfig,
    sessions: SessionStore,
    store: InMemoryStore,
    lease_manager: LeaseManager,
    reviewer: FakeReviewer,
) -> WorkflowController:
    return WorkflowController(
        sessions,
        store,
        leases=lease_manager,
        reviewer=reviewer,
        repo_root=config.repo_root,
    )
