"""Tests for isolated-execution leases.

Tests cover:
- Exclusive acquisition keyed by group
- Idempotent release with optional publishing
- Recovery from the durable tracker record alone
- Stale-lease sweeping
- Signal-driven cleanup
"""

import json
import os
import signal
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from workloop import leases as leases_module
from workloop.leases import (
    LeaseConflictError,
    LeaseError,
    LeaseGuard,
    LeaseManager,
    LeaseRecord,
    group_slug,
)
from workloop.models import LeaseState
from workloop.utils.fs import FileSystemError


def _iso(delta: timedelta = timedelta()) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat().replace("+00:00", "Z")


def _write_record(manager: LeaseManager, name: str, **fields) -> Path:
    manager.leases_dir.mkdir(parents=True, exist_ok=True)
    tracker_path = manager.leases_dir / f"{name}.lease"
    tracker_path.write_text(json.dumps(fields))
    return tracker_path


class TestGroupSlug:

    def test_unsafe_characters_replaced(self) -> None:
        assert group_slug("wl-1 mol/../x") == "wl-1-mol-..-x"

    def test_empty_slug_rejected(self) -> None:
        with pytest.raises(LeaseError):
            group_slug("///")


class TestAcquire:

    def test_creates_record_then_workspace(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol")

        assert lease.state == LeaseState.ACTIVE
        assert Path(lease.path).is_dir()
        assert lease.branch_name == "work/wl-1-mol"
        assert vcs.created == [(lease.path, "work/wl-1-mol", True)]

        record = json.loads(Path(lease.tracker_path).read_text())
        assert record["path"] == lease.path
        assert record["group_ref"] == "wl-1-mol"
        assert record["pid"] == os.getpid()
        assert record["owner_pid"] == 0
        assert record["hostname"] == socket.gethostname()

    def test_existing_branch_is_attached(self, lease_manager: LeaseManager, vcs) -> None:
        vcs.branches.add("work/wl-1-mol")
        lease_manager.acquire("wl-1-mol")
        assert vcs.created[0][2] is False

    def test_second_acquire_conflicts(self, lease_manager: LeaseManager) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        with pytest.raises(LeaseConflictError):
            lease_manager.acquire("wl-1-mol")
        assert Path(lease.path).is_dir()
        assert Path(lease.tracker_path).exists()

    def test_existing_workspace_conflicts(self, lease_manager: LeaseManager) -> None:
        workspace = lease_manager.workspace_path_for("wl-1-mol")
        workspace.mkdir(parents=True)
        (workspace / "keep.txt").write_text("someone else's work")

        with pytest.raises(LeaseConflictError, match="already exists"):
            lease_manager.acquire("wl-1-mol")

        assert (workspace / "keep.txt").exists()
        assert not lease_manager.tracker_path_for("wl-1-mol").exists()

    def test_creation_failure_rolls_back(self, lease_manager: LeaseManager, vcs) -> None:
        vcs.fail_create = True
        with pytest.raises(LeaseError, match="Failed to create workspace"):
            lease_manager.acquire("wl-1-mol")

        assert not lease_manager.workspace_path_for("wl-1-mol").exists()
        assert not lease_manager.tracker_path_for("wl-1-mol").exists()
        assert lease_manager.active_leases == []

    def test_interrupt_during_creation_rolls_back(
        self,
        lease_manager: LeaseManager,
        vcs,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def interrupted(path, branch, new_branch):
            Path(path).mkdir(parents=True)
            raise KeyboardInterrupt

        monkeypatch.setattr(vcs, "create_isolated_workspace", interrupted)

        with pytest.raises(KeyboardInterrupt):
            lease_manager.acquire("wl-1-mol")

        assert not lease_manager.workspace_path_for("wl-1-mol").exists()
        assert not lease_manager.tracker_path_for("wl-1-mol").exists()
        assert lease_manager.active_leases == []

    def test_owner_pid_from_supervisor_env(self, config, vcs, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(leases_module.SUPERVISOR_ENV, "4242")
        lease = LeaseManager(config, vcs).acquire("wl-1-mol")
        assert json.loads(Path(lease.tracker_path).read_text())["owner_pid"] == 4242


class TestRelease:

    def test_release_removes_workspace_and_record(self, lease_manager: LeaseManager) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        assert lease_manager.release(lease) is True

        assert lease.state == LeaseState.RELEASED
        assert not Path(lease.path).exists()
        assert not Path(lease.tracker_path).exists()
        assert lease_manager.active_leases == []

    def test_release_is_idempotent(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        lease_manager.release(lease)
        assert lease_manager.release(lease) is True
        assert vcs.removed == [lease.path]

    def test_finalize_publishes_when_requested(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol", create_pull_request=True)
        lease_manager.release(lease, finalize=True)
        assert vcs.pushed == ["work/wl-1-mol"]
        assert vcs.reviews == ["work/wl-1-mol"]

    def test_no_publish_without_finalize(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol", create_pull_request=True)
        lease_manager.release(lease, finalize=False)
        assert vcs.pushed == []

    def test_push_failure_does_not_block_removal(self, lease_manager: LeaseManager, vcs) -> None:
        vcs.fail_push = True
        lease = lease_manager.acquire("wl-1-mol", create_pull_request=True)
        assert lease_manager.release(lease, finalize=True) is True
        assert not Path(lease.path).exists()
        assert vcs.reviews == []

    def test_vcs_removal_failure_falls_back_to_delete(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        vcs.fail_remove = True
        assert lease_manager.release(lease) is True
        assert not Path(lease.path).exists()

    def test_unremovable_workspace_keeps_lease(
        self,
        lease_manager: LeaseManager,
        vcs,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        vcs.fail_remove = True

        def refuse(path):
            raise FileSystemError(f"Cannot remove {path}: busy")

        monkeypatch.setattr(leases_module, "discard", refuse)

        assert lease_manager.release(lease) is False
        assert lease.state == LeaseState.ACTIVE
        assert Path(lease.tracker_path).exists()

    def test_leased_block_finalizes_on_success(self, lease_manager: LeaseManager, vcs) -> None:
        with lease_manager.leased("wl-1-mol", create_pull_request=True) as lease:
            assert Path(lease.path).is_dir()
        assert lease.is_released
        assert vcs.pushed == ["work/wl-1-mol"]

    def test_leased_block_skips_publishing_on_error(self, lease_manager: LeaseManager, vcs) -> None:
        with pytest.raises(RuntimeError):
            with lease_manager.leased("wl-1-mol", create_pull_request=True) as lease:
                raise RuntimeError("worker crashed")
        assert lease.is_released
        assert vcs.pushed == []

    def test_release_all(self, lease_manager: LeaseManager) -> None:
        lease_manager.acquire("grp-a")
        lease_manager.acquire("grp-b")
        assert sorted(lease_manager.release_all()) == ["grp-a", "grp-b"]
        assert lease_manager.list_records() == []


class TestForceRelease:
    """Recovery needs nothing but the tracker record."""

    def test_json_record(self, config, vcs, tmp_path: Path) -> None:
        owner = LeaseManager(config, vcs)
        lease = owner.acquire("wl-1-mol")

        recovery = LeaseManager(config, vcs)
        assert recovery.force_release(lease.tracker_path) is True
        assert not Path(lease.path).exists()
        assert not Path(lease.tracker_path).exists()

    def test_plain_text_record(self, lease_manager: LeaseManager) -> None:
        workspace = lease_manager.workspace_path_for("orphan")
        workspace.mkdir(parents=True)
        lease_manager.leases_dir.mkdir(parents=True)
        tracker_path = lease_manager.leases_dir / "orphan.lease"
        tracker_path.write_text(f"{workspace}\n")

        assert lease_manager.force_release(tracker_path) is True
        assert not workspace.exists()
        assert not tracker_path.exists()

    def test_record_outside_worktrees_keeps_directory(
        self,
        lease_manager: LeaseManager,
        vcs,
        tmp_path: Path,
    ) -> None:
        precious = tmp_path / "precious"
        precious.mkdir()
        (precious / "data.txt").write_text("keep me")
        vcs.fail_remove = True
        tracker_path = _write_record(lease_manager, "bogus", path=str(precious), created_at=_iso())

        assert lease_manager.force_release(tracker_path) is True

        assert (precious / "data.txt").read_text() == "keep me"
        assert not tracker_path.exists()
        assert vcs.removed == []

    def test_worktrees_root_itself_is_not_managed(self, lease_manager: LeaseManager, config) -> None:
        root = config.worktrees_path
        assert not lease_manager.is_managed_path(root)
        assert not lease_manager.is_managed_path(root / "..")
        assert not lease_manager.is_managed_path(root / "grp" / ".." / "..")
        assert lease_manager.is_managed_path(root / "grp")

    def test_unreadable_record_is_discarded(self, lease_manager: LeaseManager) -> None:
        tracker_path = _write_record(lease_manager, "broken", group_ref="x")
        assert lease_manager.force_release(tracker_path) is True
        assert not tracker_path.exists()

    def test_missing_record(self, lease_manager: LeaseManager, tmp_path: Path) -> None:
        assert lease_manager.force_release(tmp_path / "nothing.lease") is True

    def test_marks_in_memory_lease_released(self, lease_manager: LeaseManager) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        lease_manager.force_release(lease.tracker_path)
        assert lease.is_released
        assert lease_manager.active_leases == []


class TestRecordParsing:

    def test_multi_line_text_rejected(self, tmp_path: Path) -> None:
        tracker_path = tmp_path / "x.lease"
        tracker_path.write_text("one\ntwo\n")
        with pytest.raises(LeaseError, match="not readable"):
            LeaseRecord.read(tracker_path)


class TestSweep:

    def test_old_record_is_stale(self, lease_manager: LeaseManager) -> None:
        record = LeaseRecord("t", "/p", created_at=_iso(-timedelta(hours=5)))
        assert lease_manager.is_stale(record)

    def test_fresh_ownerless_record_is_not_stale(self, lease_manager: LeaseManager) -> None:
        record = LeaseRecord("t", "/p", hostname=socket.gethostname(), created_at=_iso())
        assert not lease_manager.is_stale(record)

    def test_dead_owner_is_stale(self, lease_manager: LeaseManager, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(lease_manager, "_is_process_alive", lambda pid: False)
        record = LeaseRecord(
            "t", "/p", owner_pid=999999, hostname=socket.gethostname(), created_at=_iso(),
        )
        assert lease_manager.is_stale(record)

    def test_owner_on_other_host_is_trusted(self, lease_manager: LeaseManager, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(lease_manager, "_is_process_alive", lambda pid: False)
        record = LeaseRecord("t", "/p", owner_pid=999999, hostname="elsewhere", created_at=_iso())
        assert not lease_manager.is_stale(record)

    def test_record_without_timestamp_is_stale(self, lease_manager: LeaseManager) -> None:
        assert lease_manager.is_stale(LeaseRecord("t", "/p"))

    def test_own_active_lease_is_never_stale(self, lease_manager: LeaseManager) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        record = LeaseRecord.read(lease.tracker_path)
        record.created_at = _iso(-timedelta(days=2))
        assert not lease_manager.is_stale(record)

    def test_live_owner_outlasts_timeout(self, lease_manager: LeaseManager) -> None:
        record = LeaseRecord(
            "t", "/p",
            owner_pid=os.getpid(),
            hostname=socket.gethostname(),
            created_at=_iso(-timedelta(minutes=300)),
        )
        assert not lease_manager.is_stale(record)

    def test_owner_of_another_user_counts_as_alive(
        self,
        lease_manager: LeaseManager,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def not_permitted(pid, sig):
            raise PermissionError(pid)

        monkeypatch.setattr(leases_module.os, "kill", not_permitted)
        assert lease_manager._is_process_alive(4242) is True

    def test_sweep_keeps_long_running_supervised_lease(self, config, vcs) -> None:
        lease = LeaseManager(config, vcs, owner_pid=os.getpid()).acquire("grp-long")
        tracker_path = Path(lease.tracker_path)
        record = json.loads(tracker_path.read_text())
        record["created_at"] = _iso(-timedelta(minutes=300))
        tracker_path.write_text(json.dumps(record))

        assert LeaseManager(config, vcs).sweep() == []
        assert Path(lease.path).is_dir()
        assert tracker_path.exists()

    def test_sweep_releases_only_stale(self, config, vcs) -> None:
        owner = LeaseManager(config, vcs)
        fresh = owner.acquire("grp-fresh")

        stale_workspace = owner.workspace_path_for("grp-stale")
        stale_workspace.mkdir(parents=True)
        _write_record(owner, "grp-stale", path=str(stale_workspace), created_at=_iso(-timedelta(days=1)))

        released = LeaseManager(config, vcs).sweep()

        assert released == [str(stale_workspace)]
        assert not stale_workspace.exists()
        assert Path(fresh.path).is_dir()


class TestLeaseGuard:

    def test_cleanup_releases_without_publishing(self, lease_manager: LeaseManager, vcs) -> None:
        lease = lease_manager.acquire("wl-1-mol", create_pull_request=True)
        assert LeaseGuard(lease_manager).cleanup() == ["wl-1-mol"]
        assert lease.is_released
        assert vcs.pushed == []

    def test_sweep_records_releases_leases_owned_by_this_process(self, config, vcs) -> None:
        child = LeaseManager(config, vcs, owner_pid=os.getpid())
        owned = child.acquire("grp-owned")
        other = LeaseManager(config, vcs, owner_pid=1).acquire("grp-other")

        supervisor = LeaseManager(config, vcs, owner_pid=os.getpid())
        released = LeaseGuard(supervisor, sweep_records=True).cleanup()

        assert released == [owned.path]
        assert not Path(owned.path).exists()
        assert Path(other.path).exists()

    def test_context_manager_restores_handlers(self, lease_manager: LeaseManager) -> None:
        before = signal.getsignal(signal.SIGTERM)
        with LeaseGuard(lease_manager) as guard:
            assert signal.getsignal(signal.SIGTERM) == guard._handle
            lease_manager.acquire("wl-1-mol")
        assert signal.getsignal(signal.SIGTERM) == before
        assert lease_manager.active_leases == []

    def test_sigterm_releases_then_exits(self, lease_manager: LeaseManager) -> None:
        lease = lease_manager.acquire("wl-1-mol")
        guard = LeaseGuard(lease_manager)
        guard.install()
        try:
            with pytest.raises(SystemExit) as exc_info:
                os.kill(os.getpid(), signal.SIGTERM)
        finally:
            guard.uninstall()

        assert exc_info.value.code == 128 + signal.SIGTERM
        assert not Path(lease.path).exists()
        assert not Path(lease.tracker_path).exists()

    def test_previous_handler_is_chained(self, lease_manager: LeaseManager) -> None:
        calls = []
        original = signal.signal(signal.SIGHUP, lambda signum, frame: calls.append(signum))
        try:
            lease = lease_manager.acquire("wl-1-mol")
            with LeaseGuard(lease_manager):
                os.kill(os.getpid(), signal.SIGHUP)
                assert lease.is_released
        finally:
            signal.signal(signal.SIGHUP, original)

        assert calls == [signal.SIGHUP]
