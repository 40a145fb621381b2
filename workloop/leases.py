"""
Isolated-execution leases.

A lease is a git worktree plus branch allocated to one work-unit group.
Every lease is mirrored by a durable tracker record written with
exclusive-create semantics *before* the workspace exists, so a
supervisor can always find and remove what a dead process left behind.

Tracker record format (JSON, one file per group):
{
    "path": "/repo/.workloop/worktrees/grp-1",
    "group_ref": "grp-1",
    "branch_name": "work/grp-1",
    "pid": 12345,
    "owner_pid": 12000,
    "hostname": "dev-machine",
    "created_at": "2026-01-01T10:00:00Z"
}

Only "path" is required for recovery; a plain-text record holding just
the workspace path is accepted too.

"pid" is the process that wrote the record. "owner_pid" is the long-lived
process responsible for the lease (a supervising runner, or a host that
embeds the controller); it is 0 when there is none, in which case the
record only goes stale by age.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import re
import signal
import socket
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from workloop.models import LeaseState, ResourceLease, now_iso
from workloop.utils.fs import FileSystemError, discard, list_files, read_text, write_exclusive
from workloop.vcs import VersionControl, VersionControlError

if TYPE_CHECKING:
    from workloop.config import LoopConfig
    from workloop.logger import LoopLogger


class LeaseError(Exception):
    """Raised when a lease cannot be acquired or released."""
    pass


class LeaseConflictError(LeaseError):
    """Raised when a lease or workspace already exists for a group."""
    pass


_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")

# Set by `workloop leases supervise` for the worker it runs
SUPERVISOR_ENV = "WORKLOOP_SUPERVISOR_PID"


def _supervisor_pid() -> Optional[int]:
    try:
        pid = int(os.environ.get(SUPERVISOR_ENV, ""))
    except ValueError:
        return None
    return pid if pid > 0 else None


def group_slug(group_ref: str) -> str:
    """Filesystem- and branch-safe form of a group reference."""
    slug = _SLUG_RE.sub("-", group_ref.strip()).strip("-.")
    if not slug:
        raise LeaseError(f"Cannot derive a workspace name from group {group_ref!r}")
    return slug


@dataclass
class LeaseRecord:
    """Contents of a durable tracker record."""
    tracker_path: str
    path: str
    group_ref: str = ""
    branch_name: str = ""
    pid: int = 0
    owner_pid: int = 0
    hostname: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("tracker_path")
        return data

    @classmethod
    def read(cls, tracker_path: str | Path) -> LeaseRecord:
        """
        Parse a tracker record.

        Raises:
            LeaseError: If the record cannot be read or names no path.
        """
        try:
            content = read_text(tracker_path)
        except FileSystemError as e:
            raise LeaseError(str(e))
        if content is None:
            raise LeaseError(f"Tracker record {tracker_path} not found")
        content = content.strip()

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict):
            path = data.get("path")
            if not path:
                raise LeaseError(f"Tracker record {tracker_path} has no path")
            return cls(
                tracker_path=str(tracker_path),
                path=str(path),
                group_ref=str(data.get("group_ref", "")),
                branch_name=str(data.get("branch_name", "")),
                pid=int(data.get("pid") or 0),
                owner_pid=int(data.get("owner_pid") or 0),
                hostname=str(data.get("hostname", "")),
                created_at=str(data.get("created_at", "")),
            )

        # Single-field record: the workspace path on its own
        if content and "\n" not in content:
            return cls(tracker_path=str(tracker_path), path=content)

        raise LeaseError(f"Tracker record {tracker_path} is not readable")


class LeaseManager:
    """
    Creates and releases isolated workspaces for work-unit groups.

    Key properties:
    - Deterministic path and branch per group
    - Durable tracker record written before the workspace is created
    - Existing record or workspace for the group is a conflict, never overwritten
    - release() is idempotent and safe to call from a signal handler
    - force_release() needs only the tracker record
    """

    RECORD_SUFFIX = ".lease"

    def __init__(
        self,
        config: LoopConfig,
        vcs: VersionControl,
        event_logger: Optional[LoopLogger] = None,
        owner_pid: Optional[int] = None,
    ) -> None:
        self.config = config
        self.vcs = vcs
        self.owner_pid = owner_pid or _supervisor_pid()
        self.leases_dir = config.leases_path
        self.stale_timeout_minutes = config.leases.stale_timeout_minutes
        self._active: dict[str, ResourceLease] = {}
        self._logger = logging.getLogger(__name__)
        self._event_logger = event_logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Record a lease event in the JSONL log if one is configured."""
        if self._event_logger:
            log_data = {"component": "leases"}
            if data:
                log_data.update(data)
            self._event_logger.log(event_type, log_data, level=level)

    # Naming

    def tracker_path_for(self, group_ref: str) -> Path:
        return self.leases_dir / f"{group_slug(group_ref)}{self.RECORD_SUFFIX}"

    def workspace_path_for(self, group_ref: str) -> Path:
        return self.config.worktrees_path / group_slug(group_ref)

    def branch_for(self, group_ref: str) -> str:
        return self.config.git.branch_pattern.format(group=group_slug(group_ref))

    @property
    def active_leases(self) -> list[ResourceLease]:
        return list(self._active.values())

    def is_managed_path(self, path: str | Path) -> bool:
        """Whether path lies strictly inside the worktrees directory."""
        root = self.config.worktrees_path.resolve()
        target = Path(path).resolve()
        return target != root and root in target.parents

    # Acquisition

    def acquire(self, group_ref: str, create_pull_request: bool = False) -> ResourceLease:
        """
        Acquire the isolated workspace for a group.

        Raises:
            LeaseConflictError: If a tracker record or workspace already exists.
            LeaseError: If the workspace cannot be created.
        """
        tracker_path = self.tracker_path_for(group_ref)
        workspace = self.workspace_path_for(group_ref)
        lease = ResourceLease(
            group_ref=group_ref,
            path=str(workspace),
            branch_name=self.branch_for(group_ref),
            tracker_path=str(tracker_path),
            create_pull_request=create_pull_request,
        )
        record = LeaseRecord(
            tracker_path=str(tracker_path),
            path=lease.path,
            group_ref=group_ref,
            branch_name=lease.branch_name,
            pid=os.getpid(),
            owner_pid=self.owner_pid or 0,
            hostname=socket.gethostname(),
            created_at=now_iso(),
        )

        try:
            write_exclusive(tracker_path, json.dumps(record.to_dict(), indent=2))
        except FileExistsError:
            raise LeaseConflictError(
                f"Group {group_ref} already has a lease tracked at {tracker_path}"
            )
        except FileSystemError as e:
            raise LeaseError(f"Cannot write tracker record for {group_ref}: {e}")

        if workspace.exists():
            self._discard_record(tracker_path)
            raise LeaseConflictError(
                f"Workspace {workspace} already exists for group {group_ref}"
            )

        # Tracked before the workspace exists so a guard's signal handler can release it
        self._active[lease.tracker_path] = lease

        try:
            new_branch = not self.vcs.branch_exists(lease.branch_name)
            self.vcs.create_isolated_workspace(lease.path, lease.branch_name, new_branch)
        except BaseException as e:
            self._active.pop(lease.tracker_path, None)
            self._remove_workspace(lease.path)
            self._discard_record(tracker_path)
            if isinstance(e, (VersionControlError, OSError)):
                raise LeaseError(f"Failed to create workspace for {group_ref}: {e}")
            raise

        lease.state = LeaseState.ACTIVE
        self._log("lease_acquired", {
            "group_ref": group_ref,
            "path": lease.path,
            "branch": lease.branch_name,
            "new_branch": new_branch,
        })
        self._logger.info(
            f"Acquired lease for {group_ref} at {lease.path} "
            f"({'new' if new_branch else 'existing'} branch {lease.branch_name})"
        )
        return lease

    @contextmanager
    def leased(self, group_ref: str, create_pull_request: bool = False) -> Iterator[ResourceLease]:
        """
        Acquire a lease for the duration of a block.

        Normal exit finalizes (push/PR when requested); an exception
        releases without publishing.
        """
        lease = self.acquire(group_ref, create_pull_request=create_pull_request)
        try:
            yield lease
        except BaseException:
            self.release(lease, finalize=False)
            raise
        self.release(lease, finalize=True)

    # Release

    def release(self, lease: ResourceLease, finalize: bool = True) -> bool:
        """
        Release a lease.

        When finalize is set and the lease asked for a pull request, the
        branch is pushed and a review requested first. Failures there are
        logged and never stop the workspace removal.

        Returns:
            True if the lease is released after this call.
        """
        if lease.is_released:
            return True

        if finalize and lease.create_pull_request:
            self._finalize(lease)

        if not self._remove_workspace(lease.path):
            self._logger.error(
                f"Lease for {lease.group_ref} kept: workspace {lease.path} could not be removed"
            )
            return False

        self._discard_record(Path(lease.tracker_path))
        lease.state = LeaseState.RELEASED
        self._active.pop(lease.tracker_path, None)
        self._log("lease_released", {"group_ref": lease.group_ref, "finalized": finalize})
        self._logger.info(f"Released lease for {lease.group_ref}")
        return True

    def release_all(self, finalize: bool = False) -> list[str]:
        """Release every lease this manager tracks; return released group refs."""
        released = []
        for lease in list(self._active.values()):
            if self.release(lease, finalize=finalize):
                released.append(lease.group_ref)
        return released

    def force_release(self, tracker_path: str | Path) -> bool:
        """
        Remove a lease using only its durable tracker record.

        Returns:
            True if the workspace and record are gone, False otherwise.
        """
        tracker_path = Path(tracker_path)
        if not tracker_path.exists():
            return True

        try:
            record = LeaseRecord.read(tracker_path)
        except LeaseError as e:
            self._logger.warning(f"Discarding unreadable tracker record: {e}")
            return self._discard_record(tracker_path)

        if not self.is_managed_path(record.path):
            self._logger.error(
                f"Tracker record {tracker_path} names {record.path}, outside "
                f"{self.config.worktrees_path}; discarding the record only"
            )
            self._log("lease_record_rejected", {
                "tracker_path": str(tracker_path),
                "path": record.path,
            }, level="error")
            return self._discard_record(tracker_path)

        self._logger.warning(
            f"Force-releasing lease at {record.path} "
            f"(held by PID {record.pid or 'unknown'} on {record.hostname or 'unknown'})"
        )

        if not self._remove_workspace(record.path):
            return False

        discarded = self._discard_record(tracker_path)
        lease = self._active.pop(str(tracker_path), None)
        if lease is not None:
            lease.state = LeaseState.RELEASED
        return discarded

    # Recovery sweep

    def list_records(self) -> list[LeaseRecord]:
        records = []
        for tracker_path in list_files(self.leases_dir, f"*{self.RECORD_SUFFIX}"):
            try:
                records.append(LeaseRecord.read(tracker_path))
            except LeaseError as e:
                self._logger.warning(str(e))
        return records

    def _is_process_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except PermissionError:
            # Exists, owned by another user
            return True
        except OSError:
            return False

    def is_stale(self, record: LeaseRecord) -> bool:
        """
        A record is stale when its owner is gone or it outlived the timeout.

        A live owner on this host keeps its lease however old it is; the
        timeout only applies when the owner cannot be checked.
        """
        if record.tracker_path in self._active:
            return False

        if record.hostname == socket.gethostname() and record.owner_pid:
            return not self._is_process_alive(record.owner_pid)

        try:
            created_at = datetime.fromisoformat(record.created_at.replace("Z", "+00:00"))
        except ValueError:
            # No owner metadata to go on
            return True

        return datetime.now(timezone.utc) - created_at >= timedelta(minutes=self.stale_timeout_minutes)

    def sweep(self) -> list[str]:
        """
        Force-release every stale lease.

        Returns:
            Workspace paths whose leases were released.
        """
        released = []
        for tracker_path in list_files(self.leases_dir, f"*{self.RECORD_SUFFIX}"):
            try:
                record = LeaseRecord.read(tracker_path)
            except LeaseError:
                self.force_release(tracker_path)
                continue
            if self.is_stale(record) and self.force_release(tracker_path):
                released.append(record.path)
        return released

    # Internals

    def _finalize(self, lease: ResourceLease) -> None:
        try:
            self.vcs.push(lease.branch_name)
            review = self.vcs.request_external_review(
                lease.branch_name,
                title=f"Work group {lease.group_ref}",
                body=f"Completed work for group {lease.group_ref} on branch {lease.branch_name}.",
            )
            self._logger.info(f"Requested review for {lease.branch_name}: {review}")
        except (VersionControlError, OSError) as e:
            self._logger.warning(f"Finalization failed for {lease.group_ref}: {e}")

    def _remove_workspace(self, path: str) -> bool:
        if not Path(path).exists():
            return True
        try:
            self.vcs.remove_isolated_workspace(path)
        except (VersionControlError, OSError) as e:
            self._logger.warning(f"Workspace removal via version control failed: {e}")
        if Path(path).exists():
            try:
                discard(path)
            except FileSystemError as e:
                self._logger.error(str(e))
                return False
        return True

    def _discard_record(self, tracker_path: Path) -> bool:
        try:
            discard(tracker_path)
            return True
        except FileSystemError as e:
            self._logger.error(f"Failed to remove tracker record: {e}")
            return False


class LeaseGuard:
    """
    Releases leases when the process is asked to terminate.

    install() registers handlers for SIGTERM, SIGINT and SIGHUP plus an
    atexit hook. Each releases the manager's leases synchronously without
    publishing, then defers to the previously installed handler (or
    exits with 128 + signum). With sweep_records set, every durable
    tracker record naming this process as owner is force-released too,
    which covers leases acquired by supervised child processes.
    """

    SIGNALS = tuple(
        sig for sig in (
            getattr(signal, "SIGTERM", None),
            getattr(signal, "SIGINT", None),
            getattr(signal, "SIGHUP", None),
        )
        if sig is not None
    )

    def __init__(self, manager: LeaseManager, sweep_records: bool = False) -> None:
        self.manager = manager
        self.sweep_records = sweep_records
        self._previous: dict[int, Any] = {}
        self._installed = False
        self._logger = logging.getLogger(__name__)

    def install(self) -> None:
        if self._installed:
            return
        for sig in self.SIGNALS:
            try:
                self._previous[sig] = signal.getsignal(sig)
                signal.signal(sig, self._handle)
            except ValueError:
                # Handlers can only be installed from the main thread
                self._logger.warning(f"Cannot install handler for signal {sig}")
                self._previous.pop(sig, None)
        atexit.register(self.cleanup)
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        for sig, previous in self._previous.items():
            try:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
            except ValueError:
                pass
        self._previous.clear()
        atexit.unregister(self.cleanup)
        self._installed = False

    def cleanup(self) -> list[str]:
        """Release everything this guard protects; return what was released."""
        released = self.manager.release_all(finalize=False)
        if self.sweep_records:
            for record in self.manager.list_records():
                if record.owner_pid != os.getpid():
                    continue
                if self.manager.force_release(record.tracker_path):
                    released.append(record.path)
        return released

    def _handle(self, signum: int, frame: Any) -> None:
        self._logger.warning(f"Received signal {signum}, releasing leases")
        self.cleanup()

        previous: Optional[Callable[..., Any]] = self._previous.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        raise SystemExit(128 + signum)

    def __enter__(self) -> LeaseGuard:
        self.install()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            self.cleanup()
        finally:
            self.uninstall()
