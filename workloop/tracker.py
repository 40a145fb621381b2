"""
Dependency store backed by the `bd` issue tracker CLI.

Every call shells out to the tracker with --json output. Any failure to
get a usable answer (binary missing, timeout, non-zero exit, bad JSON)
raises StoreUnavailableError; callers decide what to do with it.
"""

from __future__ import annotations

import json
import subprocess
from typing import TYPE_CHECKING, Any, Optional, Sequence

from workloop.models import WorkUnit, WorkUnitStatus
from workloop.store import (
    Comment,
    DependencyStore,
    StoreContractError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from workloop.config import LoopConfig
    from workloop.logger import LoopLogger


class TrackerCliStore(DependencyStore):
    """
    DependencyStore implementation that drives the tracker CLI.

    Group (work-unit group) commands run with --no-daemon so they see the
    freshest state, matching how the tracker documents group queries.
    """

    def __init__(
        self,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self.config = config
        self._logger = logger
        self._binary = config.tracker.binary
        self._timeout = config.tracker.timeout_seconds

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "tracker"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run(self, args: list[str], stdin: Optional[str] = None) -> str:
        """
        Run a tracker command and return its stdout.

        Raises:
            StoreUnavailableError: If the command cannot run or fails.
        """
        cmd = [self._binary] + args
        try:
            result = subprocess.run(
                cmd,
                cwd=self.config.repo_root,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError:
            self._log("tracker_not_found", {"binary": self._binary}, level="error")
            raise StoreUnavailableError(f"Tracker CLI '{self._binary}' not found")
        except subprocess.TimeoutExpired:
            self._log("tracker_timeout", {"args": args}, level="error")
            raise StoreUnavailableError(
                f"Tracker command timed out after {self._timeout}s: {' '.join(args)}"
            )

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            self._log("tracker_command_failed", {
                "args": args,
                "returncode": result.returncode,
                "stderr": stderr[:200],
            }, level="error")
            raise StoreUnavailableError(
                f"Tracker command failed ({result.returncode}): {' '.join(args)}: {stderr}"
            )

        return result.stdout or ""

    def _run_json(self, args: list[str]) -> Any:
        output = self._run(args + ["--json"]).strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"Tracker returned invalid JSON for {args[0]}: {e}")

    @staticmethod
    def _unit_from_payload(payload: Any) -> WorkUnit:
        if isinstance(payload, list):
            if len(payload) != 1:
                raise StoreUnavailableError(f"Expected one unit, got {len(payload)}")
            payload = payload[0]
        if not isinstance(payload, dict) or not payload.get("id"):
            raise StoreUnavailableError("Tracker returned a unit without an id")

        try:
            status = WorkUnitStatus.parse(str(payload.get("status", "open")))
        except ValueError as e:
            raise StoreContractError(str(e))

        priority = payload.get("priority")
        try:
            priority = 2 if priority is None else int(priority)
        except (TypeError, ValueError):
            raise StoreUnavailableError(f"Unit {payload['id']} has bad priority {priority!r}")

        dependencies = payload.get("dependencies") or []
        return WorkUnit(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            status=status,
            priority=priority,
            description=str(payload.get("description") or payload.get("acceptance_criteria") or ""),
            dependencies=[
                str(dep.get("id") if isinstance(dep, dict) else dep) for dep in dependencies
            ],
        )

    def _units_from_payload(self, payload: Any) -> list[WorkUnit]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StoreUnavailableError("Tracker returned a non-list where a list was expected")
        return [self._unit_from_payload(item) for item in payload]

    # Capability interface

    def ping(self) -> None:
        self._run_json(["info"])

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
        args = ["create", f"--type={kind}", f"--priority={priority}", f"--title={title}"]
        if parent:
            args.append(f"--parent={parent}")
        if labels:
            args.append(f"--labels={','.join(labels)}")

        unit = self._unit_from_payload(self._run_json(args))
        if description:
            self._run(["update", unit.id, "--body-file", "-"], stdin=description)
            unit.description = description

        self._log("unit_created", {"unit_id": unit.id, "kind": kind})
        return unit

    def instantiate_group(self, epic_ref: str) -> str:
        group_ref = self._run(["--no-daemon", "mol", "pour", epic_ref]).strip()
        if not group_ref:
            raise StoreUnavailableError(f"Tracker returned no group for epic {epic_ref}")
        self._log("group_instantiated", {"epic_ref": epic_ref, "group_ref": group_ref})
        return group_ref

    def show(self, unit_id: str) -> WorkUnit:
        return self._unit_from_payload(self._run_json(["show", unit_id]))

    def update_status(self, unit_id: str, status: WorkUnitStatus) -> None:
        self._run(["update", unit_id, f"--status={status.store_name}"])
        self._log("unit_status_updated", {"unit_id": unit_id, "status": status.store_name})

    def list_ready(self, group_ref: str, limit: Optional[int] = None) -> list[WorkUnit]:
        args = ["--no-daemon", "ready", f"--mol={group_ref}"]
        if limit:
            args.append(f"--limit={limit}")
        return self._units_from_payload(self._run_json(args))

    def list_units(
        self,
        parent_ref: str,
        status: Optional[WorkUnitStatus] = None,
    ) -> list[WorkUnit]:
        args = ["list", f"--parent={parent_ref}"]
        if status is not None:
            args.append(f"--status={status.store_name}")
        return self._units_from_payload(self._run_json(args))

    def append_comment(self, unit_id: str, body: str) -> None:
        self._run(["comments", "add", unit_id, body])

    def list_comments(self, unit_id: str) -> list[Comment]:
        payload = self._run_json(["comments", "list", unit_id])
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StoreUnavailableError("Tracker returned a non-list comment log")
        return [
            Comment(
                body=str(item.get("body") or item.get("text") or ""),
                created_at=str(item.get("created_at", "")),
                author=str(item.get("author", "")),
            )
            for item in payload
            if isinstance(item, dict)
        ]

    def query_progress(self, group_ref: str) -> int:
        payload = self._run_json(["--no-daemon", "mol", "progress", group_ref]) or {}
        if not isinstance(payload, dict):
            raise StoreUnavailableError("Tracker returned unusable progress output")
        try:
            percent = int(round(float(payload.get("percent", 0))))
        except (TypeError, ValueError):
            raise StoreUnavailableError(f"Tracker returned bad progress: {payload!r}")
        return max(0, min(100, percent))
