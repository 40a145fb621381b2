"""
Version control capability for isolated workspaces.

The lease manager talks to version control through the VersionControl
interface. GitVersionControl implements it with git worktrees, `git push`
and the `gh` CLI for pull requests.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from workloop.config import LoopConfig


class VersionControlError(Exception):
    """Raised when a version control command fails."""

    def __init__(self, message: str, stderr: str = "", returncode: int = -1) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class VersionControl(ABC):
    """Capabilities the controller needs from version control."""

    @abstractmethod
    def branch_exists(self, branch: str) -> bool:
        """Whether a local branch already exists."""

    @abstractmethod
    def create_isolated_workspace(self, path: str, branch: str, new_branch: bool) -> None:
        """Create a working copy at path on branch (creating the branch if new_branch)."""

    @abstractmethod
    def remove_isolated_workspace(self, path: str) -> None:
        """Remove the working copy at path, discarding local changes."""

    @abstractmethod
    def push(self, branch: str) -> None:
        """Publish branch to the configured remote."""

    @abstractmethod
    def request_external_review(self, branch: str, title: str, body: str) -> str:
        """Open a review request (pull request) for branch; return its id or URL."""

    @abstractmethod
    def diff(self, workdir: Optional[str] = None, base: str = "HEAD~1") -> str:
        """Changes between base and the working tree, stat summary first."""


class GitVersionControl(VersionControl):
    """VersionControl backed by the git and gh CLIs."""

    def __init__(self, config: LoopConfig) -> None:
        self.config = config
        self._timeout = config.git.timeout_seconds
        self._logger = logging.getLogger(__name__)

    def _run(
        self,
        cmd: list[str],
        cwd: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd or self.config.repo_root,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError:
            raise VersionControlError(f"{cmd[0]} not found")
        except subprocess.TimeoutExpired:
            raise VersionControlError(f"Timed out after {self._timeout}s: {' '.join(cmd)}")

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise VersionControlError(
                f"Command failed ({result.returncode}): {' '.join(cmd)}: {stderr}",
                stderr=stderr,
                returncode=result.returncode,
            )
        return result

    def branch_exists(self, branch: str) -> bool:
        result = self._run(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return result.returncode == 0

    def create_isolated_workspace(self, path: str, branch: str, new_branch: bool) -> None:
        if new_branch:
            cmd = ["git", "worktree", "add", "-b", branch, path, self.config.git.base_branch]
        else:
            cmd = ["git", "worktree", "add", path, branch]
        self._run(cmd)
        self._logger.info(f"Created worktree {path} on {branch}")

    def remove_isolated_workspace(self, path: str) -> None:
        self._run(["git", "worktree", "remove", "--force", path])
        # Drop administrative entries for worktrees deleted behind git's back
        self._run(["git", "worktree", "prune"], check=False)
        self._logger.info(f"Removed worktree {path}")

    def push(self, branch: str) -> None:
        self._run(["git", "push", "-u", self.config.git.remote, branch])

    def request_external_review(self, branch: str, title: str, body: str) -> str:
        result = self._run([
            self.config.git.pr_binary, "pr", "create",
            "--title", title,
            "--body", body,
            "--head", branch,
            "--base", self.config.git.base_branch,
        ])
        return result.stdout.strip()

    def diff(self, workdir: Optional[str] = None, base: str = "HEAD~1") -> str:
        cwd = workdir or self.config.repo_root
        if not Path(cwd).is_dir():
            raise VersionControlError(f"Workspace not found: {cwd}")
        stat = self._run(["git", "diff", base, "--stat"], cwd=cwd).stdout
        patch = self._run(["git", "diff", base], cwd=cwd).stdout
        return f"{stat}---\n{patch}"
