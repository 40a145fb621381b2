"""Common utilities and global state for the CLI.

Contains project directory management, config loading and the factory that
wires a controller to its real collaborators.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from workloop.config import LoopConfig
    from workloop.controller import WorkflowController
    from workloop.leases import LeaseManager
    from workloop.logger import LoopLogger

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Explicit config file (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def set_config_path(path: Optional[str]) -> None:
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def load_config_or_exit() -> "LoopConfig":
    """
    Load config.yaml (or defaults when absent).

    An invalid config file is reported and ends the command.
    """
    from workloop.config import ConfigError, load_config

    project_dir = get_project_dir()
    if project_dir:
        os.chdir(project_dir)

    try:
        return load_config(_config_path)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2)


# ============================================================================
# Wiring
# ============================================================================


def build_logger(config: "LoopConfig", stream: str = "workloop") -> "LoopLogger":
    from workloop.logger import get_logger

    return get_logger(stream, config)


def build_lease_manager(
    config: "LoopConfig",
    logger: Optional["LoopLogger"] = None,
    owner_pid: Optional[int] = None,
) -> "LeaseManager":
    from workloop.leases import LeaseManager
    from workloop.vcs import GitVersionControl

    return LeaseManager(config, GitVersionControl(config), logger, owner_pid=owner_pid)


def build_controller(
    config: "LoopConfig",
    logger: Optional["LoopLogger"] = None,
) -> "WorkflowController":
    """Controller backed by the tracker CLI, git and the configured reviewer."""
    from workloop.controller import WorkflowController
    from workloop.session_store import SessionStore
    from workloop.tracker import TrackerCliStore
    from workloop.validation import CommandReviewer

    logger = logger or build_logger(config)
    return WorkflowController(
        sessions=SessionStore(config, logger),
        store=TrackerCliStore(config, logger),
        leases=build_lease_manager(config, logger),
        reviewer=CommandReviewer(config),
        logger=logger,
        repo_root=config.repo_root,
    )


@contextmanager
def lease_guard(controller: "WorkflowController") -> Iterator[None]:
    """
    Release the controller's leases if a termination signal arrives.

    The handlers are removed when the block ends, without releasing
    anything: by then the leases belong to stored sessions.
    """
    from workloop.leases import LeaseGuard

    if controller.leases is None:
        yield
        return

    guard = LeaseGuard(controller.leases)
    guard.install()
    try:
        yield
    finally:
        guard.uninstall()
