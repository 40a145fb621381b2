"""
Configuration loading and validation for workloop.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Default values for every field (an absent file is not an error)
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class TrackerConfig:
    """Dependency store (issue tracker CLI) configuration."""
    binary: str = "bd"                         # Tracker CLI binary
    timeout_seconds: int = 60                  # Per-command timeout


@dataclass
class GitConfig:
    """Git configuration for isolated workspaces."""
    base_branch: str = "main"                  # Branch PRs target
    branch_pattern: str = "work/{group}"       # Lease branch naming pattern
    worktrees_root: str = ".workloop/worktrees"  # Where lease workspaces live
    remote: str = "origin"                     # Remote to push lease branches to
    pr_binary: str = "gh"                      # CLI used to request external review
    timeout_seconds: int = 120                 # Per-command timeout


@dataclass
class ReviewerConfig:
    """Independent reviewer used by the validation gate."""
    binary: str = "claude"                     # Reviewer CLI binary
    args: list[str] = field(default_factory=lambda: ["-p"])
    timeout_seconds: int = 300


@dataclass
class LeaseConfig:
    """Lease tracking configuration."""
    stale_timeout_minutes: int = 240           # Records older than this are swept


@dataclass
class LoopConfig:
    """
    Main configuration for workloop.

    This is the top-level config loaded from config.yaml.
    """
    repo_root: str = "."
    state_dir: str = ".workloop"

    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    git: GitConfig = field(default_factory=GitConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    leases: LeaseConfig = field(default_factory=LeaseConfig)

    def __post_init__(self) -> None:
        """Convert repo_root to an absolute path."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the workloop state directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def sessions_path(self) -> Path:
        return self.state_path / "sessions"

    @property
    def leases_path(self) -> Path:
        """Directory holding durable lease tracker records."""
        return self.state_path / "leases"

    @property
    def logs_path(self) -> Path:
        return self.state_path / "logs"

    @property
    def worktrees_path(self) -> Path:
        root = Path(self.git.worktrees_root)
        if root.is_absolute():
            return root
        return (Path(self.repo_root) / root).resolve()


# Module-level cache for the loaded configuration
_config_cache: Optional[LoopConfig] = None

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax. Returns non-string scalars unchanged.
    """
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return _ENV_PATTERN.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _parse_tracker_config(data: dict[str, Any]) -> TrackerConfig:
    return TrackerConfig(
        binary=data.get("binary", "bd"),
        timeout_seconds=int(data.get("timeout_seconds", 60)),
    )


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    pattern = data.get("branch_pattern", "work/{group}")
    if "{group}" not in pattern:
        raise ConfigError("git.branch_pattern must contain '{group}'")
    return GitConfig(
        base_branch=data.get("base_branch", "main"),
        branch_pattern=pattern,
        worktrees_root=data.get("worktrees_root", ".workloop/worktrees"),
        remote=data.get("remote", "origin"),
        pr_binary=data.get("pr_binary", "gh"),
        timeout_seconds=int(data.get("timeout_seconds", 120)),
    )


def _parse_reviewer_config(data: dict[str, Any]) -> ReviewerConfig:
    args = data.get("args", ["-p"])
    if not isinstance(args, list):
        raise ConfigError("reviewer.args must be a list")
    return ReviewerConfig(
        binary=data.get("binary", "claude"),
        args=[str(arg) for arg in args],
        timeout_seconds=int(data.get("timeout_seconds", 300)),
    )


def _parse_lease_config(data: dict[str, Any]) -> LeaseConfig:
    timeout = int(data.get("stale_timeout_minutes", 240))
    if timeout <= 0:
        raise ConfigError("leases.stale_timeout_minutes must be positive")
    return LeaseConfig(stale_timeout_minutes=timeout)


def load_config(config_path: Optional[str] = None) -> LoopConfig:
    """
    Load configuration from config.yaml.

    Unlike the sections, the file itself is optional: when the default
    path does not exist, defaults are returned. An explicitly named file
    that does not exist is an error.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    explicit = config_path is not None
    path = Path(config_path or "config.yaml")

    if not path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found: {config_path}")
        return LoopConfig()

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        return LoopConfig()
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    try:
        return LoopConfig(
            repo_root=data.get("repo_root", "."),
            state_dir=data.get("state_dir", ".workloop"),
            tracker=_parse_tracker_config(_section(data, "tracker")),
            git=_parse_git_config(_section(data, "git")),
            reviewer=_parse_reviewer_config(_section(data, "reviewer")),
            leases=_parse_lease_config(_section(data, "leases")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> LoopConfig:
    """Get the cached configuration, loading it if necessary."""
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
