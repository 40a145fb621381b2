"""
Structured JSONL event log for workloop.

Hook invocations are short-lived processes, so the event log is the only
running account of what the controller decided for a session. Entries
are appended to <state_dir>/logs/<stream>-YYYY-MM-DD.jsonl, one object
per line:

    {"timestamp": "...", "level": "warn", "stream": "workloop",
     "component": "circuit_breaker", "event_type": "breaker_tripped",
     "session_id": "s1", "data": {"unit_id": "wl-3", "attempts": 2}}

"component" and "session_id" are lifted out of the event data so that
entries can be filtered on them; the rest of the data stays under "data".
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from workloop.config import LoopConfig, get_config
from workloop.models import now_iso


class LogLevel:
    """Log level constants, lowest first."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ORDER = (DEBUG, INFO, WARN, ERROR)

    @classmethod
    def rank(cls, level: str) -> int:
        """Position of a level in ORDER; ValueError for unknown levels."""
        try:
            return cls.ORDER.index(level)
        except ValueError:
            raise ValueError(f"Unknown log level: {level!r}")


def _level_rank(entry: dict[str, Any]) -> int:
    # Entries with a missing or unknown level only pass an unfiltered read
    level = entry.get("level")
    return LogLevel.ORDER.index(level) if level in LogLevel.ORDER else -1


class LoopLogger:
    """
    Appends controller, breaker, lease and store events to a JSONL stream.

    One logger usually serves every session driven by a process; the
    session an event belongs to comes from the event data or from an
    enclosing session_context() block.
    """

    def __init__(self, stream: str = "workloop", config: Optional[LoopConfig] = None) -> None:
        self.stream = stream
        self._config = config
        self._session_id: Optional[str] = None

    @property
    def config(self) -> LoopConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def path_for(self, date: Optional[str] = None) -> Path:
        """Log file for a UTC date (YYYY-MM-DD), today by default."""
        date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.stream}-{date}.jsonl"

    def stream_files(self) -> list[Path]:
        """Every dated file of this stream, oldest first."""
        logs = self.config.logs_path
        if not logs.is_dir():
            return []
        return sorted(logs.glob(f"{self.stream}-????-??-??.jsonl"))

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append one event.

        Raises:
            ValueError: If level is not one of LogLevel.ORDER.
        """
        LogLevel.rank(level)
        data = dict(data or {})
        entry: dict[str, Any] = {
            "timestamp": now_iso(),
            "level": level,
            "stream": self.stream,
            "event_type": event_type,
        }

        component = data.pop("component", None)
        if component:
            entry["component"] = component
        session_id = data.pop("session_id", None) or self._session_id
        if session_id:
            entry["session_id"] = session_id
        entry["data"] = data

        path = self.path_for()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[LoopLogger]:
        """
        Attribute events without their own session_id to a session.

        Example:
            with logger.session_context("s1") as log:
                log.info("hook_stop", {"bytes": 120})
        """
        previous = self._session_id
        self._session_id = session_id
        try:
            yield self
        finally:
            self._session_id = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        min_level: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read matching entries in the order they were written.

        Without a date every file of the stream is read. With a limit the
        most recent matching entries are returned. Lines that are not JSON
        objects (a torn final write, say) are skipped.
        """
        floor = LogLevel.rank(min_level) if min_level else 0
        paths = [self.path_for(date)] if date else self.stream_files()

        entries = []
        for path in paths:
            if not path.exists():
                continue
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(entry, dict):
                        continue
                    if min_level and _level_rank(entry) < floor:
                        continue
                    if event_type and entry.get("event_type") != event_type:
                        continue
                    if component and entry.get("component") != component:
                        continue
                    if session_id and entry.get("session_id") != session_id:
                        continue
                    entries.append(entry)

        if limit:
            return entries[-limit:]
        return entries


def get_logger(stream: str = "workloop", config: Optional[LoopConfig] = None) -> LoopLogger:
    """Create a logger for a stream."""
    return LoopLogger(stream, config)
