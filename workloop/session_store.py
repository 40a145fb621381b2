"""
Session state persistence for workloop.

This module handles:
- Saving and loading session state to <state_dir>/sessions/<session_id>.json
- Atomic writes to prevent corruption
- Graceful handling of missing or corrupted state files

Nothing is cached: every read goes to disk, so a mutation made by one hook
invocation is visible to the next even when it runs in another process.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from workloop.models import WorkflowSession, model_to_json
from workloop.utils.fs import FileSystemError, atomic_write, discard, list_files, read_text

if TYPE_CHECKING:
    from workloop.config import LoopConfig
    from workloop.logger import LoopLogger


class SessionStoreError(Exception):
    """Raised when session store operations fail."""
    pass


class SessionNotFoundError(SessionStoreError):
    """Raised when an operation needs a session that does not exist."""
    pass


_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")


class SessionStore:
    """
    Persistent keyed storage of WorkflowSession records.

    The store is passed explicitly to whoever needs it; there is no
    process-wide registry of sessions.
    """

    def __init__(
        self,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None
    ) -> None:
        """
        Initialize the session store.

        Args:
            config: LoopConfig with paths configured.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._logger = logger
        self._sessions_dir = config.sessions_path

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "session_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _get_session_path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or ""):
            raise SessionStoreError(f"Invalid session id: {session_id!r}")
        return self._sessions_dir / f"{session_id}.json"

    def _write(self, session: WorkflowSession) -> None:
        path = self._get_session_path(session.session_id)
        try:
            atomic_write(path, model_to_json(session.to_dict(), indent=2))
        except FileSystemError as e:
            self._log("session_save_error", {
                "session_id": session.session_id,
                "error": str(e),
            }, level="error")
            raise SessionStoreError(f"Failed to save session {session.session_id}: {e}")

    # Operations

    def exists(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def get(self, session_id: str) -> Optional[WorkflowSession]:
        """
        Load a session from disk.

        Returns:
            The session if its file exists and is valid, None otherwise.
        """
        path = self._get_session_path(session_id)

        try:
            content = read_text(path)
            if content is None:
                return None
            return WorkflowSession.from_dict(json.loads(content))

        except json.JSONDecodeError as e:
            self._log("session_corrupted", {
                "session_id": session_id,
                "error": str(e),
                "path": str(path),
            }, level="error")
            return None

        except (KeyError, ValueError, TypeError) as e:
            self._log("session_invalid", {
                "session_id": session_id,
                "error": str(e),
                "path": str(path),
            }, level="error")
            return None

        except FileSystemError as e:
            self._log("session_read_error", {
                "session_id": session_id,
                "error": str(e),
            }, level="error")
            return None

    def create(self, session: WorkflowSession) -> WorkflowSession:
        """
        Persist a new session.

        Raises:
            SessionStoreError: If a session with the same id already exists.
        """
        if self.get(session.session_id) is not None:
            raise SessionStoreError(f"Session {session.session_id} already exists")
        self._write(session)
        self._log("session_created", {
            "session_id": session.session_id,
            "mode": session.mode.name,
        })
        return session

    def mutate(
        self,
        session_id: str,
        fn: Callable[[WorkflowSession], Any],
    ) -> WorkflowSession:
        """
        Apply fn to the stored session and persist the result.

        fn receives the freshly loaded session and changes it in place. If
        fn raises, nothing is written.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        fn(session)
        session.touch()
        self._write(session)
        self._log("session_saved", {
            "session_id": session_id,
            "mode": session.mode.name,
            "iteration": session.iteration_count,
        }, level="debug")
        return session

    def destroy(self, session_id: str) -> None:
        """
        Delete a session's state.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        path = self._get_session_path(session_id)
        try:
            removed = discard(path)
        except FileSystemError as e:
            raise SessionStoreError(f"Failed to delete session {session_id}: {e}")
        if not removed:
            raise SessionNotFoundError(f"Session {session_id} not found")
        self._log("session_destroyed", {"session_id": session_id})

    def list_sessions(self) -> list[WorkflowSession]:
        """All readable sessions, oldest first."""
        sessions = []
        for path in list_files(self._sessions_dir, "*.json"):
            session = self.get(path.stem)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)
