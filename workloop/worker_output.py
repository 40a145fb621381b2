"""
Parsing of what the worker sends back.

Completion signals are read only from the worker's final output and only
in one form: a ``<promise>TOKEN</promise>`` tag standing on its own line.
A tag buried in prose, an unknown token, or two different tokens in the
same output all count as no signal.

Tool-use events give diagnostic evidence (files edited, commits made).
They never gate decisions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from workloop.models import CompletionSignal


_TAG_LINE_RE = re.compile(r"^[ \t]*<promise>[ \t]*([A-Za-z_]+)[ \t]*</promise>[ \t]*$", re.MULTILINE)

EDIT_TOOLS = frozenset({"edit", "write", "multiedit", "notebookedit", "morph-mcp_edit_file"})
SHELL_TOOLS = frozenset({"bash", "shell"})

_PATH_KEYS = ("filePath", "file_path", "path", "notebook_path")
_COMMIT_RE = re.compile(r"\bgit\b[^\n;&|]*?\bcommit\b")


def render_signal(signal: CompletionSignal) -> str:
    """The exact text a worker must emit for a signal."""
    return f"<promise>{signal.name}</promise>"


def parse_completion_signal(output: Optional[str]) -> Optional[CompletionSignal]:
    """
    Extract the completion signal from worker output.

    Returns:
        The signal, or None when there is none or it is ambiguous.
    """
    if not output:
        return None

    found: set[CompletionSignal] = set()
    for match in _TAG_LINE_RE.finditer(output):
        try:
            found.add(CompletionSignal[match.group(1).upper()])
        except KeyError:
            return None

    if len(found) != 1:
        return None
    return found.pop()


@dataclass(frozen=True)
class ToolEvidence:
    """What a single tool invocation tells us about the worker's progress."""
    modified_path: Optional[str] = None
    commit_made: bool = False

    @property
    def is_empty(self) -> bool:
        return self.modified_path is None and not self.commit_made


def inspect_tool_use(tool: str, args: Optional[Mapping[str, Any]]) -> ToolEvidence:
    """Extract edit and commit evidence from one tool invocation."""
    name = (tool or "").strip().lower()
    args = args or {}

    if name in EDIT_TOOLS:
        for key in _PATH_KEYS:
            value = args.get(key)
            if isinstance(value, str) and value:
                return ToolEvidence(modified_path=value)
        return ToolEvidence()

    if name in SHELL_TOOLS:
        command = args.get("command")
        if isinstance(command, str) and _COMMIT_RE.search(command):
            return ToolEvidence(commit_made=True)

    return ToolEvidence()
