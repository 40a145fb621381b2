"""
File helpers for workloop's on-disk state.

Two kinds of files live under the state directory, and they need
different write guarantees:

- session files are rewritten on every hook call, so writes are atomic
  (temp file in the same directory, then os.replace) and a reader sees
  either the old state or the new one;
- lease tracker records must never be clobbered, so they are created
  with O_CREAT | O_EXCL and flushed to disk before the workspace exists.

Every failure other than "already exists" is raised as FileSystemError.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional


class FileSystemError(Exception):
    """Raised when a state file cannot be read, written or removed."""
    pass


def ensure_dir(path: str | Path) -> Path:
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {path}: {e}")
    return path


def atomic_write(path: str | Path, content: str) -> None:
    """Replace a file's content in one step."""
    path = Path(path)
    ensure_dir(path.parent)

    fd, temp_name = -1, ""
    try:
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = -1
            f.write(content)
        os.replace(temp_name, path)
    except OSError as e:
        if fd >= 0:
            os.close(fd)
        if temp_name and os.path.exists(temp_name):
            os.unlink(temp_name)
        raise FileSystemError(f"Cannot write {path}: {e}")


def write_exclusive(path: str | Path, content: str) -> None:
    """
    Create a file that must not exist yet and sync it to disk.

    Raises:
        FileExistsError: If the path already exists; nothing is written.
        FileSystemError: On any other failure; a partial file is removed.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        raise
    except OSError as e:
        raise FileSystemError(f"Cannot create {path}: {e}")

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        path.unlink(missing_ok=True)
        raise FileSystemError(f"Cannot write {path}: {e}")


def read_text(path: str | Path) -> Optional[str]:
    """
    Content of a regular file, or None when there is no such file.

    Raises:
        FileSystemError: If the file exists but cannot be read as UTF-8.
    """
    path = Path(path)
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FileSystemError(f"Cannot read {path}: {e}")


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """Regular files in directory matching pattern, by name; [] if it is missing."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


def discard(path: str | Path) -> bool:
    """
    Remove a file or a whole directory tree.

    Returns:
        False if nothing was there, True if it was removed.
    """
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FileSystemError(f"Cannot remove {path}: {e}")
    return True
