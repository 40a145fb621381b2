"""Utility modules for workloop."""

from workloop.utils.fs import (
    FileSystemError,
    atomic_write,
    discard,
    ensure_dir,
    list_files,
    read_text,
    write_exclusive,
)

__all__ = [
    "FileSystemError",
    "atomic_write",
    "discard",
    "ensure_dir",
    "list_files",
    "read_text",
    "write_exclusive",
]
