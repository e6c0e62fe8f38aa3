"""
File system helpers for the orchestration state file.

This module provides:
- Atomic writes (temp file in the target directory, then rename)
- Directory creation
- Reads that report missing files as FileSystemError
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """Create a directory and its parents if missing; return it as a Path."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    The temp file lives beside the target so os.replace stays on one
    filesystem; a crash mid-write leaves the previous content intact.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def file_exists(path: str | Path) -> bool:
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing, not a file, or undecodable.
    """
    path = Path(path)
    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")
    try:
        return path.read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def remove_file(path: str | Path) -> bool:
    """Remove a file; returns False when it did not exist."""
    path = Path(path)
    if not path.exists():
        return False
    try:
        path.unlink()
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")
