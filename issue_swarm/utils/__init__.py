"""Utility modules for Issue Swarm."""

from issue_swarm.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    read_file,
    remove_file,
    safe_write,
)
from issue_swarm.utils.json_extract import extract_json

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "extract_json",
    "file_exists",
    "read_file",
    "remove_file",
    "safe_write",
]
