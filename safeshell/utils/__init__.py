"""Utility helpers."""

from safeshell.utils.helpers import (
    ensure_dir,
    safe_filename,
    read_json_file,
    write_json_file,
    get_temp_root,
    find_project_root,
)

__all__ = [
    "ensure_dir",
    "safe_filename",
    "read_json_file",
    "write_json_file",
    "get_temp_root",
    "find_project_root",
]
