"""Filesystem and path-persistence helpers."""

import hashlib
import json
import os
import re
import secrets
import time
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_TMP_ROOT = "/tmp/safesh"

# Markers that identify a project root, most reliable first
PROJECT_MARKERS = (".claude", ".git", ".config/safesh")

# Env overrides
ENV_TMP_DIR = "SAFESH_TMP_DIR"
ENV_PROJECT_DIR = "CLAUDE_PROJECT_DIR"
ENV_SESSION_ID = "CLAUDE_SESSION_ID"

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing, return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """Replace characters that are unsafe in file names."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name).strip()


def read_json_file(path: Path) -> Any:
    """
    Read and parse a JSON file.

    Raises FileNotFoundError if the file is missing and json.JSONDecodeError
    if the content is not valid JSON.
    """
    return json.loads(path.read_text(encoding="utf-8"))


def write_json_file(path: Path, data: Any) -> None:
    """Write JSON with 2-space indentation using an atomic rename."""
    ensure_dir(path.parent)
    tmp_path = path.with_name(f"{path.name}.{secrets.token_hex(4)}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps(data, indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    except Exception:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def get_temp_root() -> Path:
    """Root directory for pending files, session files, scripts and error logs."""
    return ensure_dir(Path(os.environ.get(ENV_TMP_DIR) or DEFAULT_TMP_ROOT))


def get_scripts_dir() -> Path:
    """Directory holding cached (transpiled) scripts."""
    return ensure_dir(get_temp_root() / "scripts")


def get_errors_dir() -> Path:
    """Directory holding error logs."""
    return ensure_dir(get_temp_root() / "errors")


def get_error_log_path() -> Path:
    """A fresh error log path."""
    return get_errors_dir() / f"{int(time.time() * 1000)}-{os.getpid()}.log"


def hash_code(code: str, length: int = 16) -> str:
    """URL-safe, truncated SHA-256 of a script's content."""
    digest = hashlib.sha256(code.encode("utf-8")).hexdigest()
    return digest[:length]


def find_project_root(cwd: str | Path, create_config: bool = False, stop_at_home: bool = True) -> Path:
    """
    Find the project root by walking up from cwd.

    Priority:
    1. CLAUDE_PROJECT_DIR environment variable
    2. Nearest directory containing a project marker
    3. cwd itself (optionally seeding .config/safesh/config.local.json)
    """
    env_dir = os.environ.get(ENV_PROJECT_DIR)
    if env_dir:
        return Path(env_dir)

    start = Path(cwd).resolve()
    home = Path.home()

    for directory in (start, *start.parents):
        if stop_at_home and directory == home:
            break
        for marker in PROJECT_MARKERS:
            if (directory / marker).exists():
                return directory

    if create_config:
        try:
            config_dir = ensure_dir(start / ".config" / "safesh")
            local = config_dir / "config.local.json"
            if not local.exists():
                local.write_text("{}\n", encoding="utf-8")
        except OSError as e:
            logger.debug(f"Could not seed project config in {start}: {e}")

    return start
