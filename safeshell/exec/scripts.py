"""Hash-addressed script cache and import policy."""

import fnmatch
import re
from pathlib import Path

from loguru import logger

from safeshell.config.schema import ImportPolicy
from safeshell.exec.errors import ImportBlockedError
from safeshell.utils.helpers import get_scripts_dir, hash_code

SCRIPT_SUFFIX = ".ts"

# import ... from "x" and import("x")
IMPORT_RE = re.compile(r"""(?:import\s+.*?\s+from\s+|import\()\s*["']([^"']+)["']""")


def get_script_path(script_hash: str) -> Path:
    return get_scripts_dir() / f"{script_hash}{SCRIPT_SUFFIX}"


def cache_script(code: str) -> tuple[str, Path]:
    """Write code under its hash (once) and return (hash, path)."""
    script_hash = hash_code(code)
    path = get_script_path(script_hash)
    if not path.exists():
        path.write_text(code, encoding="utf-8")
        logger.debug(f"Cached script {script_hash} at {path}")
    return script_hash, path


def find_script(script_hash: str) -> Path | None:
    """Cached script for a hash, or None."""
    path = get_script_path(script_hash)
    return path if path.is_file() else None


def load_script(script_hash: str) -> str | None:
    path = find_script(script_hash)
    if path is None:
        return None
    return path.read_text(encoding="utf-8")


def _matches_any(specifier: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatchcase(specifier, p) for p in patterns)


def is_import_allowed(specifier: str, policy: ImportPolicy) -> bool:
    """Blocked specifiers pass only when also trusted or allowed."""
    if _matches_any(specifier, policy.blocked):
        return _matches_any(specifier, policy.trusted) or _matches_any(specifier, policy.allowed)
    return True


def validate_imports(code: str, policy: ImportPolicy) -> None:
    """Raise ImportBlockedError for the first import the policy blocks."""
    for match in IMPORT_RE.finditer(code):
        specifier = match.group(1)
        if not is_import_allowed(specifier, policy):
            raise ImportBlockedError(specifier, policy.blocked, [*policy.trusted, *policy.allowed])
