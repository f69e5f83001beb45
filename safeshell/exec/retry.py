"""Retry blocked scripts after the user picks a permission."""

import re
import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from safeshell.config.loader import load_session_config
from safeshell.exec.approvals import PermissionStore, StoredPermissions, get_session_id
from safeshell.exec.errors import SafeShellError
from safeshell.exec.executor import execute_script
from safeshell.exec.pending import delete_pending, read_pending
from safeshell.exec.scripts import load_script
from safeshell.exec.types import PendingCommand, PendingPathRequest, PermissionScope
from safeshell.exec.violations import escalate_result

# retry --choice values
COMMAND_CHOICES: dict[int, PermissionScope | None] = {
    1: "once",
    2: "always",
    3: "session",
    4: None,  # deny
}

PATH_CHOICE_RE = re.compile(r"^(r|w|rw)([123])(d?)$")
PATH_SCOPES: dict[str, PermissionScope] = {"1": "once", "2": "session", "3": "always"}
DENY_CHOICES = ("deny", "4")


@dataclass
class PathChoice:
    """A parsed retry-path choice such as rw2d."""
    operation: Literal["r", "w", "rw"]
    scope: PermissionScope
    is_directory: bool

    def grant_for(self, path: str) -> StoredPermissions:
        """Read/write grant for the path (or its parent directory)."""
        target = path
        if self.is_directory:
            target = "/".join(path.split("/")[:-1]) or "/"
        return StoredPermissions(
            read=[target] if "r" in self.operation else [],
            write=[target] if "w" in self.operation else [],
        )


def parse_path_choice(choice: str) -> PathChoice | None:
    """
    Parse a retry-path choice. Returns None for a denial.

    Raises ValueError when the choice is not r|w|rw, then 1-3, then an
    optional d.
    """
    if choice in DENY_CHOICES:
        return None
    match = PATH_CHOICE_RE.match(choice)
    if not match:
        raise ValueError(
            f"Invalid choice '{choice}'. Must be r1, w1, rw1, r2, w2, rw2, r3, w3, rw3 "
            "(or add 'd' for directory), or 4"
        )
    operation, scope, directory = match.groups()
    return PathChoice(operation=operation, scope=PATH_SCOPES[scope], is_directory=directory == "d")


async def _run_cached(script_hash: str, config, cwd: str, timeout_ms: int | None) -> int:
    code = load_script(script_hash)
    if code is None:
        print(f"Error: Script file not found for hash: {script_hash}", file=sys.stderr)
        return 1
    timeout = timeout_ms / 1000 if timeout_ms else None
    try:
        result = await execute_script(code, config, cwd=cwd, timeout=timeout, passthrough=True)
    except SafeShellError as e:
        print(f"Execution failed: {e}", file=sys.stderr)
        return 1
    if escalate_result(result, cwd, timeout_ms):
        return 1
    return result.exit_code


async def retry_command(pending_id: str, choice: int) -> int:
    """
    Resolve a blocked command with choice 1-4 and re-run its script.

    Returns the process exit code: 0 on deny, the script's exit code after
    a retry, 1 when the request or script cannot be found.
    """
    if choice not in COMMAND_CHOICES:
        print("Error: --choice must be 1-4", file=sys.stderr)
        return 1

    scope = COMMAND_CHOICES[choice]
    if scope is None:
        print("[safesh] Command denied by user.", file=sys.stderr)
        delete_pending(pending_id, "command")
        return 0

    pending = read_pending(pending_id, "command")
    if not isinstance(pending, PendingCommand):
        print(f"Error: Pending command not found for id: {pending_id}", file=sys.stderr)
        return 1

    config, project_dir = load_session_config(pending.cwd)
    store = PermissionStore(project_dir, get_session_id())
    config = store.grant(scope, config, StoredPermissions(allowed_commands=pending.commands))
    logger.debug(f"Retrying {pending.script_hash} with {scope} grant for {pending.commands}")

    try:
        return await _run_cached(pending.script_hash, config, pending.cwd, pending.timeout)
    finally:
        delete_pending(pending_id, "command")


async def retry_path(pending_id: str, choice: str) -> int:
    """
    Resolve a blocked path with a choice like r1, w3 or rw2d and re-run.

    Same exit codes as retry_command; an invalid choice also returns 1.
    """
    try:
        parsed = parse_path_choice(choice)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if parsed is None:
        print("[safesh] Path access denied by user.", file=sys.stderr)
        delete_pending(pending_id, "path")
        return 0

    pending = read_pending(pending_id, "path")
    if not isinstance(pending, PendingPathRequest):
        print(f"Error: Pending path request not found for id: {pending_id}", file=sys.stderr)
        return 1

    grant = parsed.grant_for(pending.path)
    if parsed.is_directory:
        print(f"[safesh] Granting permission to directory: {(grant.read or grant.write)[0]}/", file=sys.stderr)

    config, project_dir = load_session_config(pending.cwd)
    store = PermissionStore(project_dir, get_session_id())
    config = store.grant(parsed.scope, config, grant)

    try:
        return await _run_cached(pending.script_hash, config, pending.cwd, None)
    finally:
        delete_pending(pending_id, "path")
