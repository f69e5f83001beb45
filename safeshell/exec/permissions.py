"""Command and path permission checks."""

import asyncio
import os
from typing import Callable

from safeshell.config.schema import SafeShellConfig, expand_path, expand_paths
from safeshell.exec.errors import (
    CommandNotAllowedError,
    CommandNotFoundError,
    PathViolationError,
    SymlinkViolationError,
)
from safeshell.exec.types import (
    MultiCommandResult,
    PathCheckResult,
    PathOperation,
    PermissionAllowed,
    PermissionNotAllowed,
    PermissionNotFound,
    PermissionResult,
)

# Scratch locations every script may use
SCRATCH_READ = ["/tmp"]
SCRATCH_WRITE = ["/tmp"]


def is_within(path: str, parent: str) -> bool:
    """True if path equals parent or sits below it on a segment boundary."""
    if path == parent:
        return True
    return path.startswith(parent.rstrip("/") + "/")


def resolve_against(path: str, cwd: str) -> str:
    """Absolute, normalized path; relative paths are taken from cwd."""
    return os.path.normpath(os.path.join(cwd, path))


def allowed_commands(config: SafeShellConfig) -> set[str]:
    """Commands permitted by name or exact path."""
    return set(config.permissions.run) | set(config.external)


def _is_file(path: str) -> bool:
    return os.path.isfile(path)


# ── Command resolution strategies ───────────────────────────────────
#
# Each strategy returns a result when it can decide, or None to defer to the
# next one. They are evaluated in order by check_command.

Strategy = Callable[[str, SafeShellConfig, str, set[str]], PermissionResult | None]


def _bare_name(command: str, config: SafeShellConfig, cwd: str, allow: set[str]) -> PermissionResult | None:
    if "/" in command:
        return None
    if command in allow:
        return PermissionAllowed(resolved_path=command)
    return PermissionNotAllowed(command=command)


def _allowed_basename(command: str, config: SafeShellConfig, cwd: str, allow: set[str]) -> PermissionResult | None:
    if os.path.basename(command) not in allow:
        return None
    if os.path.isabs(command):
        return PermissionAllowed(resolved_path=command)
    return PermissionAllowed(resolved_path=resolve_against(command, cwd))


def _absolute_path(command: str, config: SafeShellConfig, cwd: str, allow: set[str]) -> PermissionResult | None:
    if not os.path.isabs(command):
        return None
    if command in allow:
        return PermissionAllowed(resolved_path=command)
    return PermissionNotAllowed(command=command)


def _relative_to_cwd(command: str, config: SafeShellConfig, cwd: str, allow: set[str]) -> PermissionResult | None:
    resolved = resolve_against(command, cwd)
    if not _is_file(resolved):
        return None
    project = config.project_dir and os.path.normpath(config.project_dir)
    if config.allow_project_commands and project and is_within(resolved, project):
        return PermissionAllowed(resolved_path=resolved)
    if resolved in allow:
        return PermissionAllowed(resolved_path=resolved)
    return PermissionNotAllowed(command=resolved)


def _relative_to_project(command: str, config: SafeShellConfig, cwd: str, allow: set[str]) -> PermissionResult | None:
    if not config.project_dir:
        return None
    resolved = resolve_against(command, config.project_dir)
    if not _is_file(resolved):
        return None
    if config.allow_project_commands:
        return PermissionAllowed(resolved_path=resolved)
    if resolved in allow:
        return PermissionAllowed(resolved_path=resolved)
    return PermissionNotAllowed(command=resolved)


COMMAND_STRATEGIES: list[Strategy] = [
    _bare_name,
    _allowed_basename,
    _absolute_path,
    _relative_to_cwd,
    _relative_to_project,
]


def check_command(command: str, config: SafeShellConfig, cwd: str) -> PermissionResult:
    """
    Decide whether a command may be spawned.

    Bare names must be in the allow-set. Paths are allowed by basename, by
    exact absolute path, or by resolving relative to cwd and then the project
    directory. A relative command that exists nowhere is NotFound.
    """
    allow = allowed_commands(config)
    for strategy in COMMAND_STRATEGIES:
        result = strategy(command, config, cwd, allow)
        if result is not None:
            return result
    return PermissionNotFound(command=command)


def require_command(command: str, config: SafeShellConfig, cwd: str) -> str:
    """Resolved path of an allowed command. Raises when it may not run."""
    result = check_command(command, config, cwd)
    if isinstance(result, PermissionAllowed):
        return result.resolved_path
    if isinstance(result, PermissionNotFound):
        raise CommandNotFoundError(result.command)
    raise CommandNotAllowedError(result.command)


async def check_commands(commands: dict[str, str], config: SafeShellConfig, cwd: str) -> MultiCommandResult:
    """Check several commands concurrently, reporting every failure."""
    names = list(commands)
    checked = await asyncio.gather(
        *(asyncio.to_thread(check_command, commands[name], config, cwd) for name in names)
    )

    result = MultiCommandResult(all_allowed=True)
    for name, outcome in zip(names, checked):
        result.results[name] = outcome
        if isinstance(outcome, PermissionNotFound):
            result.not_found.append(outcome.command)
        elif isinstance(outcome, PermissionNotAllowed):
            result.not_allowed.append(outcome.command)
    result.all_allowed = not result.not_allowed and not result.not_found
    return result


# ── Path checks ─────────────────────────────────────────────────────


def check_path(path: str, operation: PathOperation, config: SafeShellConfig, cwd: str) -> PathCheckResult:
    """Decide whether a path may be read or written."""
    resolved = resolve_against(expand_path(path, cwd, config.workspace), cwd)

    if config.project_dir:
        project = os.path.normpath(config.project_dir)
        if is_within(resolved, project):
            if operation == "write" and config.block_project_dir_write:
                return PathCheckResult(False, resolved, "Write access to project directory is blocked")
            return PathCheckResult(True, resolved)

    perms = config.permissions
    if not perms.read and not perms.write:
        return PathCheckResult(False, resolved, "No permissions configured")

    configured = perms.read if operation == "read" else perms.write
    if not configured:
        return PathCheckResult(False, resolved, f"No {operation} permissions configured")

    for entry in configured:
        allowed = resolve_against(expand_path(entry, cwd, config.workspace), cwd)
        if is_within(resolved, allowed):
            return PathCheckResult(True, resolved)

    return PathCheckResult(False, resolved, f"Path not within allowed {operation} paths")


def effective_permissions(config: SafeShellConfig, cwd: str) -> tuple[list[str], list[str]]:
    """Expanded (read, write) directories including the scratch defaults."""
    read = expand_paths(config.permissions.read, cwd, config.workspace)
    write = expand_paths(config.permissions.write, cwd, config.workspace)
    read = list(dict.fromkeys([*read, cwd, *SCRATCH_READ]))
    write = list(dict.fromkeys([*write, *SCRATCH_WRITE]))
    if config.project_dir:
        read.append(config.project_dir)
        if not config.block_project_dir_write:
            write.append(config.project_dir)
    return read, write


def validate_path(path: str, config: SafeShellConfig, cwd: str, operation: PathOperation = "read") -> str:
    """
    Resolve symlinks and confirm the real path is permitted.

    Returns the real path. Raises SymlinkViolationError when a link points
    outside the allowed directories, PathViolationError otherwise.
    """
    absolute = resolve_against(expand_path(path, cwd, config.workspace), cwd)
    real = os.path.realpath(absolute)

    read, write = effective_permissions(config, cwd)
    allowed = read if operation == "read" else write
    allowed_real = {os.path.realpath(resolve_against(p, cwd)) for p in allowed}
    allowed_real.update(resolve_against(p, cwd) for p in allowed)

    if any(is_within(real, parent) for parent in allowed_real):
        return real

    if os.path.islink(absolute):
        raise SymlinkViolationError(path, real, sorted(allowed_real))
    raise PathViolationError(path, real if real != absolute else None, sorted(allowed_real))
