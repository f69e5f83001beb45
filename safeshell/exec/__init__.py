"""Sandboxed execution and permission negotiation."""

from safeshell.exec.types import (
    PermissionScope,
    PathOperation,
    PermissionAllowed,
    PermissionNotAllowed,
    PermissionNotFound,
    PermissionResult,
    PendingCommand,
    PendingPathRequest,
    ExecResult,
)
from safeshell.exec.errors import SafeShellError
from safeshell.exec.permissions import (
    is_within,
    check_command,
    check_commands,
    check_path,
    require_command,
)

__all__ = [
    "PermissionScope",
    "PathOperation",
    "PermissionAllowed",
    "PermissionNotAllowed",
    "PermissionNotFound",
    "PermissionResult",
    "PendingCommand",
    "PendingPathRequest",
    "ExecResult",
    "SafeShellError",
    "is_within",
    "check_command",
    "check_commands",
    "check_path",
    "require_command",
]
