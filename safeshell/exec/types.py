"""Type definitions for sandboxed execution."""

from dataclasses import dataclass, field
from typing import Any, Literal

# How long a granted permission persists
PermissionScope = Literal["once", "session", "always"]

# Filesystem operation being checked
PathOperation = Literal["read", "write"]

# Job lifecycle
JobStatus = Literal["running", "completed", "failed", "stopped"]

# Pending request kinds
PendingKind = Literal["command", "path"]


@dataclass
class PermissionAllowed:
    """Command may run; resolved_path is what will be spawned."""
    resolved_path: str
    allowed: Literal[True] = True


@dataclass
class PermissionNotAllowed:
    """Command is known but not permitted."""
    command: str
    allowed: Literal[False] = False


@dataclass
class PermissionNotFound:
    """Relative command resolved to no existing file."""
    command: str
    allowed: Literal[False] = False


PermissionResult = PermissionAllowed | PermissionNotAllowed | PermissionNotFound


@dataclass
class MultiCommandResult:
    """Result of checking several commands at once."""
    all_allowed: bool
    results: dict[str, PermissionResult] = field(default_factory=dict)
    not_allowed: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)


@dataclass
class PathCheckResult:
    """Result of a path permission check."""
    allowed: bool
    resolved_path: str
    reason: str | None = None


@dataclass
class PendingCommand:
    """A blocked command invocation awaiting a user choice."""
    id: str
    script_hash: str
    commands: list[str]
    cwd: str
    created_at: str
    timeout: int | None = None  # milliseconds
    background: bool | None = None


@dataclass
class PendingPathRequest:
    """A blocked path access awaiting a user choice."""
    id: str
    path: str
    operation: PathOperation
    cwd: str
    script_hash: str
    created_at: str


@dataclass
class SpawnResult:
    """Raw result of a sandboxed subprocess."""
    status: int
    stdout: str
    stderr: str
    pid: int


@dataclass
class ViolationInfo:
    """Classification of a failure."""
    is_violation: bool
    operation: PathOperation = "read"
    path: str | None = None
    error_code: str | None = None
    error_message: str = ""


@dataclass
class ExecResult:
    """Result of executing a script."""
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    job_id: str | None = None
    script_hash: str | None = None
    blocked_command: str | None = None
    blocked_commands: list[str] = field(default_factory=list)
    not_found_commands: list[str] = field(default_factory=list)
    blocked_host: str | None = None
    violation: dict[str, Any] | None = None
