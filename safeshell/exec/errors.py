"""Error taxonomy for sandboxed execution."""

from typing import Any


class SafeShellError(Exception):
    """Base error carrying a machine-readable code and an optional hint."""

    code = "SAFESHELL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None, suggestion: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


class ConfigError(SafeShellError):
    code = "CONFIG_ERROR"


class CommandNotAllowedError(SafeShellError):
    code = "COMMAND_NOT_ALLOWED"

    def __init__(self, command: str, suggestion: str | None = None):
        super().__init__(
            f"Command '{command}' is not allowed",
            {"command": command},
            suggestion or f"Add '{command}' to permissions.run in your config",
        )
        self.command = command


class CommandNotFoundError(SafeShellError):
    code = "COMMAND_NOT_FOUND"

    def __init__(self, command: str):
        super().__init__(
            f"Command not found: '{command}' - not found in CWD or projectDir",
            {"command": command},
            "Check the command path, or use an absolute path",
        )
        self.command = command


class PathViolationError(SafeShellError):
    code = "PATH_VIOLATION"

    def __init__(self, path: str, real_path: str | None = None, allowed: list[str] | None = None):
        if real_path and real_path != path:
            message = f"Path '{path}' resolves to '{real_path}' which is outside allowed directories"
        else:
            message = f"Path '{path}' is outside allowed directories"
        super().__init__(
            message,
            {"path": path, "real_path": real_path or path, "allowed": allowed or []},
            "Add the directory to permissions.read or permissions.write in your config",
        )
        self.path = path
        self.real_path = real_path or path


class SymlinkViolationError(SafeShellError):
    code = "SYMLINK_VIOLATION"

    def __init__(self, path: str, real_path: str, allowed: list[str] | None = None):
        super().__init__(
            f"Symlink '{path}' points to '{real_path}' which is outside allowed directories",
            {"path": path, "real_path": real_path, "allowed": allowed or []},
            "Grant access to the symlink target, not the link",
        )
        self.path = path
        self.real_path = real_path


class SandboxDeniedError(SafeShellError):
    """The runtime refused a capability at the OS level."""
    code = "NotCapable"


class NetworkBlockedError(SafeShellError):
    code = "NETWORK_BLOCKED"

    def __init__(self, host: str):
        super().__init__(
            f"Network access to '{host}' is not allowed",
            {"host": host},
            f"Add '{host}' to permissions.net in your config",
        )
        self.host = host


class ExecTimeoutError(SafeShellError):
    code = "TIMEOUT"

    def __init__(self, timeout_ms: int, command: str):
        super().__init__(
            f"Execution timed out after {timeout_ms}ms for '{command}'",
            {"timeout": timeout_ms, "command": command},
            "Increase the timeout or run the script in the background",
        )
        self.timeout_ms = timeout_ms


class ExecutionError(SafeShellError):
    code = "EXECUTION_ERROR"


class PipelineFailureError(SafeShellError):
    """A piped external command exited non-zero. Not an engine fault."""
    code = "PIPELINE_FAILURE"

    def __init__(self, command: str, exit_code: int):
        super().__init__(
            f"Pipeline failed: '{command}' exited with code {exit_code}",
            {"command": command, "exit_code": exit_code},
        )
        self.exit_code = exit_code


class ImportBlockedError(SafeShellError):
    code = "IMPORT_BLOCKED"

    def __init__(self, specifier: str, blocked: list[str], allowed: list[str]):
        super().__init__(
            f"Import '{specifier}' is blocked by import policy",
            {"specifier": specifier, "blocked": blocked, "allowed": allowed},
            "Add the specifier to imports.allowed in your config",
        )
        self.specifier = specifier
