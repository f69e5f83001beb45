"""Permission violation detection and escalation."""

import json
import os
import re
import sys
import traceback
from pathlib import Path
from typing import Any, NoReturn

from loguru import logger

from safeshell.exec.errors import SafeShellError
from safeshell.exec.markers import VIOLATION_MARKER
from safeshell.exec.pending import create_pending_command, create_pending_path
from safeshell.exec.types import ExecResult, PathOperation, PendingPathRequest, ViolationInfo
from safeshell.utils.helpers import get_error_log_path

PATH_VIOLATION_CODES = ("PATH_VIOLATION", "SYMLINK_VIOLATION")
NOT_CAPABLE = "NotCapable"

PATH_VIOLATION_MESSAGES = (
    "outside allowed directories",
    "Requires read access",
    "Requires write access",
    NOT_CAPABLE,
)

# A piped external command's own failure, not an engine fault
COMMAND_FAILURE_MESSAGES = ("exited with code", "Pipeline failed")

# Function name the child-side handler defines
HANDLER_NAME = "__handleError"

WRITE_ACCESS_MESSAGE = "write access"

# Runtime format: Requires read access to "/etc/hosts"
RUNTIME_PATH_PATTERN = r'access to "([^"]+)"'
# Internal format: Path '/x' ... / Symlink '/x' points to '/y' ...
INTERNAL_PATH_PATTERN = r"(?:Path|Symlink) '([^']+)'"
SYMLINK_REAL_PATH_PATTERN = r"points to '([^']+)'"

RUNTIME_PATH_RE = re.compile(RUNTIME_PATH_PATTERN)
INTERNAL_PATH_RE = re.compile(INTERNAL_PATH_PATTERN)
SYMLINK_REAL_PATH_RE = re.compile(SYMLINK_REAL_PATH_PATTERN)

RETRY_CLI = "desh"


# ── Detection ───────────────────────────────────────────────────────


def _error_parts(error: Any) -> tuple[str, str, str]:
    """(message, code, name) for an exception, a {"code", "message"} mapping or a string."""
    if isinstance(error, dict):
        message = error.get("message")
        return (
            message if isinstance(message, str) else json.dumps(error),
            str(error.get("code") or ""),
            str(error.get("name") or ""),
        )
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if not isinstance(message, str):
            message = str(error)
        code = getattr(error, "code", "")
        return message, code if isinstance(code, str) else "", type(error).__name__
    return str(error), "", ""


def extract_path(message: str, code: str = "") -> str:
    """Offending path from a denial message, or "unknown"."""
    match = RUNTIME_PATH_RE.search(message)
    if match:
        return match.group(1)

    match = INTERNAL_PATH_RE.search(message)
    if match:
        if code == "SYMLINK_VIOLATION":
            real = SYMLINK_REAL_PATH_RE.search(message)
            if real:
                return real.group(1)
        return match.group(1)

    return "unknown"


def extract_operation(message: str) -> PathOperation:
    return "write" if WRITE_ACCESS_MESSAGE in message else "read"


def detect_violation(error: Any) -> ViolationInfo:
    """
    Classify a failure as a path permission violation or not.

    Codes and error names are checked first, then known message phrasings,
    since errors crossing the subprocess boundary may arrive as strings.
    """
    message, code, name = _error_parts(error)

    is_violation = (
        code in PATH_VIOLATION_CODES
        or code == NOT_CAPABLE
        or name == NOT_CAPABLE
        or any(m in message for m in PATH_VIOLATION_MESSAGES)
    )

    if not is_violation and isinstance(error, PermissionError):
        return ViolationInfo(
            is_violation=True,
            path=error.filename or "unknown",
            operation="read",
            error_code=NOT_CAPABLE,
            error_message=message,
        )

    if not is_violation:
        return ViolationInfo(is_violation=False, error_code=code or None, error_message=message)

    return ViolationInfo(
        is_violation=True,
        path=extract_path(message, code),
        operation=extract_operation(message),
        error_code=code or None,
        error_message=message,
    )


def is_command_failure(message: str) -> bool:
    return any(m in message for m in COMMAND_FAILURE_MESSAGES)


# ── Menus ───────────────────────────────────────────────────────────


def format_path_menu(path: str, pending_id: str) -> str:
    """Choice menu for a blocked path."""
    dir_path = "/".join(path.split("/")[:-1]) or "/"
    return f"""[SAFESH] PATH BLOCKED: {path}

Choose permission (r=read, w=write, rw=both):
File only (add nothing):
  1. Allow once (r1, w1, rw1)
  2. Allow for session (r2, w2, rw2)
  3. Always allow (r3, w3, rw3)

Entire directory {dir_path}/ (add 'd'):
  1. Allow once (r1d, w1d, rw1d)
  2. Allow for session (r2d, w2d, rw2d)
  3. Always allow (r3d, w3d, rw3d)

4. Deny

AFTER USER RESPONDS: {RETRY_CLI} retry-path --id={pending_id} --choice=<user's choice>"""


def format_command_menu(commands: list[str], pending_id: str) -> str:
    """Choice menu for blocked commands."""
    return f"""[SAFESH] BLOCKED: {', '.join(commands)}

WAIT for user choice (1-4):
1. Allow once
2. Always allow
3. Allow for session
4. Deny

DO NOT SHOW OR REPEAT OPTIONS. AFTER USER RESPONDS: {RETRY_CLI} retry --id={pending_id} --choice=<user's choice>"""


# ── Escalation ──────────────────────────────────────────────────────


def escalate_violation(info: ViolationInfo, script_hash: str, cwd: str) -> PendingPathRequest:
    """Record a pending path request and show the menu."""
    pending = create_pending_path(info.path or "unknown", info.operation, cwd, script_hash)
    print(format_path_menu(pending.path, pending.id), file=sys.stderr)
    return pending


def escalate_violation_event(payload: dict[str, Any], script_hash: str, cwd: str) -> PendingPathRequest | None:
    """
    Escalate a violation event reported by a sandboxed script.

    The script has already classified the error; the classification is
    re-applied here so a malformed event cannot inject a path.
    """
    info = detect_violation(payload)
    if not info.is_violation:
        logger.debug(f"Ignoring violation event that does not classify as one: {payload}")
        return None
    return escalate_violation(info, script_hash, cwd)


def handle_violation(error: Any, script_hash: str | None = None, cwd: str | None = None) -> NoReturn:
    """Turn a path violation into a pending request and menu, then exit 1."""
    info = detect_violation(error)
    if not info.is_violation:
        print("[SAFESH] Error detecting path violation", file=sys.stderr)
        sys.exit(1)
    escalate_violation(
        info,
        script_hash or os.environ.get("SAFESH_SCRIPT_HASH", ""),
        cwd or os.getcwd(),
    )
    sys.exit(1)


def handle_command_block(
    commands: list[str],
    script_hash: str,
    cwd: str,
    timeout: int | None = None,
    background: bool | None = None,
) -> NoReturn:
    """Turn blocked commands into a pending request and menu, then exit 1."""
    pending = create_pending_command(script_hash, commands, cwd, timeout, background)
    print(format_command_menu(commands, pending.id), file=sys.stderr)
    sys.exit(1)


def escalate_result(result: ExecResult, cwd: str, timeout: int | None = None) -> bool:
    """
    Start the escalation flow for a finished run if it was blocked.

    Returns True when a pending request was created and a menu shown.
    """
    script_hash = result.script_hash or ""
    if result.violation and escalate_violation_event(result.violation, script_hash, cwd) is not None:
        return True

    blocked = [*result.blocked_commands, *result.not_found_commands]
    if result.blocked_command and result.blocked_command not in blocked:
        blocked.insert(0, result.blocked_command)
    if blocked:
        pending = create_pending_command(script_hash, blocked, cwd, timeout)
        print(format_command_menu(blocked, pending.id), file=sys.stderr)
        return True

    if not result.success:
        info = detect_violation(result.stderr)
        if info.is_violation and info.path != "unknown":
            escalate_violation(info, script_hash, cwd)
            return True
    return False


# ── Generic errors ──────────────────────────────────────────────────


def _stack(error: Any) -> str | None:
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        return "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()
    if isinstance(error, dict) and isinstance(error.get("stack"), str):
        return error["stack"]
    return None


class ErrorHandler:
    """
    Final error handler for a script run.

    Violations become a pending request and menu. Other errors are printed,
    and written to the error log unless they are a piped command's own
    failure. Always exits 1.
    """

    def __init__(
        self,
        prefix: str,
        error_log_path: Path | None = None,
        original_command: str | None = None,
        transpiled_code: str | None = None,
    ):
        self.prefix = prefix
        self.error_log_path = error_log_path
        self.original_command = original_command
        self.transpiled_code = transpiled_code

    def console_message(self, error: Any) -> str:
        message, _, _ = _error_parts(error)
        parts = [f"=== {self.prefix} ==="]
        if self.original_command:
            parts.append(f"Command: {self.original_command}")
        parts.append(f"\nError: {message}")
        stack = _stack(error)
        if stack:
            parts.append(f"\nStack trace:\n{stack}")
        parts.append("=" * (len(self.prefix) + 8) + "\n")
        return "\n".join(parts)

    def log_message(self, error: Any) -> str:
        message, _, _ = _error_parts(error)
        parts = ["=== Execution Error ==="]
        if self.original_command:
            parts.append(f"Original Command:\n{self.original_command}")
        if self.transpiled_code:
            parts.append(f"\nTranspiled TypeScript:\n{self.transpiled_code}")
        parts.append(f"\nError: {message}")
        stack = _stack(error)
        if stack:
            parts.append(f"\nStack trace:\n{stack}")
        parts.append("=========================\n")
        return "\n".join(parts)

    def handle(self, error: Any) -> NoReturn:
        info = detect_violation(error)
        if info.is_violation:
            handle_violation(error)

        if not is_command_failure(info.error_message) and self.error_log_path:
            try:
                self.error_log_path.parent.mkdir(parents=True, exist_ok=True)
                self.error_log_path.write_text(self.log_message(error), encoding="utf-8")
                print(f"\nFull details saved to: {self.error_log_path}", file=sys.stderr)
            except OSError as e:
                logger.warning(f"Could not write error log: {e}")

        print(self.console_message(error), file=sys.stderr)
        sys.exit(1)

    __call__ = handle


def log_execution_error(error: Any, code: str) -> Path | None:
    """Write an execution error with its code to the errors directory."""
    message, _, _ = _error_parts(error)
    parts = ["=== Execution Error ===", f"Code:\n{code}", f"\nError: {message}"]
    stack = _stack(error)
    parts.append(f"\nStack trace:\n{stack}" if stack else "")
    parts.append("=========================\n")
    try:
        path = get_error_log_path()
        path.write_text("\n".join(parts), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not write error log: {e}")
        return None
    print(f"\nFull details saved to: {path}", file=sys.stderr)
    return path


# ── Child-side handler ──────────────────────────────────────────────


def _js_string(value: str) -> str:
    return json.dumps(value)


def generate_inline_handler(prefix: str = "Script Error", include_listeners: bool = True) -> str:
    """
    JavaScript error handler embedded in sandboxed scripts.

    It classifies errors with the same codes, phrases and patterns as
    detect_violation. A violation is reported as one VIOLATION_MARKER line
    on stderr for the host to escalate; anything else prints the console
    form. Both exit 1.
    """
    code_checks = " ||\n    ".join(f"errorCode === {_js_string(c)}" for c in PATH_VIOLATION_CODES)
    message_checks = " ||\n    ".join(f"errorMessage.includes({_js_string(m)})" for m in PATH_VIOLATION_MESSAGES)
    separator = "=" * (len(prefix) + 8)

    handler = f"""const {HANDLER_NAME} = (error) => {{
  const errorMessage = (error && error.message) || String(error);
  const errorCode = (error && error.code) || "";
  const errorName = (error && error.name) || "";

  const isPathViolation =
    {code_checks} ||
    errorName === {_js_string(NOT_CAPABLE)} ||
    {message_checks};

  if (isPathViolation) {{
    let path = "unknown";
    const runtimeMatch = errorMessage.match(/{RUNTIME_PATH_PATTERN}/);
    if (runtimeMatch) {{
      path = runtimeMatch[1];
    }} else {{
      const pathMatch = errorMessage.match(/{INTERNAL_PATH_PATTERN}/);
      if (pathMatch) {{
        path = pathMatch[1];
        if (errorCode === "SYMLINK_VIOLATION") {{
          const realMatch = errorMessage.match(/{SYMLINK_REAL_PATH_PATTERN}/);
          if (realMatch) path = realMatch[1];
        }}
      }}
    }}
    const operation = errorMessage.includes({_js_string(WRITE_ACCESS_MESSAGE)}) ? "write" : "read";
    console.error({_js_string(VIOLATION_MARKER)} + JSON.stringify({{
      code: errorCode || errorName,
      name: errorName,
      message: errorMessage,
      path: path,
      operation: operation,
    }}));
    Deno.exit(1);
  }}

  const parts = [{_js_string(f"=== {prefix} ===")}, "\\nError: " + errorMessage];
  if (error && error.stack) parts.push("\\nStack trace:\\n" + error.stack);
  parts.push({_js_string(separator + chr(10))});
  console.error(parts.join("\\n"));
  Deno.exit(1);
}};
"""
    if not include_listeners:
        return handler

    return handler + """
globalThis.addEventListener("error", (event) => {
  event.preventDefault();
  __handleError(event.error);
});

globalThis.addEventListener("unhandledrejection", (event) => {
  event.preventDefault();
  __handleError(event.reason);
});
"""


def embed_inline_handler(code: str) -> str:
    """Prepend the child-side handler to a script that does not carry one yet."""
    if f"const {HANDLER_NAME} =" in code:
        return code
    return f"{generate_inline_handler()}\n{code}"
