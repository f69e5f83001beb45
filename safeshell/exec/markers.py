"""Control markers a sandboxed script writes to its output streams."""

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

JOB_MARKER = "__SAFESH_JOB__:"
CMD_ERROR_MARKER = "__SAFESH_CMD_ERROR__:"
INIT_ERROR_MARKER = "__SAFESH_INIT_ERROR__:"
NET_ERROR_MARKER = "__SAFESH_NET_ERROR__:"
VIOLATION_MARKER = "__SAFESH_VIOLATION__:"
STATE_MARKER = "__SAFESH_STATE__:"  # stdout

STDERR_MARKERS = (JOB_MARKER, CMD_ERROR_MARKER, INIT_ERROR_MARKER, NET_ERROR_MARKER, VIOLATION_MARKER)

# Runtime message for a denied network request
NET_DENIED_RE = re.compile(r'Requires net access to "([^"]+)"')

MarkerKind = Literal["job", "cmd_error", "init_error", "net_error", "violation"]

_KINDS: dict[str, MarkerKind] = {
    JOB_MARKER: "job",
    CMD_ERROR_MARKER: "cmd_error",
    INIT_ERROR_MARKER: "init_error",
    NET_ERROR_MARKER: "net_error",
    VIOLATION_MARKER: "violation",
}


@dataclass
class MarkerEvent:
    kind: MarkerKind
    payload: dict[str, Any]


@dataclass
class JobEvent:
    """A job start or end reported by the script."""
    type: Literal["start", "end"]
    id: str
    pid: int | None = None
    command: str | None = None
    args: list[str] | None = None
    started_at: int | None = None
    exit_code: int | None = None
    completed_at: int | None = None
    duration: int | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "JobEvent | None":
        if data.get("type") not in ("start", "end") or not isinstance(data.get("id"), str):
            return None
        return cls(
            type=data["type"],
            id=data["id"],
            pid=data.get("pid"),
            command=data.get("command"),
            args=data.get("args"),
            started_at=data.get("startedAt"),
            exit_code=data.get("exitCode"),
            completed_at=data.get("completedAt"),
            duration=data.get("duration"),
        )


@dataclass
class ShellState:
    """Shell state echoed back by a script on exit."""
    cwd: str | None = None
    env: dict[str, str] | None = None
    vars: dict[str, Any] | None = None


def format_marker(marker: str, payload: dict[str, Any]) -> str:
    """One control line, without the trailing newline."""
    return marker + json.dumps(payload, separators=(",", ":"))


def _parse_json_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_marker(line: str) -> MarkerEvent | None:
    """
    Parse a stderr line into a control event.

    Returns None for ordinary output, including a marker prefix followed by
    anything that is not a JSON object.
    """
    line = line.rstrip("\r\n")
    for marker in STDERR_MARKERS:
        if line.startswith(marker):
            payload = _parse_json_object(line[len(marker):])
            if payload is None:
                return None
            return MarkerEvent(_KINDS[marker], payload)
    return None


def is_control_line(line: str) -> bool:
    return parse_marker(line) is not None


def strip_control_lines(stderr: str) -> str:
    """Stderr as the user should see it."""
    kept = [line for line in stderr.splitlines(keepends=True) if not is_control_line(line)]
    return "".join(kept)


def extract_state(stdout: str) -> tuple[str, ShellState | None]:
    """Split the state line out of stdout. The last valid state line wins."""
    state: ShellState | None = None
    kept: list[str] = []
    for line in stdout.splitlines(keepends=True):
        if line.startswith(STATE_MARKER):
            data = _parse_json_object(line[len(STATE_MARKER):].rstrip("\r\n"))
            if data is not None:
                state = ShellState(cwd=data.get("CWD"), env=data.get("ENV"), vars=data.get("VARS"))
                continue
        kept.append(line)
    return "".join(kept), state


def find_blocked_host(stderr: str) -> str | None:
    """Host named in a network denial, from a marker or the runtime's own message."""
    for line in stderr.splitlines():
        event = parse_marker(line)
        if event and event.kind == "net_error" and isinstance(event.payload.get("host"), str):
            return event.payload["host"]
    match = NET_DENIED_RE.search(stderr)
    return match.group(1) if match else None
