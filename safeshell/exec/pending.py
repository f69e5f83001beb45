"""Pending requests: blocked operations awaiting a user choice."""

import json
import os
import secrets
import time
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from safeshell.config.loader import convert_keys, convert_to_camel
from safeshell.exec.types import PathOperation, PendingCommand, PendingKind, PendingPathRequest
from safeshell.utils.helpers import get_temp_root, read_json_file, write_json_file

PendingRequest = PendingCommand | PendingPathRequest


def generate_pending_id() -> str:
    """Timestamp, pid and a random suffix so ids from one process never collide."""
    return f"{int(time.time() * 1000)}-{os.getpid()}-{secrets.token_hex(2)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_pending_path(pending_id: str, kind: PendingKind) -> Path:
    """File holding a pending request."""
    prefix = "pending-path" if kind == "path" else "pending"
    return get_temp_root() / f"{prefix}-{pending_id}.json"


def _to_dict(request: PendingRequest) -> dict:
    return convert_to_camel({k: v for k, v in asdict(request).items() if v is not None})


def _from_dict(data: dict, kind: PendingKind) -> PendingRequest:
    cls = PendingPathRequest if kind == "path" else PendingCommand
    names = {f.name for f in fields(cls)}
    values = {k: v for k, v in convert_keys(data).items() if k in names}
    return cls(**values)


def write_pending(request: PendingRequest) -> PendingRequest:
    """Write a pending request. Failures are logged, not raised."""
    kind: PendingKind = "path" if isinstance(request, PendingPathRequest) else "command"
    try:
        write_json_file(get_pending_path(request.id, kind), _to_dict(request))
    except OSError as e:
        logger.warning(f"Failed to write pending {kind} request {request.id}: {e}")
    return request


def create_pending_command(
    script_hash: str,
    commands: list[str],
    cwd: str,
    timeout: int | None = None,
    background: bool | None = None,
) -> PendingCommand:
    """Record a blocked command invocation."""
    return write_pending(PendingCommand(
        id=generate_pending_id(),
        script_hash=script_hash,
        commands=list(commands),
        cwd=cwd,
        created_at=_now_iso(),
        timeout=timeout,
        background=background,
    ))


def create_pending_path(path: str, operation: PathOperation, cwd: str, script_hash: str) -> PendingPathRequest:
    """Record a blocked path access."""
    return write_pending(PendingPathRequest(
        id=generate_pending_id(),
        path=path,
        operation=operation,
        cwd=cwd,
        script_hash=script_hash,
        created_at=_now_iso(),
    ))


def read_pending(pending_id: str, kind: PendingKind) -> PendingRequest | None:
    """Load a pending request, or None if it is missing or unreadable."""
    try:
        data = read_json_file(get_pending_path(pending_id, kind))
        return _from_dict(data, kind)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError, TypeError, AttributeError) as e:
        logger.debug(f"Ignoring unreadable pending {kind} request {pending_id}: {e}")
        return None


def delete_pending(pending_id: str, kind: PendingKind) -> None:
    """Remove a pending request. Missing files are fine."""
    try:
        get_pending_path(pending_id, kind).unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Could not delete pending {kind} request {pending_id}: {e}")


def cleanup_stale_pending(max_age_seconds: float = 24 * 3600) -> int:
    """Remove pending files older than max_age_seconds. Returns the count removed."""
    cutoff = time.time() - max_age_seconds
    removed = 0
    try:
        candidates = list(get_temp_root().glob("pending-*.json"))
    except OSError as e:
        logger.warning(f"Cannot scan pending requests: {e}")
        return 0
    for path in candidates:
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.debug(f"Skipping {path} during cleanup: {e}")
    if removed:
        logger.info(f"Removed {removed} stale pending request(s)")
    return removed
