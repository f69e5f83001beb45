"""Permission store: once, session and always tiers."""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from loguru import logger

from safeshell.config.loader import get_local_config_path
from safeshell.config.schema import SafeShellConfig, union
from safeshell.exec.types import PermissionScope
from safeshell.utils.helpers import ENV_SESSION_ID, get_temp_root, read_json_file, safe_filename, write_json_file

DEFAULT_SESSION_ID = "default"


@dataclass
class StoredPermissions:
    """Commands and paths granted in one tier (session file or config.local.json)."""
    allowed_commands: list[str] = field(default_factory=list)
    read: list[str] = field(default_factory=list)
    write: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "StoredPermissions":
        if not isinstance(data, dict):
            return cls()
        perms = data.get("permissions") or {}
        return cls(
            allowed_commands=list(data.get("allowedCommands") or []),
            read=list(perms.get("read") or []),
            write=list(perms.get("write") or []),
        )

    def merge_into(self, data: dict[str, Any]) -> dict[str, Any]:
        """Union this grant into an existing on-disk mapping, keeping unknown keys."""
        result = dict(data)
        if self.allowed_commands:
            result["allowedCommands"] = union(data.get("allowedCommands"), self.allowed_commands)
        if self.read or self.write:
            perms = dict(data.get("permissions") or {})
            if self.read:
                perms["read"] = union(perms.get("read"), self.read)
            if self.write:
                perms["write"] = union(perms.get("write"), self.write)
            result["permissions"] = perms
        return result

    def is_empty(self) -> bool:
        return not (self.allowed_commands or self.read or self.write)

    def describe(self) -> str:
        parts = []
        if self.allowed_commands:
            parts.append(f"commands: {', '.join(self.allowed_commands)}")
        if self.read:
            parts.append(f"read: {', '.join(self.read)}")
        if self.write:
            parts.append(f"write: {', '.join(self.write)}")
        return "; ".join(parts)


def get_session_id() -> str:
    """Session id selecting the session-tier file."""
    return os.environ.get(ENV_SESSION_ID) or DEFAULT_SESSION_ID


def get_session_file_path(project_dir: str | Path | None, session_id: str) -> Path:
    """Session-tier file, project-scoped when the project is known."""
    name = f"session-{safe_filename(session_id)}.json"
    if project_dir:
        return Path(project_dir) / ".config" / "safesh" / name
    return get_temp_root() / name


def apply_permissions(config: SafeShellConfig, stored: StoredPermissions) -> SafeShellConfig:
    """Return a copy of config with stored grants unioned in. Commands flow into run."""
    if stored.is_empty():
        return config
    merged = config.model_copy(deep=True)
    merged.permissions.run = union(merged.permissions.run, stored.allowed_commands)
    merged.permissions.read = union(merged.permissions.read, stored.read)
    merged.permissions.write = union(merged.permissions.write, stored.write)
    return merged


class PermissionStore:
    """
    Reads and writes the persistent permission tiers for one project.

    - session: session-{id}.json, lives as long as the agent session
    - always: .config/safesh/config.local.json

    "once" grants are never written; they exist only in the config value
    handed to a single retry.
    """

    def __init__(self, project_dir: str | Path | None, session_id: str | None = None):
        self.project_dir = Path(project_dir) if project_dir else None
        self.session_id = session_id or get_session_id()

    @property
    def session_path(self) -> Path:
        return get_session_file_path(self.project_dir, self.session_id)

    @property
    def local_path(self) -> Path | None:
        if not self.project_dir:
            return None
        return get_local_config_path(self.project_dir)

    def load_session(self) -> StoredPermissions:
        return self._load(self.session_path)

    def load_local(self) -> StoredPermissions:
        path = self.local_path
        return self._load(path) if path else StoredPermissions()

    def add_session(self, grant: StoredPermissions) -> bool:
        """Merge a grant into the session file."""
        if not self._merge(self.session_path, grant):
            return False
        print(f"[safesh] Added to session: {grant.describe()}", file=sys.stderr)
        return True

    def add_always(self, grant: StoredPermissions) -> bool:
        """Merge a grant into config.local.json."""
        path = self.local_path
        if path is None:
            logger.warning("Cannot persist permanent permission: project directory unknown")
            return False
        if not self._merge(path, grant):
            return False
        print(f"[safesh] Added to always-allow: {grant.describe()}", file=sys.stderr)
        return True

    def grant(self, scope: PermissionScope, config: SafeShellConfig, grant: StoredPermissions) -> SafeShellConfig:
        """
        Persist a grant in the tier named by scope and return the config to
        retry with. The returned config always carries the grant, whatever
        the scope.
        """
        if scope == "always":
            self.add_always(grant)
        elif scope == "session":
            self.add_session(grant)
        return apply_permissions(config, grant)

    def _load(self, path: Path) -> StoredPermissions:
        if not path.exists():
            return StoredPermissions()
        try:
            return StoredPermissions.from_dict(read_json_file(path))
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Ignoring unreadable permission file {path}: {e}")
            return StoredPermissions()

    def _merge(self, path: Path, grant: StoredPermissions) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(str(path.with_suffix(".lock")), timeout=10):
                try:
                    data = read_json_file(path)
                except (FileNotFoundError, json.JSONDecodeError):
                    data = {}
                if not isinstance(data, dict):
                    data = {}
                write_json_file(path, grant.merge_into(data))
            return True
        except (OSError, Timeout) as e:
            logger.warning(f"Failed to save permissions to {path}: {e}")
            return False


def merge_session_permissions(
    config: SafeShellConfig,
    project_dir: str | Path | None,
    session_id: str | None = None,
) -> SafeShellConfig:
    """Config with the session tier unioned into permissions.read/write/run."""
    return apply_permissions(config, PermissionStore(project_dir, session_id).load_session())


def merge_local_permissions(config: SafeShellConfig, project_dir: str | Path | None) -> SafeShellConfig:
    """Config with the permanent tier unioned into permissions.read/write/run."""
    return apply_permissions(config, PermissionStore(project_dir).load_local())
