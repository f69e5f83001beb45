"""Configuration loading utilities."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from safeshell.config.schema import SafeShellConfig, default_config, merge_configs
from safeshell.exec.errors import ConfigError
from safeshell.utils.helpers import find_project_root, write_json_file

CONFIG_DIR_NAME = ".config/safesh"


def get_global_config_path() -> Path:
    """Get the user-wide configuration file path."""
    return Path.home() / CONFIG_DIR_NAME / "config.json"


def get_project_config_path(project_dir: str | Path) -> Path:
    """Get the shared project configuration file path."""
    return Path(project_dir) / CONFIG_DIR_NAME / "config.json"


def get_local_config_path(project_dir: str | Path) -> Path:
    """Get the project-local file holding "always allow" grants."""
    return Path(project_dir) / CONFIG_DIR_NAME / "config.local.json"


def load_config(config_path: Path | None = None) -> SafeShellConfig:
    """
    Load configuration from file or create default.

    Missing, empty or invalid files fall back to an empty config so the
    built-in defaults still apply after merging.
    """
    path = config_path or get_global_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return SafeShellConfig.model_validate(config_from_dict(data))
        except (json.JSONDecodeError, ValidationError, ConfigError, TypeError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    return SafeShellConfig()


def save_config(config: SafeShellConfig, config_path: Path | None = None) -> None:
    """Save configuration to file with camelCase keys."""
    path = config_path or get_global_config_path()
    write_json_file(path, config_to_dict(config))


def config_from_dict(data: Any) -> dict[str, Any]:
    """Convert an on-disk camelCase mapping into model field names."""
    if not isinstance(data, dict):
        raise ConfigError(f"config must be a JSON object, got {type(data).__name__}")
    external = data.get("external")
    converted = convert_keys({k: v for k, v in data.items() if k != "external"})
    # Command names are data, not field names
    if isinstance(external, dict):
        converted["external"] = {name: convert_keys(cmd) for name, cmd in external.items()}
    # The on-disk timeout is in milliseconds
    if "timeout" in converted:
        converted["timeout_seconds"] = converted.pop("timeout") / 1000
    return converted


def config_to_dict(config: SafeShellConfig) -> dict[str, Any]:
    """Convert a config into its on-disk camelCase mapping."""
    data = config.model_dump(exclude_none=True)
    external = data.pop("external", {})
    result = convert_to_camel(data)
    result["external"] = {name: convert_to_camel(cmd) for name, cmd in external.items()}
    result["timeout"] = int(result.pop("timeoutSeconds") * 1000)
    return result


def load_session_config(cwd: str | Path) -> tuple[SafeShellConfig, Path]:
    """
    Assemble the effective config for a working directory.

    Order: built-in defaults, global config, project config, then the
    permanent grants (config.local.json) and this session's grants.
    """
    from safeshell.exec.approvals import (
        get_session_id,
        merge_local_permissions,
        merge_session_permissions,
    )

    project_dir = find_project_root(cwd)
    config = default_config()
    for path in (get_global_config_path(), get_project_config_path(project_dir)):
        if path.exists():
            config = merge_configs(config, load_config(path))
    if not config.project_dir:
        config.project_dir = str(project_dir)

    config = merge_local_permissions(config, project_dir)
    config = merge_session_permissions(config, project_dir, get_session_id())
    return config, project_dir


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?<!_)([A-Z])", r"_\1", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
