"""Configuration module for safeshell."""

from safeshell.config.loader import load_config, load_session_config, get_global_config_path
from safeshell.config.schema import SafeShellConfig, default_config, merge_configs

__all__ = [
    "SafeShellConfig",
    "default_config",
    "merge_configs",
    "load_config",
    "load_session_config",
    "get_global_config_path",
]
