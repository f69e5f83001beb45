"""Translate a permission config into runtime sandbox flags."""

import os

from safeshell.config.schema import SafeShellConfig, expand_paths

# Variables always visible to the script when env access is restricted
INJECTED_ENV_VARS = ["SAFESH_SHELL_ID", "SAFESH_SCRIPT_ID", "SAFESH_SCRIPT_HASH"]


def _with_real_paths(paths: list[str]) -> list[str]:
    """
    Each path followed by its symlink-resolved form when that differs.

    The runtime matches on real paths, so /tmp on macOS needs /private/tmp.
    """
    result: list[str] = []
    for path in paths:
        if path not in result:
            result.append(path)
        try:
            real = os.path.realpath(path)
        except OSError:
            continue
        if real not in result:
            result.append(real)
    return result


def _expand_all(paths: list[str], cwd: str, workspace: str | None) -> list[str]:
    return _with_real_paths(expand_paths(paths, cwd, workspace))


def build_sandbox_flags(config: SafeShellConfig, script_dir: str, cwd: str | None = None) -> list[str]:
    """
    Build the capability flags for a sandboxed script.

    Reads and writes become allow-lists (plus script_dir), deny lists follow
    them. Network is granted only when configured. Any run permission grants
    process spawning; which commands may run is checked before spawn.
    """
    cwd = cwd or os.getcwd()
    perms = config.permissions
    ws = config.workspace
    flags: list[str] = []

    read = _expand_all([*perms.read, script_dir], cwd, ws)
    flags.append(f"--allow-read={','.join(read)}")

    write = _expand_all([*perms.write, script_dir], cwd, ws)
    flags.append(f"--allow-write={','.join(write)}")

    if perms.deny_read:
        flags.append(f"--deny-read={','.join(_expand_all(perms.deny_read, cwd, ws))}")
    if perms.deny_write:
        flags.append(f"--deny-write={','.join(_expand_all(perms.deny_write, cwd, ws))}")

    if perms.net is True:
        flags.append("--allow-net")
    elif isinstance(perms.net, list) and perms.net:
        flags.append(f"--allow-net={','.join(perms.net)}")

    if perms.run or config.external:
        flags.append("--allow-run")

    if config.env.allow_read_all is False:
        if config.env.allow:
            names = list(dict.fromkeys([*config.env.allow, *INJECTED_ENV_VARS]))
            flags.append(f"--allow-env={','.join(names)}")
    else:
        flags.append("--allow-env")

    return flags


def build_runtime_args(flags: list[str], script_path: str, extra_flags: list[str] | None = None) -> list[str]:
    """Argument vector (without the runtime binary) that runs a script under flags."""
    return ["run", "--no-prompt", *(extra_flags or []), *flags, script_path]
