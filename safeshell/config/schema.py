"""Configuration schema using Pydantic."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

DEFAULT_TIMEOUT_SECONDS = 30.0

# External commands that are safe for general use. Builtins implemented by the
# scripting runtime itself never reach this list.
SAFE_COMMANDS = [
    # Text processing
    "cat", "head", "tail", "wc", "sort", "uniq", "cut", "tr", "tee", "xargs",
    "sed", "awk", "grep", "egrep", "fgrep",
    "diff", "cmp", "comm", "paste", "join", "column",
    "fold", "fmt", "nl", "rev", "tac", "expand", "unexpand",
    "strings", "jq", "yq",
    # File/directory inspection
    "ls", "find", "tree", "du", "df", "file", "stat", "pwd",
    "readlink", "realpath", "basename", "dirname",
    # Encoding & hashing
    "base64", "xxd", "od", "hexdump",
    "md5", "md5sum", "shasum", "sha256sum", "sha512sum", "cksum",
    # Compression
    "zcat", "gzip", "gunzip", "bzip2", "bunzip2", "xz", "unxz",
    "tar", "zip", "unzip",
    # Process & system info
    "ps", "pgrep", "uptime", "uname", "hostname", "nproc", "free",
    "whoami", "id", "groups",
    # Date, math
    "date", "cal", "seq", "bc", "expr",
    # Version control
    "git",
    # Shell utilities
    "echo", "printf", "true", "false", "test", "env", "printenv",
    "sleep", "timeout", "which", "command",
    "touch", "mkdir", "mktemp",
]

# Paths that should never be readable
SENSITIVE_READ_PATHS = [
    "${HOME}/.ssh",
    "${HOME}/.gnupg",
    "${HOME}/.aws/credentials",
    "${HOME}/.config/gh",
    "${HOME}/.netrc",
    "${HOME}/.npmrc",
    "${HOME}/.pypirc",
    "${HOME}/.docker/config.json",
    "${HOME}/.kube/config",
]

# Paths that should never be writable
SENSITIVE_WRITE_PATHS = [
    "${HOME}/.ssh",
    "${HOME}/.gnupg",
    "${HOME}/.aws",
    "${HOME}/.config/gh",
    "${HOME}/.netrc",
    "${HOME}/.npmrc",
    "${HOME}/.pypirc",
    "${HOME}/.bashrc",
    "${HOME}/.bash_profile",
    "${HOME}/.zshrc",
    "${HOME}/.profile",
]


class PathArgsConfig(BaseModel):
    """Path argument validation for an external command."""
    auto_detect: bool = False
    validate_sandbox: bool = False
    positions: list[int] = Field(default_factory=list)


class ExternalCommandConfig(BaseModel):
    """Fine-grained control for one external command."""
    allow: bool | list[str] = True  # True = all subcommands
    deny_flags: list[str] = Field(default_factory=list)
    require_flags: list[str] | None = None
    path_args: PathArgsConfig | None = None


class PermissionsConfig(BaseModel):
    """Sandbox permissions. Paths support ${CWD}, ${HOME}, ${WORKSPACE}."""
    read: list[str] = Field(default_factory=list)
    write: list[str] = Field(default_factory=list)
    deny_read: list[str] = Field(default_factory=list)
    deny_write: list[str] = Field(default_factory=list)
    net: bool | list[str] = Field(default_factory=list)  # True = unrestricted
    run: list[str] = Field(default_factory=list)
    env: list[str] = Field(default_factory=list)


class EnvConfig(BaseModel):
    """Environment variable exposure."""
    allow: list[str] = Field(default_factory=list)
    mask: list[str] = Field(default_factory=list)  # glob patterns, never exposed
    allow_read_all: bool | None = None  # None behaves like True


class ImportPolicy(BaseModel):
    """Import policy for generated scripts."""
    trusted: list[str] = Field(default_factory=list)
    allowed: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)


class SafeShellConfig(BaseSettings):
    """Root configuration for safeshell."""
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    external: dict[str, ExternalCommandConfig] = Field(default_factory=dict)
    env: EnvConfig = Field(default_factory=EnvConfig)
    imports: ImportPolicy = Field(default_factory=ImportPolicy)
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    workspace: str | None = None
    project_dir: str | None = None
    allow_project_commands: bool = False
    block_project_dir_write: bool = False
    runtime: str = "deno"  # sandbox-capable runtime binary
    runtime_flags: list[str] = Field(default_factory=list)

    @property
    def project_path(self) -> Path | None:
        """Get expanded project directory."""
        if not self.project_dir:
            return None
        return Path(self.project_dir).expanduser().resolve()

    class Config:
        env_prefix = "SAFESH_"
        env_nested_delimiter = "__"


def default_config() -> SafeShellConfig:
    """Built-in baseline that user and project configs are merged onto."""
    return SafeShellConfig(
        permissions=PermissionsConfig(
            read=["${CWD}", "${HOME}", "/tmp"],
            deny_read=list(SENSITIVE_READ_PATHS),
            write=["/tmp", "/dev/null"],
            deny_write=list(SENSITIVE_WRITE_PATHS),
            net=[],
            run=list(SAFE_COMMANDS),
            env=["HOME", "PATH", "TERM", "USER", "LANG"],
        ),
        env=EnvConfig(
            allow=["HOME", "PATH", "TERM", "EDITOR", "SHELL", "USER", "LANG"],
            mask=["*_KEY", "*_SECRET", "*_TOKEN", "*_PASSWORD", "AWS_*", "GITHUB_TOKEN"],
        ),
        imports=ImportPolicy(
            trusted=["jsr:@std/*", "safesh:*"],
            blocked=["npm:*", "http:*", "https:*"],
        ),
    )


# ── Path expansion ──────────────────────────────────────────────────


def expand_path(path: str, cwd: str, workspace: str | None = None) -> str:
    """Expand ${CWD}, ${HOME}, ${WORKSPACE} (and their bare $VAR forms)."""
    home = os.environ.get("HOME", "")
    ws = workspace or ""
    for name, value in (("CWD", cwd), ("HOME", home), ("WORKSPACE", ws)):
        path = path.replace("${" + name + "}", value)
        path = _bare_var(name).sub(lambda _m, v=value: v, path)
    if path.startswith("~/") or path == "~":
        path = str(Path(path).expanduser())
    return path


def _bare_var(name: str) -> re.Pattern:
    return re.compile(r"\$" + name + r"\b")


def expand_paths(paths: list[str], cwd: str, workspace: str | None = None) -> list[str]:
    """Expand every path in a list."""
    return [expand_path(p, cwd, workspace) for p in paths]


# ── Merging ─────────────────────────────────────────────────────────


def union(a: list | None, b: list | None) -> list:
    """Order-preserving, deduplicated union of two lists."""
    return list(dict.fromkeys([*(a or []), *(b or [])]))


def merge_net(base: bool | list[str] | None, override: bool | list[str] | None) -> bool | list[str]:
    """True (unrestricted) wins over any host list; lists are unioned."""
    if base is True or override is True:
        return True
    return union(base if isinstance(base, list) else [], override if isinstance(override, list) else [])


def merge_permissions(base: PermissionsConfig, override: PermissionsConfig) -> PermissionsConfig:
    return PermissionsConfig(
        read=union(base.read, override.read),
        write=union(base.write, override.write),
        deny_read=union(base.deny_read, override.deny_read),
        deny_write=union(base.deny_write, override.deny_write),
        net=merge_net(base.net, override.net),
        run=union(base.run, override.run),
        env=union(base.env, override.env),
    )


def merge_external(
    base: dict[str, ExternalCommandConfig],
    override: dict[str, ExternalCommandConfig],
) -> dict[str, ExternalCommandConfig]:
    """Per-command merge: allow/require_flags/path_args from override, deny_flags unioned."""
    result = {name: cmd.model_copy(deep=True) for name, cmd in base.items()}
    for name, cmd in override.items():
        existing = result.get(name)
        if existing is None:
            result[name] = cmd.model_copy(deep=True)
            continue
        result[name] = ExternalCommandConfig(
            allow=cmd.allow if "allow" in cmd.model_fields_set else existing.allow,
            deny_flags=union(existing.deny_flags, cmd.deny_flags),
            require_flags=cmd.require_flags if cmd.require_flags is not None else existing.require_flags,
            path_args=cmd.path_args if cmd.path_args is not None else existing.path_args,
        )
    return result


def merge_configs(base: SafeShellConfig, override: SafeShellConfig) -> SafeShellConfig:
    """
    Merge two configs.

    Every list is a union, except `net` where True dominates. Scalars take the
    override's value when the override sets them explicitly.
    """
    merged = base.model_copy(deep=True)
    for name in ("timeout_seconds", "workspace", "project_dir", "allow_project_commands",
                 "block_project_dir_write", "runtime"):
        if name in override.model_fields_set:
            setattr(merged, name, getattr(override, name))

    merged.permissions = merge_permissions(base.permissions, override.permissions)
    merged.external = merge_external(base.external, override.external)
    merged.env = EnvConfig(
        allow=union(base.env.allow, override.env.allow),
        mask=union(base.env.mask, override.env.mask),
        allow_read_all=(
            override.env.allow_read_all
            if override.env.allow_read_all is not None
            else base.env.allow_read_all
        ),
    )
    merged.imports = ImportPolicy(
        trusted=union(base.imports.trusted, override.imports.trusted),
        allowed=union(base.imports.allowed, override.imports.allowed),
        blocked=union(base.imports.blocked, override.imports.blocked),
    )
    merged.runtime_flags = union(base.runtime_flags, override.runtime_flags)
    return merged


# ── Validation ──────────────────────────────────────────────────────


@dataclass
class ConfigValidation:
    """Result of validate_config."""
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


SENSITIVE_READ_DIRS = ("/etc", "/var", "/usr", "/System")
DANGEROUS_WRITE_DIRS = ("/etc", "/var", "/usr", "/bin", "/sbin", "/System")


def validate_config(config: SafeShellConfig) -> ConfigValidation:
    """Check a config for dangerous or contradictory settings."""
    result = ConfigValidation()
    perms = config.permissions

    if not config.project_dir:
        result.warnings.append(
            "projectDir: not set - file permissions will be limited to /tmp and explicit paths"
        )

    if "/" in perms.read:
        result.warnings.append(
            "permissions.read: ['/'] allows reading entire filesystem - consider limiting to specific directories"
        )
    for d in SENSITIVE_READ_DIRS:
        if d in perms.read:
            result.warnings.append(f"permissions.read: includes '{d}' which may contain sensitive files")

    if "/" in perms.write:
        result.errors.append("permissions.write: ['/'] is extremely dangerous - never allow root write access")
    for d in DANGEROUS_WRITE_DIRS:
        if d in perms.write:
            result.errors.append(f"permissions.write: includes '{d}' - this can compromise system security")

    if "*" in perms.run:
        result.errors.append("permissions.run: ['*'] is not allowed - must explicitly list allowed commands")

    if perms.net is True:
        result.warnings.append(
            "permissions.net: true allows unrestricted network access - consider specifying allowed hosts"
        )

    if len(perms.run) > 20:
        result.warnings.append(f"permissions.run: {len(perms.run)} commands allowed - this might be too permissive")

    for name, cmd in config.external.items():
        required = cmd.require_flags or []
        for flag in required:
            if flag in cmd.deny_flags:
                result.errors.append(f"external.{name}: flag '{flag}' is both denied and required")
        if cmd.allow is True and not cmd.deny_flags and not required and cmd.path_args is None:
            result.warnings.append(
                f"external.{name}: has no restrictions - consider adding flag controls or path validation"
            )

    imports = config.imports
    if not imports.blocked:
        result.warnings.append(
            "imports.blocked: empty - highly recommend blocking 'npm:*', 'http:*', 'https:*' for security"
        )
    for pattern in imports.blocked:
        if pattern in imports.trusted:
            result.errors.append(f"imports: pattern '{pattern}' is both trusted and blocked")
        if pattern in imports.allowed:
            result.errors.append(f"imports: pattern '{pattern}' is both allowed and blocked")

    return result
