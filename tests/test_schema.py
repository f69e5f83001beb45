"""Tests for configuration schema, merging and validation."""

from pathlib import Path

import pytest

from safeshell.config.schema import (
    ExternalCommandConfig,
    ImportPolicy,
    PermissionsConfig,
    SafeShellConfig,
    default_config,
    expand_path,
    merge_configs,
    validate_config,
)


class TestConfig:
    def test_defaults(self):
        config = SafeShellConfig()
        assert config.timeout_seconds == 30.0
        assert config.permissions.read == []
        assert config.permissions.net == []
        assert config.allow_project_commands is False
        assert config.block_project_dir_write is False
        assert config.runtime == "deno"

    def test_project_path_expansion(self):
        config = SafeShellConfig(project_dir="~/work")
        path = config.project_path
        assert isinstance(path, Path)
        assert "~" not in str(path)

    def test_project_path_unset(self):
        assert SafeShellConfig().project_path is None

    def test_default_config_baseline(self):
        config = default_config()
        assert "git" in config.permissions.run
        assert "/tmp" in config.permissions.write
        assert "${HOME}/.ssh" in config.permissions.deny_read
        assert "${HOME}/.bashrc" in config.permissions.deny_write
        assert "npm:*" in config.imports.blocked
        assert "*_TOKEN" in config.env.mask


# ── Path expansion ──────────────────────────────────────────────────


class TestExpandPath:
    def test_cwd(self):
        assert expand_path("${CWD}/src", "/work") == "/work/src"

    def test_bare_variable(self):
        assert expand_path("$CWD/src", "/work") == "/work/src"

    def test_home(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("HOME", "/home/alice")
        assert expand_path("${HOME}/.claude", "/work") == "/home/alice/.claude"

    def test_workspace(self):
        assert expand_path("${WORKSPACE}/out", "/work", "/ws") == "/ws/out"

    def test_plain_path_unchanged(self):
        assert expand_path("/etc/hosts", "/work") == "/etc/hosts"

    def test_similar_name_not_expanded(self):
        assert expand_path("$CWDX", "/work") == "$CWDX"


# ── Merging ─────────────────────────────────────────────────────────


class TestMergeConfigs:
    def test_read_is_union(self):
        base = SafeShellConfig(permissions=PermissionsConfig(read=["/tmp"]))
        override = SafeShellConfig(permissions=PermissionsConfig(read=["/tmp", "/var"]))
        merged = merge_configs(base, override)
        assert set(merged.permissions.read) == {"/tmp", "/var"}
        assert len(merged.permissions.read) == 2

    def test_net_true_dominates_list(self):
        unrestricted = SafeShellConfig(permissions=PermissionsConfig(net=True))
        hosts = SafeShellConfig(permissions=PermissionsConfig(net=["a.com"]))
        assert merge_configs(unrestricted, hosts).permissions.net is True
        assert merge_configs(hosts, unrestricted).permissions.net is True

    def test_net_lists_union(self):
        a = SafeShellConfig(permissions=PermissionsConfig(net=["a.com"]))
        b = SafeShellConfig(permissions=PermissionsConfig(net=["b.com", "a.com"]))
        assert merge_configs(a, b).permissions.net == ["a.com", "b.com"]

    def test_scalar_override_when_set(self):
        base = SafeShellConfig(timeout_seconds=10, project_dir="/a")
        override = SafeShellConfig(timeout_seconds=60, block_project_dir_write=True)
        merged = merge_configs(base, override)
        assert merged.timeout_seconds == 60
        assert merged.block_project_dir_write is True
        assert merged.project_dir == "/a"

    def test_scalar_kept_when_unset(self):
        base = SafeShellConfig(timeout_seconds=10)
        merged = merge_configs(base, SafeShellConfig())
        assert merged.timeout_seconds == 10

    def test_external_per_command(self):
        base = SafeShellConfig(external={
            "git": ExternalCommandConfig(allow=["status", "log"], deny_flags=["--force"]),
        })
        override = SafeShellConfig(external={
            "git": ExternalCommandConfig(allow=["status"], deny_flags=["-f"]),
            "npm": ExternalCommandConfig(),
        })
        merged = merge_configs(base, override)
        assert merged.external["git"].allow == ["status"]
        assert merged.external["git"].deny_flags == ["--force", "-f"]
        assert "npm" in merged.external

    def test_inputs_not_mutated(self):
        base = SafeShellConfig(permissions=PermissionsConfig(read=["/a"]))
        override = SafeShellConfig(permissions=PermissionsConfig(read=["/b"]))
        merge_configs(base, override)
        assert base.permissions.read == ["/a"]
        assert override.permissions.read == ["/b"]


# ── Validation ──────────────────────────────────────────────────────


class TestValidateConfig:
    def test_default_config_has_no_errors(self):
        result = validate_config(default_config())
        assert result.errors == []

    def test_root_write_is_error(self):
        config = SafeShellConfig(permissions=PermissionsConfig(write=["/"]))
        result = validate_config(config)
        assert any("root write" in e for e in result.errors)

    def test_system_dir_write_is_error(self):
        config = SafeShellConfig(permissions=PermissionsConfig(write=["/etc"]))
        result = validate_config(config)
        assert any("'/etc'" in e for e in result.errors)

    def test_run_wildcard_is_error(self):
        config = SafeShellConfig(permissions=PermissionsConfig(run=["*"]))
        assert any("permissions.run" in e for e in validate_config(config).errors)

    def test_flag_conflict_is_error(self):
        config = SafeShellConfig(external={
            "git": ExternalCommandConfig(deny_flags=["--force"], require_flags=["--force"]),
        })
        assert any("both denied and required" in e for e in validate_config(config).errors)

    def test_import_conflict_is_error(self):
        config = SafeShellConfig(imports=ImportPolicy(trusted=["npm:*"], blocked=["npm:*"]))
        assert any("both trusted and blocked" in e for e in validate_config(config).errors)

    def test_warnings(self):
        config = SafeShellConfig(permissions=PermissionsConfig(read=["/"], net=True))
        warnings = validate_config(config).warnings
        assert any("entire filesystem" in w for w in warnings)
        assert any("unrestricted network" in w for w in warnings)
        assert any("imports.blocked" in w for w in warnings)
        assert any("projectDir" in w for w in warnings)

    def test_unrestricted_external_warns(self):
        config = SafeShellConfig(external={"curl": ExternalCommandConfig()})
        assert any("external.curl" in w for w in validate_config(config).warnings)
