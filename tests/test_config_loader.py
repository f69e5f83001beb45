"""Tests for configuration loading and key conversion."""

import json
from pathlib import Path

import pytest

from safeshell.config.loader import (
    camel_to_snake,
    convert_keys,
    convert_to_camel,
    load_config,
    load_session_config,
    save_config,
    snake_to_camel,
)
from safeshell.config.schema import PermissionsConfig, SafeShellConfig


# ── Key conversion ──────────────────────────────────────────────────


class TestCamelToSnake:
    def test_simple(self):
        assert camel_to_snake("denyRead") == "deny_read"

    def test_multiple_words(self):
        assert camel_to_snake("blockProjectDirWrite") == "block_project_dir_write"

    def test_single_word(self):
        assert camel_to_snake("permissions") == "permissions"

    def test_already_snake(self):
        assert camel_to_snake("deny_read") == "deny_read"

    def test_empty(self):
        assert camel_to_snake("") == ""


class TestSnakeToCamel:
    def test_simple(self):
        assert snake_to_camel("deny_write") == "denyWrite"

    def test_multiple_words(self):
        assert snake_to_camel("allow_project_commands") == "allowProjectCommands"

    def test_single_word(self):
        assert snake_to_camel("external") == "external"

    def test_empty(self):
        assert snake_to_camel("") == ""


class TestConvertKeys:
    def test_nested_dict(self):
        data = {"permissions": {"denyRead": ["/a"]}, "env": {"allowReadAll": False}}
        assert convert_keys(data) == {"permissions": {"deny_read": ["/a"]}, "env": {"allow_read_all": False}}

    def test_list_of_dicts(self):
        assert convert_keys({"items": [{"scriptHash": "x"}]}) == {"items": [{"script_hash": "x"}]}

    def test_non_dict(self):
        assert convert_keys("hello") == "hello"
        assert convert_keys(None) is None

    def test_roundtrip(self):
        original = {"projectDir": "/p", "blockProjectDirWrite": True, "denyFlags": []}
        assert convert_to_camel(convert_keys(original)) == original


# ── Config load/save ────────────────────────────────────────────────


class TestLoadConfig:
    def test_default_when_no_file(self, tmp_path: Path):
        config = load_config(tmp_path / "nonexistent.json")
        assert isinstance(config, SafeShellConfig)
        assert config.timeout_seconds == 30.0

    def test_load_camel_case_json(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "permissions": {"read": ["/data"], "denyWrite": ["/data/locked"], "net": True},
            "projectDir": "/work/project",
            "blockProjectDirWrite": True,
            "timeout": 5000,
        }))
        config = load_config(config_file)
        assert config.permissions.read == ["/data"]
        assert config.permissions.deny_write == ["/data/locked"]
        assert config.permissions.net is True
        assert config.project_dir == "/work/project"
        assert config.block_project_dir_write is True
        assert config.timeout_seconds == 5.0

    def test_external_command_names_preserved(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "external": {"myTool": {"allow": ["build"], "denyFlags": ["--rm"]}},
        }))
        config = load_config(config_file)
        assert "myTool" in config.external
        assert config.external["myTool"].deny_flags == ["--rm"]

    def test_invalid_json_returns_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("not json{{{")
        config = load_config(config_file)
        assert isinstance(config, SafeShellConfig)
        assert config.permissions.read == []

    def test_non_object_returns_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]")
        assert load_config(config_file).permissions.read == []

    def test_empty_file_returns_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("")
        assert isinstance(load_config(config_file), SafeShellConfig)


class TestSaveConfig:
    def test_save_creates_file(self, tmp_path: Path):
        config_file = tmp_path / "subdir" / "config.json"
        save_config(SafeShellConfig(), config_file)
        assert config_file.exists()

    def test_save_uses_camel_case(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        save_config(SafeShellConfig(), config_file)
        data = json.loads(config_file.read_text())
        assert "denyRead" in data["permissions"]
        assert "allowProjectCommands" in data
        assert data["timeout"] == 30000

    def test_roundtrip(self, tmp_path: Path):
        original = SafeShellConfig(
            permissions=PermissionsConfig(write=["/out"], net=["api.example.com"]),
            timeout_seconds=12.5,
        )
        config_file = tmp_path / "config.json"
        save_config(original, config_file)
        loaded = load_config(config_file)
        assert loaded.permissions.write == ["/out"]
        assert loaded.permissions.net == ["api.example.com"]
        assert loaded.timeout_seconds == 12.5


# ── Session config assembly ─────────────────────────────────────────


class TestLoadSessionConfig:
    def test_layers_project_and_grants(self, project_dir: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CLAUDE_SESSION_ID", "abc")
        safesh = project_dir / ".config" / "safesh"
        (safesh / "config.json").write_text(json.dumps({"permissions": {"read": ["/data"]}}))
        (safesh / "config.local.json").write_text(json.dumps({
            "allowedCommands": ["make"],
            "permissions": {"write": ["/srv/out"]},
        }))
        (safesh / "session-abc.json").write_text(json.dumps({"permissions": {"read": ["/session/only"]}}))

        config, root = load_session_config(project_dir)

        assert root == project_dir
        assert config.project_dir == str(project_dir)
        assert "/data" in config.permissions.read
        assert "/session/only" in config.permissions.read
        assert "/srv/out" in config.permissions.write
        assert "make" in config.permissions.run
        assert "git" in config.permissions.run

    def test_without_files_uses_defaults(self, tmp_path: Path):
        work = tmp_path / "work"
        work.mkdir()
        config, root = load_session_config(work)
        assert root == work.resolve()
        assert "/tmp" in config.permissions.write
