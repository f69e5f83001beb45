"""Tests for violation detection, menus and escalation."""

import json
from pathlib import Path

import pytest

from safeshell.exec.errors import PathViolationError, PipelineFailureError, SafeShellError, SymlinkViolationError
from safeshell.exec.markers import VIOLATION_MARKER
from safeshell.exec.pending import read_pending
from safeshell.exec.types import ExecResult
from safeshell.exec.violations import (
    ErrorHandler,
    detect_violation,
    escalate_result,
    escalate_violation_event,
    extract_path,
    format_command_menu,
    format_path_menu,
    generate_inline_handler,
    handle_command_block,
    handle_violation,
    is_command_failure,
    log_execution_error,
)


def pending_files(root: Path, prefix: str) -> list[Path]:
    return sorted((root / "safesh").glob(f"{prefix}-*.json"))


def pending_id(path: Path, prefix: str) -> str:
    return path.name[len(prefix) + 1:-len(".json")]


# ── Detection ───────────────────────────────────────────────────────


class TestDetectViolation:
    def test_symlink_mapping_reports_real_path(self):
        info = detect_violation({
            "code": "SYMLINK_VIOLATION",
            "message": "Symlink '/a' points to '/b' which is outside allowed directories",
        })
        assert info.is_violation is True
        assert info.path == "/b"
        assert info.operation == "read"

    def test_runtime_write_denial(self):
        info = detect_violation('NotCapable: Requires write access to "/etc/hosts", run again with --allow-write')
        assert info.is_violation is True
        assert info.path == "/etc/hosts"
        assert info.operation == "write"

    def test_internal_exception(self):
        info = detect_violation(PathViolationError("/secret/file"))
        assert info.is_violation is True
        assert info.path == "/secret/file"
        assert info.error_code == "PATH_VIOLATION"

    def test_symlink_exception(self):
        info = detect_violation(SymlinkViolationError("/a/link", "/real/target"))
        assert info.path == "/real/target"

    def test_not_capable_by_name(self):
        info = detect_violation({"name": "NotCapable", "message": "denied"})
        assert info.is_violation is True
        assert info.path == "unknown"

    def test_os_permission_error(self):
        info = detect_violation(PermissionError(13, "Permission denied", "/root/x"))
        assert info.is_violation is True
        assert info.path == "/root/x"

    def test_ordinary_error(self):
        info = detect_violation(ValueError("bad input"))
        assert info.is_violation is False
        assert info.error_message == "bad input"

    def test_extract_path_unknown(self):
        assert extract_path("nothing here") == "unknown"

    def test_command_failure(self):
        assert is_command_failure(PipelineFailureError("grep x", 1).message)
        assert not is_command_failure("boom")


# ── Menus ───────────────────────────────────────────────────────────


class TestMenus:
    def test_path_menu(self):
        menu = format_path_menu("/etc/hosts", "123-4-abcd")
        assert menu.startswith("[SAFESH] PATH BLOCKED: /etc/hosts\n")
        assert "Entire directory /etc/ (add 'd'):" in menu
        assert menu.endswith("desh retry-path --id=123-4-abcd --choice=<user's choice>")

    def test_command_menu(self):
        menu = format_command_menu(["curl", "wget"], "9-9-ffff")
        assert menu.startswith("[SAFESH] BLOCKED: curl, wget\n")
        assert "2. Always allow\n3. Allow for session" in menu
        assert menu.endswith("desh retry --id=9-9-ffff --choice=<user's choice>")


# ── Escalation ──────────────────────────────────────────────────────


class TestEscalation:
    def test_handle_violation_creates_pending_and_exits(self, isolated_env: Path, capsys: pytest.CaptureFixture):
        with pytest.raises(SystemExit) as exc:
            handle_violation('Requires write access to "/etc/hosts"', script_hash="abc", cwd="/work")
        assert exc.value.code == 1

        files = pending_files(isolated_env, "pending-path")
        assert len(files) == 1
        pending = read_pending(pending_id(files[0], "pending-path"), "path")
        assert pending.path == "/etc/hosts"
        assert pending.operation == "write"
        assert pending.script_hash == "abc"
        assert "PATH BLOCKED: /etc/hosts" in capsys.readouterr().err

    def test_handle_violation_rejects_non_violation(self, isolated_env: Path, capsys: pytest.CaptureFixture):
        with pytest.raises(SystemExit):
            handle_violation("just broken")
        assert "Error detecting path violation" in capsys.readouterr().err
        assert pending_files(isolated_env, "pending-path") == []

    def test_handle_command_block(self, isolated_env: Path):
        with pytest.raises(SystemExit):
            handle_command_block(["curl"], "abc", "/work", timeout=5000)
        files = pending_files(isolated_env, "pending")
        assert len(files) == 1
        data = json.loads(files[0].read_text())
        assert data["commands"] == ["curl"]
        assert data["timeout"] == 5000

    def test_event_is_reclassified(self, isolated_env: Path):
        assert escalate_violation_event({"message": "not a violation", "path": "/etc/shadow"}, "abc", "/w") is None
        assert pending_files(isolated_env, "pending-path") == []

    def test_escalate_result_violation(self, isolated_env: Path):
        result = ExecResult(
            success=False,
            exit_code=1,
            script_hash="abc",
            violation={"code": "PATH_VIOLATION", "message": "Path '/data/x' is outside allowed directories"},
        )
        assert escalate_result(result, "/work") is True
        pending = read_pending(pending_id(pending_files(isolated_env, "pending-path")[0], "pending-path"), "path")
        assert pending.path == "/data/x"

    def test_escalate_result_commands(self, isolated_env: Path):
        result = ExecResult(
            success=False,
            exit_code=1,
            script_hash="abc",
            blocked_command="curl",
            blocked_commands=["wget"],
            not_found_commands=["./missing"],
        )
        assert escalate_result(result, "/work", 3000) is True
        data = json.loads(pending_files(isolated_env, "pending")[0].read_text())
        assert data["commands"] == ["curl", "wget", "./missing"]
        assert data["timeout"] == 3000

    def test_unclassified_event_falls_back_to_commands(self, isolated_env: Path):
        result = ExecResult(
            success=False,
            exit_code=1,
            script_hash="abc",
            blocked_command="curl",
            violation={"type": "weird"},
        )
        assert escalate_result(result, "/work") is True
        assert pending_files(isolated_env, "pending-path") == []
        files = pending_files(isolated_env, "pending")
        assert len(files) == 1
        assert json.loads(files[0].read_text())["commands"] == ["curl"]

    def test_symlink_event_uses_real_path(self, isolated_env: Path):
        event = {
            "code": "SYMLINK_VIOLATION",
            "name": "Error",
            "message": "Symlink '/work/link' points to '/srv/data' which is outside allowed directories",
            "path": "/srv/data",
            "operation": "read",
        }
        pending = escalate_violation_event(event, "abc", "/work")
        assert pending.path == "/srv/data"
        assert read_pending(pending.id, "path").path == "/srv/data"

    def test_escalate_result_from_stderr(self, isolated_env: Path):
        result = ExecResult(success=False, exit_code=1, script_hash="abc",
                            stderr='error: Requires read access to "/var/log/syslog"\n')
        assert escalate_result(result, "/work") is True

    def test_nothing_to_escalate(self, isolated_env: Path):
        assert escalate_result(ExecResult(success=True, exit_code=0), "/work") is False
        assert escalate_result(ExecResult(success=False, exit_code=2, stderr="oops"), "/work") is False
        assert list((isolated_env / "safesh").glob("pending*.json")) == []


# ── Error handler ───────────────────────────────────────────────────


class TestErrorHandler:
    def test_logs_engine_errors(self, tmp_path: Path, capsys: pytest.CaptureFixture):
        log_path = tmp_path / "errors" / "run.log"
        handler = ErrorHandler("Bash Error", log_path, original_command="ls -la", transpiled_code="ls()")
        with pytest.raises(SystemExit) as exc:
            handler.handle(SafeShellError("engine broke"))
        assert exc.value.code == 1

        log = log_path.read_text()
        assert log.startswith("=== Execution Error ===\nOriginal Command:\nls -la")
        assert "Transpiled TypeScript:\nls()" in log
        assert "Error: engine broke" in log

        err = capsys.readouterr().err
        assert "=== Bash Error ===" in err
        assert "Command: ls -la" in err
        assert f"Full details saved to: {log_path}" in err

    def test_command_failure_not_logged(self, tmp_path: Path):
        log_path = tmp_path / "run.log"
        with pytest.raises(SystemExit):
            ErrorHandler("Bash Error", log_path).handle(PipelineFailureError("grep x", 1))
        assert not log_path.exists()

    def test_violation_escalates(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SAFESH_SCRIPT_HASH", "fromenv")
        log_path = isolated_env / "run.log"
        with pytest.raises(SystemExit):
            ErrorHandler("Bash Error", log_path).handle(PathViolationError("/secret"))
        assert not log_path.exists()
        files = pending_files(isolated_env, "pending-path")
        assert read_pending(pending_id(files[0], "pending-path"), "path").script_hash == "fromenv"

    def test_log_execution_error(self, isolated_env: Path):
        path = log_execution_error(ValueError("bad"), "console.log(1)")
        assert path.parent == isolated_env / "safesh" / "errors"
        assert "Code:\nconsole.log(1)" in path.read_text()


class TestInlineHandler:
    def test_contains_classification(self):
        js = generate_inline_handler("Bash Error")
        assert VIOLATION_MARKER in js
        assert '"SYMLINK_VIOLATION"' in js
        assert '"=== Bash Error ==="' in js
        assert "unhandledrejection" in js

    def test_without_listeners(self):
        js = generate_inline_handler(include_listeners=False)
        assert "addEventListener" not in js
        assert js.startswith("const __handleError")
