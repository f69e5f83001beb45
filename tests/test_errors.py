"""Tests for the error taxonomy."""

from safeshell.exec.errors import (
    CommandNotAllowedError,
    CommandNotFoundError,
    ExecTimeoutError,
    ImportBlockedError,
    NetworkBlockedError,
    PathViolationError,
    PipelineFailureError,
    SafeShellError,
    SandboxDeniedError,
)
from safeshell.exec.violations import detect_violation


class TestMessages:
    def test_command_not_allowed(self):
        error = CommandNotAllowedError("curl")
        assert error.message == "Command 'curl' is not allowed"
        assert "permissions.run" in error.suggestion

    def test_command_not_found(self):
        assert CommandNotFoundError("./x.sh").message == (
            "Command not found: './x.sh' - not found in CWD or projectDir"
        )

    def test_path_violation_with_real_path(self):
        error = PathViolationError("/a/link", "/b/target")
        assert error.message == "Path '/a/link' resolves to '/b/target' which is outside allowed directories"
        assert error.real_path == "/b/target"

    def test_timeout(self):
        error = ExecTimeoutError(1500, "script.ts")
        assert error.message == "Execution timed out after 1500ms for 'script.ts'"
        assert error.timeout_ms == 1500

    def test_network_blocked(self):
        error = NetworkBlockedError("api.example.com")
        assert error.host == "api.example.com"
        assert "permissions.net" in error.suggestion

    def test_pipeline_failure_is_not_a_violation(self):
        error = PipelineFailureError("grep x", 1)
        assert error.exit_code == 1
        assert detect_violation(error).is_violation is False

    def test_sandbox_denial_is_a_violation(self):
        info = detect_violation(SandboxDeniedError('Requires read access to "/etc/shadow"'))
        assert info.is_violation is True
        assert info.path == "/etc/shadow"
        assert info.error_code == "NotCapable"

    def test_all_are_safeshell_errors(self):
        assert isinstance(ImportBlockedError("npm:x", ["npm:*"], []), SafeShellError)


class TestToDict:
    def test_full(self):
        data = CommandNotAllowedError("curl").to_dict()
        assert data == {
            "code": "COMMAND_NOT_ALLOWED",
            "message": "Command 'curl' is not allowed",
            "details": {"command": "curl"},
            "suggestion": "Add 'curl' to permissions.run in your config",
        }

    def test_minimal(self):
        assert SafeShellError("boom").to_dict() == {"code": "SAFESHELL_ERROR", "message": "boom"}
