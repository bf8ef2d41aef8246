"""Tests for CommandResult / CommandRunner."""

from extinstaller.installation.services.commands import CommandResult, CommandRunner


class TestCommandResult:
    def test_ok_requires_zero_exit(self):
        assert CommandResult(argv=("true",), exit_code=0).ok
        assert not CommandResult(argv=("false",), exit_code=1).ok
        assert not CommandResult(argv=("x",), exit_code=0, timed_out=True).ok

    def test_permission_denied_markers(self):
        r = CommandResult(argv=("launchctl", "load"), exit_code=1, stderr="Load failed: 5: Input/output error\nOperation not permitted")
        assert r.permission_denied
        assert not CommandResult(argv=("ps",), exit_code=1, stderr="bad flag").permission_denied

    def test_describe(self):
        assert "timed out" in CommandResult(argv=("brew", "services", "list"), exit_code=-1, timed_out=True).describe()
        assert "exited 2: nope" in CommandResult(argv=("x",), exit_code=2, stderr="nope\n").describe()


def test_missing_executable_does_not_raise():
    result = CommandRunner(timeout=1.0).run(["/nonexistent/extinstaller-test-binary"])
    assert not result.ok
    assert result.error
