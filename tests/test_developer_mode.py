"""Tests for developer mode detection."""

import pytest

from extinstaller.installation.services.developer_mode import DeveloperModeDetector, parse_developer_mode

from conftest import CTL_DEVELOPER


@pytest.mark.parametrize(
    "output,expected",
    [
        ("System extension developer mode: enabled\n", True),
        ("System extension developer mode: disabled\n", False),
        ("Developer mode is off", False),
        ("something else entirely", None),
    ],
)
def test_parse(output, expected):
    assert parse_developer_mode(output) is expected


def test_detect_enabled(runner):
    runner.respond(CTL_DEVELOPER, "System extension developer mode: enabled\n")
    status = DeveloperModeDetector(runner).detect()
    assert status.enabled is True
    assert status.error is None


def test_detect_command_failure_is_unknown(runner):
    runner.respond(CTL_DEVELOPER, "", exit_code=1, stderr="At this time, this tool cannot be used if System Integrity Protection is enabled.")
    status = DeveloperModeDetector(runner).detect()
    assert status.enabled is None
    assert "exited 1" in status.error
