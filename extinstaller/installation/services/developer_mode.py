from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel

from .commands import CommandRunner

logger = logging.getLogger("extinstaller.developer_mode")

_ENABLED_MARKERS = ("developer mode: enabled", "developer mode enabled", "developer mode is on")
_DISABLED_MARKERS = ("developer mode: disabled", "developer mode disabled", "developer mode is off")


class DeveloperModeStatus(BaseModel):
    enabled: Optional[bool] = None  # None = could not be determined
    raw_output: str = ""
    error: Optional[str] = None


def parse_developer_mode(output: str) -> Optional[bool]:
    text = output.lower()
    if any(m in text for m in _DISABLED_MARKERS):
        return False
    if any(m in text for m in _ENABLED_MARKERS):
        return True
    return None


class DeveloperModeDetector:
    """Reads the registrar's developer-mode toggle via `systemextensionsctl developer`."""

    def __init__(self, runner: Optional[CommandRunner] = None, ctl_path: str = "/usr/bin/systemextensionsctl"):
        self.runner = runner or CommandRunner()
        self.ctl_path = ctl_path

    def detect(self) -> DeveloperModeStatus:
        result = self.runner.run([self.ctl_path, "developer"])
        if not result.ok:
            logger.warning("Developer mode status unknown: %s", result.describe())
            return DeveloperModeStatus(enabled=None, raw_output=result.stdout, error=result.describe())

        enabled = parse_developer_mode(result.stdout + "\n" + result.stderr)
        if enabled is None:
            logger.warning("Could not parse developer mode status from %r", result.stdout[:200])
        return DeveloperModeStatus(enabled=enabled, raw_output=result.stdout)
