from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger("extinstaller.commands")

DEFAULT_COMMAND_TIMEOUT = 5.0

PERMISSION_MARKERS = (
    "operation not permitted",
    "permission denied",
    "not privileged",
    "must be run as root",
    "requires root",
)


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of one external command.

    `ok` is True only for a zero exit. A non-zero exit, a timeout or a missing
    executable all mean the command's answer is unknown, not negative.
    """

    argv: tuple
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    @property
    def permission_denied(self) -> bool:
        text = f"{self.stderr}\n{self.stdout}".lower()
        return any(marker in text for marker in PERMISSION_MARKERS)

    def describe(self) -> str:
        cmd = " ".join(self.argv)
        if self.timed_out:
            return f"'{cmd}' timed out"
        if self.error:
            return f"'{cmd}' could not run: {self.error}"
        msg = (self.stderr or self.stdout).strip()
        return f"'{cmd}' exited {self.exit_code}" + (f": {msg[:200]}" if msg else "")


class CommandRunner:
    """Runs external commands with a fixed timeout. Never raises for command failures."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        limit = self.timeout if timeout is None else timeout
        args = tuple(str(a) for a in argv)
        logger.debug("Running %s (timeout=%.1fs)", " ".join(args), limit)

        try:
            cp = subprocess.run(
                list(args),
                cwd=str(cwd) if cwd else None,
                text=True,
                capture_output=True,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Command timed out after %.1fs: %s", limit, " ".join(args))
            return CommandResult(
                argv=args,
                exit_code=-1,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
                timed_out=True,
            )
        except OSError as e:
            logger.warning("Command could not be started: %s (%s)", " ".join(args), e)
            return CommandResult(argv=args, exit_code=-1, error=str(e))

        if cp.returncode != 0:
            logger.debug("Command %s exited %s: %s", args[0], cp.returncode, (cp.stderr or "").strip())
        return CommandResult(
            argv=args,
            exit_code=cp.returncode,
            stdout=cp.stdout or "",
            stderr=cp.stderr or "",
        )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
