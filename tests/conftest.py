"""Shared fixtures for the extinstaller test suite."""

import json
import plistlib
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from extinstaller.config import InstallerConfig
from extinstaller.installation.services.commands import CommandResult, CommandRunner
from extinstaller.installation.services.registrar import (
    RegistrarCallbacks,
    RegistrarClient,
)

IDENTIFIER = "com.example.ext"
FORMULA = "usbipd-mac"
LABEL = "homebrew.mxcl.usbipd-mac"
PLIST = "/Library/LaunchDaemons/homebrew.mxcl.usbipd-mac.plist"
CTL = "/usr/bin/systemextensionsctl"

LAUNCHCTL_LIST = ("launchctl", "list")
BREW_LIST = ("brew", "services", "list")
PS = ("ps", "-ax", "-o", "pid=,command=")
LSOF_PORT = ("lsof", "-nP", "-iTCP:3240", "-sTCP:ESTABLISHED")
CTL_LIST = (CTL, "list")
CTL_DEVELOPER = (CTL, "developer")


def lsof_pid(pid: int) -> Tuple[str, ...]:
    return ("lsof", "-nP", "-a", "-p", str(pid), "-iTCP", "-sTCP:ESTABLISHED")


# ---------------------------------------------------------------------------
# Scripted command runner
# ---------------------------------------------------------------------------
class FakeRunner(CommandRunner):
    """
    CommandRunner that answers from a script instead of spawning processes.

    Each argv maps to a queue of results; the last result repeats. Unscripted
    commands fail as if the executable were missing.
    """

    def __init__(self):
        super().__init__(timeout=0.1)
        self.responses: Dict[Tuple[str, ...], List[CommandResult]] = {}
        self.calls: List[Tuple[str, ...]] = []
        self._lock = threading.Lock()

    def respond(
        self,
        argv: Sequence[str],
        stdout: str = "",
        *,
        exit_code: int = 0,
        stderr: str = "",
        timed_out: bool = False,
        then: bool = False,
    ) -> None:
        key = tuple(argv)
        result = CommandResult(
            argv=key, exit_code=exit_code, stdout=stdout, stderr=stderr, timed_out=timed_out
        )
        with self._lock:
            if then:
                self.responses.setdefault(key, []).append(result)
            else:
                self.responses[key] = [result]

    def run(self, argv, *, timeout=None, cwd=None) -> CommandResult:
        key = tuple(str(a) for a in argv)
        with self._lock:
            self.calls.append(key)
            queue = self.responses.get(key)
            if not queue:
                return CommandResult(argv=key, exit_code=-1, error="not scripted")
            if len(queue) > 1:
                return queue.pop(0)
            return queue[0]

    def called(self, argv: Sequence[str]) -> int:
        return self.calls.count(tuple(argv))


# ---------------------------------------------------------------------------
# Scripted registrar
# ---------------------------------------------------------------------------
class FakeRegistrar(RegistrarClient):
    """
    Replays a script of callback events for each submission.

    Events: ("needs_approval",), ("replace", old, new), ("finished", result),
    ("failed", code, detail). With threaded=True the events are delivered on
    a background thread; with an empty script nothing is ever delivered.
    With ack_cancel=True a cancel is answered with the registrar's
    requestCanceled failure (code 11), as the helper process does.
    """

    def __init__(self, script: Optional[List[tuple]] = None, *, threaded: bool = False, ack_cancel: bool = False):
        self.script = list(script or [])
        self.threaded = threaded
        self.ack_cancel = ack_cancel
        self.submissions: List[Tuple[str, str, Optional[str]]] = []
        self.cancelled: List[str] = []
        self.replacement_answers: List[str] = []
        self.after_finish: Optional[Callable[[], None]] = None
        self.threads: List[threading.Thread] = []
        self._callbacks: Dict[str, RegistrarCallbacks] = {}

    def submit_activation(self, identifier, bundle_path, callbacks: RegistrarCallbacks) -> str:
        request_id = f"req-{len(self.submissions) + 1}"
        self.submissions.append(("activate", identifier, bundle_path))
        self._callbacks[request_id] = callbacks
        self._deliver(callbacks)
        return request_id

    def submit_deactivation(self, identifier, callbacks: RegistrarCallbacks) -> str:
        request_id = f"req-{len(self.submissions) + 1}"
        self.submissions.append(("deactivate", identifier, None))
        self._callbacks[request_id] = callbacks
        self._deliver(callbacks)
        return request_id

    def cancel(self, request_id: str) -> None:
        self.cancelled.append(request_id)
        if self.ack_cancel and request_id in self._callbacks:
            self._callbacks[request_id].on_failed(11, "request canceled")

    def _deliver(self, callbacks: RegistrarCallbacks) -> None:
        if self.threaded:
            t = threading.Thread(target=self._replay, args=(callbacks,), daemon=True)
            self.threads.append(t)
            t.start()
        else:
            self._replay(callbacks)

    def _replay(self, callbacks: RegistrarCallbacks) -> None:
        for event in self.script:
            name = event[0]
            if name == "needs_approval":
                callbacks.on_needs_approval()
            elif name == "replace":
                self.replacement_answers.append(callbacks.on_replacement(event[1], event[2]))
            elif name == "finished":
                if self.after_finish is not None:
                    self.after_finish()
                callbacks.on_finished(event[1])
            elif name == "failed":
                callbacks.on_failed(event[1], event[2])


# ---------------------------------------------------------------------------
# Bundle trees
# ---------------------------------------------------------------------------
def make_bundle(
    parent: Path,
    name: str = "Ext.systemextension",
    *,
    identifier: Optional[str] = IDENTIFIER,
    executable: str = "Ext",
    version: str = "1.2.0",
    build: str = "42",
    with_executable: bool = True,
    provenance: Optional[dict] = None,
    manifest: Optional[bytes] = None,
) -> Path:
    bundle = parent / name
    contents = bundle / "Contents"
    (contents / "MacOS").mkdir(parents=True, exist_ok=True)

    if manifest is not None:
        (contents / "Info.plist").write_bytes(manifest)
    else:
        info = {
            "CFBundleExecutable": executable,
            "CFBundleShortVersionString": version,
            "CFBundleVersion": build,
        }
        if identifier is not None:
            info["CFBundleIdentifier"] = identifier
        with (contents / "Info.plist").open("wb") as f:
            plistlib.dump(info, f)

    if with_executable:
        (contents / "MacOS" / executable).write_bytes(b"\xcf\xfa\xed\xfe")
    if provenance is not None:
        (contents / "HomebrewMetadata.json").write_text(json.dumps(provenance))
    return bundle


def registry_listing(*rows: Tuple[str, str, str, str, str]) -> str:
    """rows: (enabled, active, version/build, name, state)"""
    lines = [f"{len(rows)} extension(s)"]
    if rows:
        lines.append("--- com.apple.system_extension.driver_extension")
        lines.append("enabled\tactive\tteamID\tbundleID (version)\tname\t[state]")
    for enabled, active, version, name, state in rows:
        lines.append(f"{enabled}\t{active}\tABCDE12345\t{IDENTIFIER} ({version})\t{name}\t[{state}]")
    return "\n".join(lines) + "\n"


ACTIVE_LISTING = registry_listing(("*", "*", "1.2.0/42", "Ext", "activated enabled"))
EMPTY_LISTING = "0 extension(s)\n"


@pytest.fixture
def config(tmp_path) -> InstallerConfig:
    return InstallerConfig(
        bundle_identifier=IDENTIFIER,
        project_root=str(tmp_path / "project"),
        build_roots=[".build/debug", ".build/release"],
        package_root=str(tmp_path / "Cellar" / FORMULA),
        manual_bundle_path=None,
        activation_timeout=2.0,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def production_bundle(config) -> Path:
    """A package-managed install at <package_root>/1.2.0/Library/SystemExtensions."""
    ext_dir = Path(config.package_root) / "1.2.0" / "Library" / "SystemExtensions"
    ext_dir.mkdir(parents=True)
    return make_bundle(
        ext_dir,
        provenance={"version": "1.2.0", "installationPrefix": "/opt/homebrew"},
    )


@pytest.fixture
def healthy_service(runner):
    """Script launchd, brew services, ps and lsof for a supervised running daemon."""

    def script(pid: int = 321) -> None:
        runner.respond(LAUNCHCTL_LIST, f"PID\tStatus\tLabel\n{pid}\t0\t{LABEL}\n-\t0\tcom.apple.other\n")
        runner.respond(BREW_LIST, f"Name       Status  User File\n{FORMULA} started root {PLIST}\n")
        runner.respond(PS, f"    1 /sbin/launchd\n  {pid} /opt/homebrew/opt/usbipd-mac/bin/usbipd daemon\n")
        runner.respond(LSOF_PORT, "", exit_code=1)

    return script
