"""Tests for the helper-process registrar line protocol."""

import io
import time
from typing import List

from extinstaller.installation.services.registrar import (
    FINISHED_AFTER_REBOOT,
    HelperProcessRegistrar,
    REPLACE,
    RegistrarCallbacks,
)


class StubProcess:
    def __init__(self, lines: List[str], returncode: int = 0, stderr: str = ""):
        self.stdout = iter(lines)
        self.stdin = io.StringIO()
        self.stderr = io.StringIO(stderr)
        self.returncode = returncode
        self.pid = 4242

    def wait(self):
        return self.returncode

    def poll(self):
        return self.returncode


class Recorder:
    def __init__(self):
        self.events = []

    def callbacks(self) -> RegistrarCallbacks:
        return RegistrarCallbacks(
            on_needs_approval=lambda: self.events.append(("needs_approval",)),
            on_finished=lambda result: self.events.append(("finished", result)),
            on_failed=lambda code, detail: self.events.append(("failed", code, detail)),
            on_replacement=lambda old, new: self.events.append(("replace", old, new)) or REPLACE,
        )


def _pump(lines, **kw):
    rec = Recorder()
    proc = StubProcess(lines, **kw)
    HelperProcessRegistrar(["helper"])._pump("r" * 32, proc, rec.callbacks())
    return rec.events, proc


def test_approval_then_finished():
    events, _ = _pump(["needs-approval\n", "finished completed\n"])
    assert events == [("needs_approval",), ("finished", "completed")]


def test_deferred_result():
    events, _ = _pump([f"finished {FINISHED_AFTER_REBOOT}\n"])
    assert events == [("finished", FINISHED_AFTER_REBOOT)]


def test_replace_is_answered_on_stdin():
    events, proc = _pump(["replace 1.1.0 1.2.0\n", "finished completed\n"])
    assert events[0] == ("replace", "1.1.0", "1.2.0")
    assert proc.stdin.getvalue() == "replace\n"


def test_failed_line_carries_code_and_detail():
    events, _ = _pump(["failed 8 code signature invalid\n"])
    assert events == [("failed", 8, "code signature invalid")]


def test_unknown_lines_ignored():
    events, _ = _pump(["hello\n", "\n", "finished completed\n"])
    assert events == [("finished", "completed")]


def test_exit_without_result_reports_failure():
    events, _ = _pump(["needs-approval\n"], returncode=3, stderr="crashed")
    assert events[-1] == ("failed", 1, "crashed")


def test_terminated_helper_reports_canceled():
    events, _ = _pump([], returncode=-15)
    assert events == [("failed", 11, "registrar helper was terminated")]


def test_missing_helper_reports_failure_asynchronously():
    rec = Recorder()
    registrar = HelperProcessRegistrar(["/nonexistent/extinstaller-helper"])
    request_id = registrar.submit_activation("com.example.ext", "/tmp/Ext.systemextension", rec.callbacks())
    assert request_id
    deadline = time.monotonic() + 2.0
    while not rec.events and time.monotonic() < deadline:
        time.sleep(0.01)
    assert rec.events and rec.events[0][0] == "failed"
