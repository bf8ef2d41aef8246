from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import List, Optional

from ...config import InstallerConfig
from ..domain.models import ResolvedConflict, ServiceIssue, ServiceStatus
from .commands import CommandResult, CommandRunner

logger = logging.getLogger("extinstaller.service")

SOURCE_LAUNCHD = "launchctl"
SOURCE_SUPERVISOR = "brew_services"
SOURCE_PROCESSES = "ps"


# -----------------------------
# Query output parsing
# -----------------------------

@dataclass(frozen=True)
class LaunchdEntry:
    label: str
    pid: Optional[int] = None
    last_exit: Optional[int] = None


@dataclass(frozen=True)
class SupervisorRecord:
    name: str
    status: str
    user: Optional[str] = None
    file: Optional[str] = None


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    command: str

    @property
    def executable(self) -> str:
        first = self.command.split(None, 1)[0] if self.command.strip() else ""
        return os.path.basename(first)


def _int_or_none(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_launchctl_list(output: str) -> List[LaunchdEntry]:
    """
    `launchctl list` prints `PID  Status  Label`; PID is "-" for loaded but
    not running jobs.
    """
    entries: List[LaunchdEntry] = []
    for line in output.splitlines():
        parts = line.split(None, 2)
        if len(parts) != 3 or parts[0] == "PID":
            continue
        entries.append(LaunchdEntry(
            label=parts[2].strip(),
            pid=_int_or_none(parts[0]),
            last_exit=_int_or_none(parts[1]),
        ))
    return entries


def parse_brew_services(output: str) -> List[SupervisorRecord]:
    """
    `brew services list` prints `Name  Status  User  File`. User and File are
    empty for services that were never started; an error status may carry
    the exit code as an extra column.
    """
    records: List[SupervisorRecord] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] == "Name":
            continue
        name, status, rest = parts[0], parts[1], parts[2:]
        if status == "error" and rest and rest[0].isdigit():
            rest = rest[1:]
        user = rest[0] if rest else None
        file = " ".join(rest[1:]) if len(rest) > 1 else None
        records.append(SupervisorRecord(name=name, status=status, user=user, file=file))
    return records


def parse_process_table(output: str) -> List[ProcessEntry]:
    """Parses `ps -ax -o pid=,command=`."""
    procs: List[ProcessEntry] = []
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        pid = _int_or_none(parts[0])
        if pid is None:
            continue
        procs.append(ProcessEntry(pid=pid, command=parts[1]))
    return procs


def count_lsof_connections(result: CommandResult) -> Optional[int]:
    """
    Number of ESTABLISHED connections in lsof output, or None when unknown.

    lsof exits 1 with no output when nothing matches; that is zero, not an error.
    """
    if result.timed_out or result.error is not None:
        return None
    if result.exit_code not in (0, 1):
        return None
    if result.exit_code == 1 and (result.stdout.strip() or result.stderr.strip()):
        return None
    lines = [l for l in result.stdout.splitlines() if l.strip() and not l.startswith("COMMAND")]
    return len(lines)


# -----------------------------
# Coordinator
# -----------------------------

class ServiceLifecycleCoordinator:
    """
    Reconciles the daemon's process registration (launchd) with the external
    supervisor (brew services) and the live process table.

    Sources that fail or time out are reported as unknown; cross-checks that
    depend on an unknown source are skipped rather than guessed.
    """

    def __init__(self, config: Optional[InstallerConfig] = None, *, runner: Optional[CommandRunner] = None):
        self.config = config or InstallerConfig()
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)

    # ----------------------------
    # Reconciliation
    # ----------------------------

    def reconcile(self, *, deadline: Optional[float] = None) -> ServiceStatus:
        """
        Snapshot the daemon's registration, supervision and process state.

        `deadline` is a `time.monotonic()` value; queries are shortened to fit it
        and any query that would start after it is reported as unknown.
        """
        cfg = self.config
        unknown: List[str] = []
        permission_denied = False

        launchd = self._query(["launchctl", "list"], deadline)
        label_entry: Optional[LaunchdEntry] = None
        if launchd.ok:
            label_entry = next(
                (e for e in parse_launchctl_list(launchd.stdout) if e.label == cfg.service_label), None
            )
        else:
            unknown.append(SOURCE_LAUNCHD)
            permission_denied = permission_denied or launchd.permission_denied
            logger.warning("Process registration query failed: %s", launchd.describe())

        services = self._query(["brew", "services", "list"], deadline)
        record: Optional[SupervisorRecord] = None
        if services.ok:
            record = next(
                (r for r in parse_brew_services(services.stdout) if r.name == cfg.formula_name), None
            )
        else:
            unknown.append(SOURCE_SUPERVISOR)
            permission_denied = permission_denied or services.permission_denied
            logger.warning("Supervisor status query failed: %s", services.describe())

        ps = self._query(["ps", "-ax", "-o", "pid=,command="], deadline)
        daemons: List[ProcessEntry] = []
        if ps.ok:
            daemons = [p for p in parse_process_table(ps.stdout) if p.executable == cfg.daemon_process_name]
        else:
            unknown.append(SOURCE_PROCESSES)
            permission_denied = permission_denied or ps.permission_denied
            logger.warning("Process table query failed: %s", ps.describe())

        supervisor_registered = record is not None and record.status not in ("none", "")
        independently_managed = label_entry is not None

        pid: Optional[int] = None
        if label_entry is not None and label_entry.pid is not None:
            if ps.ok and label_entry.pid not in {p.pid for p in daemons}:
                pid = None
            else:
                pid = label_entry.pid
        if pid is None and daemons:
            pid = daemons[0].pid

        issues: List[ServiceIssue] = []

        def add(issue: ServiceIssue) -> None:
            if issue not in issues:
                issues.append(issue)

        launchd_known = SOURCE_LAUNCHD not in unknown
        supervisor_known = SOURCE_SUPERVISOR not in unknown

        if launchd_known and supervisor_known:
            if record is not None and record.status == "started" and label_entry is None:
                add(ServiceIssue(kind="registration_mismatch"))
            if label_entry is not None and not supervisor_registered:
                add(ServiceIssue(kind="supervisor_disconnected"))

        if launchd_known and ps.ok:
            registered_pid = label_entry.pid if label_entry is not None else None
            for proc in daemons:
                if label_entry is None or (registered_pid is not None and proc.pid != registered_pid):
                    add(ServiceIssue.orphaned_process(proc.pid))

        if permission_denied:
            add(ServiceIssue(kind="privilege_escalation_failure"))

        plist_path = (record.file if record is not None and record.file else None) or cfg.service_plist

        connections: Optional[int] = None
        if pid is not None:
            connections = self.count_client_connections(deadline=deadline)

        status = ServiceStatus(
            supervisor_registered=supervisor_registered,
            independently_managed=independently_managed,
            process_running=pid is not None,
            pid=pid,
            issues=issues,
            unknown_sources=unknown,
            plist_path=plist_path,
            client_connections=connections,
        )
        logger.info(
            "Service status: supervisor=%s launchd=%s running=%s pid=%s issues=%s unknown=%s",
            status.supervisor_registered,
            status.independently_managed,
            status.process_running,
            status.pid,
            [i.kind for i in status.issues],
            status.unknown_sources,
        )
        return status

    def count_client_connections(
        self, pid: Optional[int] = None, *, deadline: Optional[float] = None
    ) -> Optional[int]:
        """
        Established TCP connections on the daemon port, or held by `pid`.
        None means the probe failed.
        """
        if pid is not None:
            argv = ["lsof", "-nP", "-a", "-p", str(pid), "-iTCP", "-sTCP:ESTABLISHED"]
        else:
            argv = ["lsof", "-nP", f"-iTCP:{self.config.daemon_port}", "-sTCP:ESTABLISHED"]
        result = self._query(argv, deadline)
        count = count_lsof_connections(result)
        if count is None:
            logger.warning("Connection probe failed: %s", result.describe())
        return count

    def _query(self, argv: List[str], deadline: Optional[float]) -> CommandResult:
        if deadline is None:
            return self.runner.run(argv)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("Skipping %s: time budget exhausted", " ".join(argv))
            return CommandResult(argv=tuple(argv), exit_code=-1, timed_out=True)
        return self.runner.run(argv, timeout=min(self.runner.timeout, remaining))

    # ----------------------------
    # Conflict resolution
    # ----------------------------

    def resolve_conflicts(self, status: ServiceStatus) -> List[ResolvedConflict]:
        resolved: List[ResolvedConflict] = []
        for issue in status.issues:
            if issue.kind == "orphaned_process":
                resolved.append(self._terminate_orphan(issue))
            elif issue.kind == "registration_mismatch":
                resolved.append(self._reregister(issue, status))
            elif issue.kind == "supervisor_disconnected":
                resolved.append(self._reconnect_supervisor(issue, status))
            else:
                resolved.append(ResolvedConflict(
                    issue=issue,
                    action="skipped",
                    success=False,
                    message="Insufficient privileges to manage the service; re-run with administrator rights (sudo)",
                ))
        for r in resolved:
            log = logger.info if r.success else logger.warning
            log("Conflict %s: %s (%s)", r.issue.kind if r.issue else "-", r.action, r.message)
        return resolved

    def _terminate_orphan(self, issue: ServiceIssue) -> ResolvedConflict:
        connections = self.count_client_connections(pid=issue.pid)
        if connections is None:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=f"Left process {issue.pid} running: client connections could not be determined",
            )
        if connections > 0:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=f"Left process {issue.pid} running: {connections} active client connection(s)",
            )

        result = self.runner.run(["kill", "-TERM", str(issue.pid)])
        if not result.ok:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=f"Failed to terminate process {issue.pid}: {result.describe()}",
            )
        return ResolvedConflict(
            issue=issue, action="terminated", success=True,
            message=f"Terminated orphaned process {issue.pid}",
        )

    def _reregister(self, issue: ServiceIssue, status: ServiceStatus) -> ResolvedConflict:
        plist = status.plist_path or self.config.service_plist
        if not plist:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message="No launchd plist known for the service; cannot re-register",
            )
        result = self.runner.run(["launchctl", "load", "-w", plist])
        if not result.ok:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=f"Re-registration failed: {result.describe()}",
            )
        return ResolvedConflict(
            issue=issue, action="reregistered", success=True,
            message=f"Re-registered {plist} with launchd",
            undo_command=["launchctl", "unload", "-w", plist],
        )

    def _reconnect_supervisor(self, issue: ServiceIssue, status: ServiceStatus) -> ResolvedConflict:
        formula = self.config.formula_name
        if status.process_running:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=(
                    f"Daemon is running outside the supervisor; run 'brew services restart {formula}' "
                    "at a convenient time to hand it over"
                ),
            )
        result = self.runner.run(["brew", "services", "start", formula])
        if not result.ok:
            return ResolvedConflict(
                issue=issue, action="skipped", success=False,
                message=f"Supervisor registration failed: {result.describe()}",
            )
        return ResolvedConflict(
            issue=issue, action="registered", success=True,
            message=f"Registered {formula} with brew services",
            undo_command=["brew", "services", "stop", formula],
        )

    def ensure_supervised(self, status: ServiceStatus) -> Optional[ResolvedConflict]:
        """
        Register the daemon with the supervisor if it has no record. None when
        nothing to do, including when the daemon is already running on its own
        or the supervisor could not be queried.
        """
        if status.supervisor_registered or SOURCE_SUPERVISOR in status.unknown_sources:
            return None
        formula = self.config.formula_name
        if status.process_running:
            logger.info("Leaving running %s (pid %s) outside brew services", formula, status.pid)
            return None
        result = self.runner.run(["brew", "services", "start", formula])
        if not result.ok:
            logger.error("Could not register %s with brew services: %s", formula, result.describe())
            return ResolvedConflict(
                action="skipped", success=False,
                message=f"Supervisor registration failed: {result.describe()}",
            )
        logger.info("Registered %s with brew services", formula)
        return ResolvedConflict(
            action="registered", success=True,
            message=f"Registered {formula} with brew services",
            undo_command=["brew", "services", "stop", formula],
        )

    def revert(self, conflict: ResolvedConflict) -> Optional[CommandResult]:
        """Run the recorded undo command for a resolution. None if it has none."""
        if not conflict.undo_command:
            return None
        logger.info("Reverting: %s", " ".join(conflict.undo_command))
        result = self.runner.run(conflict.undo_command)
        if not result.ok:
            logger.error("Revert failed: %s", result.describe())
        return result

    # ----------------------------
    # Supervisor control
    # ----------------------------

    def start_service(self) -> CommandResult:
        return self._brew_services("start")

    def stop_service(self) -> CommandResult:
        return self._brew_services("stop")

    def restart_service(self) -> CommandResult:
        return self._brew_services("restart")

    def _brew_services(self, verb: str) -> CommandResult:
        result = self.runner.run(["brew", "services", verb, self.config.formula_name])
        if result.ok:
            logger.info("brew services %s %s succeeded", verb, self.config.formula_name)
        else:
            logger.error("brew services %s failed: %s", verb, result.describe())
        return result
