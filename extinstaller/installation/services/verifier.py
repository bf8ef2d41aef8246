from __future__ import annotations

import logging
import re
import time
from typing import List, Optional

from ...config import InstallerConfig
from ..domain.errors import ErrorKind
from ..domain.models import (
    Check,
    Issue,
    RegistryEntry,
    ServiceStatus,
    Severity,
    VerificationOutcome,
)
from .commands import CommandRunner
from .service_lifecycle import ServiceLifecycleCoordinator

logger = logging.getLogger("extinstaller.verifier")

# Order matters: the first marker contained in the bracketed state wins.
_STATE_MARKERS = (
    ("terminated", "terminated"),
    ("replacement waiting for user approval", "replacement_waiting_for_user_approval"),
    ("waiting for user approval", "waiting_for_user_approval"),
    ("activated", "activated"),
    ("enabled", "enabled"),
)

_VERSION_RE = re.compile(r"^(?P<id>\S+)\s+\((?P<version>[^/)]*)(?:/(?P<build>[^)]*))?\)$")

# Older / space-aligned listings: `* * TEAMID com.example.ext (1.0/1) Name [activated enabled]`
_FALLBACK_RE = re.compile(
    r"^(?P<flags>[*\-\s]*?)\s*(?P<team>[A-Za-z0-9]+|-)\s+(?P<id>[A-Za-z0-9][\w.\-]*\.[\w.\-]+)\s+"
    r"\((?P<version>[^/)]*)(?:/(?P<build>[^)]*))?\)\s*(?P<name>[^\[]*?)\s*(?:\[(?P<state>[^\]]*)\])?\s*$"
)

_SUMMARY_RE = re.compile(r"^\d+\s+extension\(s\)", re.IGNORECASE)


class RegistryParseError(ValueError):
    pass


def interpret_state(raw: str) -> str:
    text = raw.lower()
    for marker, state in _STATE_MARKERS:
        if marker in text:
            return state
    return "unknown"


def _parse_tab_line(line: str) -> Optional[RegistryEntry]:
    cols = line.split("\t")
    if len(cols) < 5:
        return None
    enabled, active, team, ident_version, name = (c.strip() for c in cols[:5])
    if enabled not in ("*", "") or active not in ("*", ""):
        return None
    m = _VERSION_RE.match(ident_version)
    if m is None:
        return None
    raw_state = cols[5].strip().strip("[]") if len(cols) > 5 else ""
    return RegistryEntry(
        identifier=m.group("id"),
        team_id=team or None,
        version=m.group("version") or None,
        build=m.group("build") or None,
        name=name or None,
        enabled=enabled == "*",
        active=active == "*",
        state=interpret_state(raw_state),
    )


def _parse_fallback_line(line: str) -> Optional[RegistryEntry]:
    stripped = line.strip()
    if not stripped.startswith(("*", "-")):
        return None
    m = _FALLBACK_RE.match(stripped)
    if m is None:
        return None
    raw_state = (m.group("state") or "").lower()
    return RegistryEntry(
        identifier=m.group("id"),
        team_id=m.group("team") if m.group("team") != "-" else None,
        version=m.group("version") or None,
        build=m.group("build") or None,
        name=m.group("name") or None,
        enabled="enabled" in raw_state or "activated" in raw_state,
        active="activated" in raw_state or "active" in raw_state,
        state=interpret_state(raw_state),
    )


def parse_registry_listing(output: str) -> List[RegistryEntry]:
    """
    Parse `systemextensionsctl list`.

    Rows are tab separated: enabled, active, teamID, `bundleID (version/build)`,
    name, `[state]`. Lines that are not rows (summary, category headers,
    column header) are skipped. Raises RegistryParseError when non-empty
    output contains neither a summary line nor any parseable row.
    """
    entries: List[RegistryEntry] = []
    saw_summary = False

    for line in output.splitlines():
        if not line.strip():
            continue
        if _SUMMARY_RE.match(line.strip()):
            saw_summary = True
            continue
        if line.startswith("---") or line.lower().startswith("enabled"):
            continue
        entry = _parse_tab_line(line) or _parse_fallback_line(line)
        if entry is not None:
            entries.append(entry)

    if output.strip() and not saw_summary and not entries:
        raise RegistryParseError("unrecognized systemextensionsctl output")
    return entries


# -----------------------------
# Remediation text per check
# -----------------------------

_CHECK_ISSUES = {
    "registry_entry_exists": (
        ErrorKind.DISCOVERY,
        "Run the installation to submit the system extension for activation",
    ),
    "entry_enabled": (
        ErrorKind.AUTHORIZATION,
        "Approve the extension in System Settings > Privacy & Security",
    ),
    "entry_active": (
        ErrorKind.AUTHORIZATION,
        "Approve the extension in System Settings > Privacy & Security, or reboot if activation was deferred",
    ),
    "no_duplicate_entries": (
        ErrorKind.CONFLICT,
        "Uninstall stale copies with 'systemextensionsctl uninstall <teamID> <bundleID>'",
    ),
    "service_reconciliation": (
        ErrorKind.CONFLICT,
        "Run service conflict resolution or 'brew services restart <formula>'",
    ),
}


class InstallationVerifier:
    """
    Checks the live registry (`systemextensionsctl list`) and the daemon's
    supervision state, and folds the results into one overall verdict.
    """

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        *,
        runner: Optional[CommandRunner] = None,
        service: Optional[ServiceLifecycleCoordinator] = None,
    ):
        self.config = config or InstallerConfig()
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)
        self.service = service or ServiceLifecycleCoordinator(self.config, runner=self.runner)

    def verify(self, service_status: Optional[ServiceStatus] = None) -> VerificationOutcome:
        started = time.monotonic()
        identifier = self.config.bundle_identifier

        result = self.runner.run([self.config.systemextensionsctl, "list"], timeout=self.config.verify_timeout)
        if not result.ok:
            logger.warning("Registry query failed: %s", result.describe())
            return self._indeterminate(result.describe(), started)

        try:
            entries = parse_registry_listing(result.stdout)
        except RegistryParseError as e:
            logger.warning("Registry listing could not be parsed: %s", e)
            return self._indeterminate(f"{e}: {result.stdout[:200]!r}", started)

        matching = [e for e in entries if e.identifier == identifier]
        exists = bool(matching)
        enabled = any(e.enabled for e in matching)
        active = any(e.active for e in matching)

        checks: List[Check] = [
            Check(
                id="registry_entry_exists",
                passed=exists,
                message=f"{identifier} is registered" if exists else f"{identifier} is not registered",
                severity=Severity.CRITICAL,
            ),
            Check(
                id="entry_enabled",
                passed=enabled,
                message="Extension is enabled" if enabled else self._state_message(matching, "not enabled"),
                severity=Severity.WARNING,
            ),
            Check(
                id="entry_active",
                passed=active,
                message="Extension is active" if active else self._state_message(matching, "not active"),
                severity=Severity.CRITICAL,
            ),
            Check(
                id="no_duplicate_entries",
                passed=len(matching) <= 1,
                message=(
                    "Single registry entry"
                    if len(matching) <= 1
                    else f"{len(matching)} registry entries for {identifier} "
                         f"(versions: {', '.join(e.version or '?' for e in matching)})"
                ),
                severity=Severity.WARNING,
            ),
        ]

        if service_status is None:
            budget = self.config.verify_timeout
            service_status = self.service.reconcile(deadline=started + budget)
            if time.monotonic() - started >= budget:
                logger.warning("Verification exceeded %.1fs while reconciling the service", budget)
                return self._indeterminate(
                    f"service state could not be read within {budget:.1f}s", started,
                    issue_id="service_query",
                    remediation="Check 'launchctl list' and 'brew services list' for a slow or hung supervisor",
                )
        checks.append(self._service_check(service_status))

        issues = [self._issue_for(c) for c in checks if not c.passed]
        duration = time.monotonic() - started

        if not exists or not active:
            reason = next(c.message for c in checks if c.id in ("registry_entry_exists", "entry_active") and not c.passed)
            overall = "non_functional"
            logger.warning("Verification: non functional (%s)", reason)
            return VerificationOutcome(
                overall=overall, reason=reason, checks=checks, issues=issues,
                entries=entries, duration_seconds=duration,
            )

        limitations = [c.message for c in checks if not c.passed]
        if limitations:
            logger.info("Verification: partially functional (%s)", "; ".join(limitations))
            return VerificationOutcome(
                overall="partially_functional", limitations=limitations, checks=checks,
                issues=issues, entries=entries, duration_seconds=duration,
            )

        logger.info("Verification: fully functional in %.2fs", duration)
        return VerificationOutcome(
            overall="fully_functional", checks=checks, entries=entries, duration_seconds=duration,
        )

    # ----------------------------
    # Helpers
    # ----------------------------

    def _service_check(self, status: ServiceStatus) -> Check:
        if status.is_status_unknown:
            msg = f"Service state unknown ({', '.join(status.unknown_sources)} query failed)"
            passed = False
        elif status.issues:
            msg = "Service issues: " + ", ".join(
                f"{i.kind}({i.pid})" if i.pid is not None else i.kind for i in status.issues
            )
            passed = False
        elif not status.process_running:
            msg = f"{self.config.daemon_process_name} is not running"
            passed = False
        else:
            msg = f"{self.config.daemon_process_name} running under supervision (pid {status.pid})"
            passed = True
        return Check(id="service_reconciliation", passed=passed, message=msg, severity=Severity.WARNING)

    @staticmethod
    def _state_message(matching: List[RegistryEntry], fallback: str) -> str:
        if not matching:
            return f"Extension is {fallback} (no registry entry)"
        state = matching[0].state
        if state == "waiting_for_user_approval":
            return "Extension is waiting for user approval"
        if state == "replacement_waiting_for_user_approval":
            return "Extension replacement is waiting for user approval"
        if state == "terminated":
            return "Extension is terminated and waiting to uninstall on reboot"
        return f"Extension is {fallback} (state: {state})"

    @staticmethod
    def _issue_for(check: Check) -> Issue:
        kind, remediation = _CHECK_ISSUES[check.id]
        return Issue(id=check.id, kind=kind, message=check.message, remediation=remediation)

    def _indeterminate(
        self,
        failure: str,
        started: float,
        *,
        issue_id: str = "registry_query",
        remediation: Optional[str] = None,
    ) -> VerificationOutcome:
        return VerificationOutcome(
            overall="indeterminate",
            diagnostic_failure=failure,
            issues=[
                Issue(
                    id=issue_id,
                    kind=ErrorKind.INFRASTRUCTURE,
                    message=f"Installation state could not be read: {failure}",
                    remediation=remediation
                    or f"Run '{self.config.systemextensionsctl} list' manually and check its output",
                )
            ],
            duration_seconds=time.monotonic() - started,
        )
