from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ...config import InstallerConfig
from ..domain.errors import ActivationErrorKind, ErrorKind, InstallerError, remediation_for
from ..domain.models import (
    ActivationOutcome,
    ActivationState,
    BundleDescriptor,
    OrchestrationError,
    OrchestrationPhase,
    OrchestrationResult,
    ResolvedConflict,
    RollbackRecord,
    ServiceStatus,
    VerificationOutcome,
)
from .activation import ActivationCoordinator
from .bundle_locator import BundleLocator
from .commands import CommandRunner
from .developer_mode import DeveloperModeDetector
from .registrar import HelperProcessRegistrar, RegistrarClient
from .service_lifecycle import ServiceLifecycleCoordinator
from .verifier import InstallationVerifier

logger = logging.getLogger("extinstaller.orchestrator")

APPROVAL_ACTIONS = [
    "Open System Settings > Privacy & Security",
    "Allow the system extension when prompted",
]


class ProgressReporter(Protocol):
    def report(
        self,
        phase: OrchestrationPhase,
        progress: float,
        message: str,
        user_actions: List[str],
    ) -> None:
        ...


# One run at a time per bundle identifier, across orchestrator instances.
_RUN_LOCKS: Dict[str, threading.Lock] = {}
_RUN_LOCKS_GUARD = threading.Lock()


def _run_lock(identifier: str) -> threading.Lock:
    with _RUN_LOCKS_GUARD:
        lock = _RUN_LOCKS.get(identifier)
        if lock is None:
            lock = threading.Lock()
            _RUN_LOCKS[identifier] = lock
        return lock


@dataclass
class RollbackAction:
    name: str
    description: str
    undo: Callable[[], Tuple[bool, str]]


@dataclass
class _RunContext:
    started: float = field(default_factory=time.monotonic)
    phase: OrchestrationPhase = OrchestrationPhase.IDLE
    errors: List[OrchestrationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rollback: List[RollbackAction] = field(default_factory=list)
    indeterminate: bool = False
    activation_submitted: bool = False
    descriptor: Optional[BundleDescriptor] = None
    activation: Optional[ActivationOutcome] = None
    service_status: Optional[ServiceStatus] = None
    verification: Optional[VerificationOutcome] = None


class InstallationOrchestrator:
    """
    Runs locate -> activate -> reconcile -> verify and reports one
    OrchestrationResult.

    - Each stage may short-circuit with an InstallerError; the run then
      executes registered rollback actions in reverse order.
    - OS approval is never revoked and nothing on disk is deleted.
    - If the target already verifies as fully functional, activation is
      not resubmitted.
    """

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        *,
        runner: Optional[CommandRunner] = None,
        registrar: Optional[RegistrarClient] = None,
        locator: Optional[BundleLocator] = None,
        activation: Optional[ActivationCoordinator] = None,
        service: Optional[ServiceLifecycleCoordinator] = None,
        verifier: Optional[InstallationVerifier] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config = config or InstallerConfig()
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)
        self.locator = locator or BundleLocator(self.config)
        self.activation = activation or ActivationCoordinator(
            registrar or HelperProcessRegistrar(self.config.registrar_command),
            developer_mode=DeveloperModeDetector(self.runner, self.config.systemextensionsctl),
        )
        self.service = service or ServiceLifecycleCoordinator(self.config, runner=self.runner)
        self.verifier = verifier or InstallationVerifier(self.config, runner=self.runner, service=self.service)
        self.reporter = reporter
        self.state = OrchestrationPhase.IDLE
        self.last_result: Optional[OrchestrationResult] = None

    # ----------------------------
    # Public API
    # ----------------------------

    def run(self, timeout: Optional[float] = None) -> OrchestrationResult:
        identifier = self.config.bundle_identifier
        lock = _run_lock(identifier)
        if not lock.acquire(blocking=False):
            logger.warning("Rejected installation run: another run for %s is in progress", identifier)
            return OrchestrationResult(
                phase=OrchestrationPhase.IDLE,
                final_state=OrchestrationPhase.FAILED,
                success=False,
                status="failed",
                errors=[OrchestrationError(
                    phase=OrchestrationPhase.IDLE,
                    kind=ErrorKind.CONFLICT,
                    message=f"Another installation run for {identifier} is already in progress",
                    remediation=["Wait for the running installation to finish, then retry"],
                )],
            )

        try:
            result = self._run(timeout)
            self.last_result = result
            return result
        finally:
            self.state = OrchestrationPhase.IDLE
            lock.release()

    def is_running(self) -> bool:
        return _run_lock(self.config.bundle_identifier).locked()

    # ----------------------------
    # Stages
    # ----------------------------

    def _run(self, timeout: Optional[float]) -> OrchestrationResult:
        ctx = _RunContext()
        logger.info("Installation run started for %s", self.config.bundle_identifier)

        try:
            self._enter(ctx, OrchestrationPhase.LOCATING, 0.05, "Locating system extension bundle")
            descriptor = self._locate(ctx)

            self._enter(ctx, OrchestrationPhase.ACTIVATING, 0.25, "Activating system extension")
            self._activate(ctx, descriptor, timeout)

            self._enter(ctx, OrchestrationPhase.RECONCILING, 0.6, "Reconciling daemon service")
            self._reconcile(ctx)

            self._enter(ctx, OrchestrationPhase.VERIFYING, 0.85, "Verifying installation")
            self._verify(ctx)
        except InstallerError as e:
            logger.error("Installation failed during %s: %s", ctx.phase.value, e)
            ctx.errors.append(OrchestrationError(
                phase=ctx.phase, kind=e.kind, message=e.message, remediation=e.remediation,
            ))
            ctx.indeterminate = e.indeterminate
        except Exception as e:
            logger.exception("Unexpected error during %s", ctx.phase.value)
            ctx.errors.append(OrchestrationError(
                phase=ctx.phase,
                kind=ErrorKind.INFRASTRUCTURE,
                message=f"Unexpected internal error: {e}",
                remediation=["Check logs/installer.log for details and retry"],
            ))

        rollback_records: List[RollbackRecord] = []
        if ctx.errors:
            rollback_records = self._rollback(ctx)
            self.state = OrchestrationPhase.FAILED
            status = "indeterminate" if ctx.indeterminate else "failed"
            last = ctx.errors[-1]
            self._report(ctx.phase, 1.0, f"Installation failed: {last.message}", last.remediation)
        else:
            ctx.phase = OrchestrationPhase.DONE
            self.state = OrchestrationPhase.DONE
            status = "succeeded"
            self._report(OrchestrationPhase.DONE, 1.0, "Installation complete", [])

        duration = time.monotonic() - ctx.started
        logger.info(
            "Installation run finished: status=%s phase=%s errors=%d rollbacks=%d duration=%.2fs",
            status, ctx.phase.value, len(ctx.errors), len(rollback_records), duration,
        )
        return OrchestrationResult(
            phase=ctx.phase,
            final_state=self.state,
            success=not ctx.errors,
            status=status,
            errors=ctx.errors,
            warnings=ctx.warnings,
            rollback_actions=rollback_records,
            duration_seconds=duration,
            activation_submitted=ctx.activation_submitted,
            descriptor=ctx.descriptor,
            activation=ctx.activation,
            service_status=ctx.service_status,
            verification=ctx.verification,
        )

    def _locate(self, ctx: _RunContext) -> BundleDescriptor:
        descriptor = self.locator.locate()
        ctx.descriptor = descriptor
        if not descriptor.found:
            searched = [f"Searched {e.root}: {e.reason}" for e in descriptor.search_entries]
            raise InstallerError(
                ErrorKind.DISCOVERY,
                "No valid system extension bundle found",
                searched + ["Build the extension or install the package, then retry"],
            )
        expected = self.config.bundle_identifier
        if descriptor.bundle_identifier != expected:
            # The run lock and verification are keyed on the configured identifier.
            raise InstallerError(
                ErrorKind.DISCOVERY,
                f"Found bundle {descriptor.bundle_identifier} at {descriptor.bundle_path}, expected {expected}",
                [
                    f"Remove or rebuild the bundle at {descriptor.bundle_path}",
                    "Or set bundle_identifier in the installer config to the bundle's identifier",
                ],
            )
        ctx.warnings.extend(descriptor.issues)
        return descriptor

    def _activate(self, ctx: _RunContext, descriptor: BundleDescriptor, timeout: Optional[float]) -> None:
        pre = self.verifier.verify()
        if pre.is_fully_functional:
            logger.info("%s already active and supervised; skipping submission", descriptor.bundle_identifier)
            ctx.warnings.append("Extension already active; activation was not resubmitted")
            return
        if pre.overall == "indeterminate":
            logger.info("Pre-activation check indeterminate (%s); submitting anyway", pre.diagnostic_failure)

        handle, channel = self.activation.submit(descriptor)
        ctx.activation_submitted = handle.request_id is not None

        limit = self.config.activation_timeout if timeout is None else timeout
        deadline = time.monotonic() + limit

        channel.wait_for_update(limit)
        if ActivationState.PENDING_APPROVAL in channel.states:
            self._report(ctx.phase, 0.4, "Waiting for user approval", APPROVAL_ACTIONS)

        terminal = channel.wait_terminal(max(0.0, deadline - time.monotonic()))
        if terminal is None:
            logger.error("No registrar response for %s within %.1fs", handle.identifier, limit)
            self.activation.cancel(
                handle,
                error_kind=ActivationErrorKind.INSTALLATION_TIMEOUT,
                detail=f"no registrar response within {limit:.0f}s",
            )
            terminal = channel.current
        ctx.activation = terminal

        if terminal.state == ActivationState.FAILED:
            kind = terminal.error_kind or ActivationErrorKind.UNKNOWN
            rem = remediation_for(kind)
            message = rem.description + (f": {terminal.detail}" if terminal.detail else "")
            raise InstallerError(rem.kind, message, rem.steps)

        if terminal.state == ActivationState.REQUIRES_USER_ACTION:
            raise InstallerError(
                ErrorKind.POLICY,
                "System extension developer mode is required for development builds",
                [terminal.instructions or "Enable developer mode and retry"],
            )

        if terminal.deferred_until_reboot:
            ctx.warnings.append("Activation will complete after the next reboot")

    def _reconcile(self, ctx: _RunContext) -> None:
        status = self.service.reconcile()
        if any(i.kind == "privilege_escalation_failure" for i in status.issues):
            ctx.service_status = status
            raise InstallerError(
                ErrorKind.AUTHORIZATION,
                "Insufficient privileges to query or manage the daemon service",
                ["Re-run the installation with administrator privileges (sudo)"],
            )

        for resolution in self.service.resolve_conflicts(status):
            if resolution.success:
                self._push_undo(ctx, resolution)
            else:
                ctx.warnings.append(resolution.message)

        status = self.service.reconcile()
        supervised = self.service.ensure_supervised(status)
        if supervised is not None:
            if not supervised.success:
                ctx.service_status = status
                raise InstallerError(
                    ErrorKind.INFRASTRUCTURE,
                    supervised.message,
                    [f"Run 'brew services start {self.config.formula_name}' manually"],
                )
            self._push_undo(ctx, supervised)
            status = self.service.reconcile()

        ctx.service_status = status

        if status.is_status_unknown:
            raise InstallerError(
                ErrorKind.INFRASTRUCTURE,
                f"Service state could not be determined ({', '.join(status.unknown_sources)} query failed)",
                ["Check that launchctl, brew and ps are available and retry"],
                indeterminate=True,
            )
        if not status.process_running:
            raise InstallerError(
                ErrorKind.INFRASTRUCTURE,
                f"{self.config.daemon_process_name} is not running after reconciliation",
                [
                    f"Run 'brew services restart {self.config.formula_name}'",
                    "Check the daemon log for startup errors",
                ],
            )
        fatal = [i for i in status.issues if i.kind in ("registration_mismatch", "orphaned_process")]
        if fatal:
            raise InstallerError(
                ErrorKind.CONFLICT,
                "Unresolved service conflicts: " + ", ".join(
                    f"{i.kind}({i.pid})" if i.pid is not None else i.kind for i in fatal
                ),
                [
                    "Stop stray daemon processes that are not managed by launchd",
                    f"Run 'brew services restart {self.config.formula_name}'",
                ],
            )
        if any(i.kind == "supervisor_disconnected" for i in status.issues):
            ctx.warnings.append("Daemon is running outside brew services supervision")

    def _verify(self, ctx: _RunContext) -> None:
        outcome = self.verifier.verify(service_status=ctx.service_status)
        ctx.verification = outcome

        if outcome.overall == "fully_functional":
            return
        if outcome.overall == "partially_functional":
            ctx.warnings.extend(outcome.limitations)
            return
        if outcome.overall == "indeterminate":
            raise InstallerError(
                ErrorKind.INFRASTRUCTURE,
                f"Installation state could not be verified: {outcome.diagnostic_failure}",
                [i.remediation for i in outcome.issues],
                indeterminate=True,
            )

        deferred = ctx.activation is not None and ctx.activation.deferred_until_reboot
        kind = outcome.issues[0].kind if outcome.issues else ErrorKind.AUTHORIZATION
        steps = [i.remediation for i in outcome.issues]
        if deferred:
            raise InstallerError(
                ErrorKind.AUTHORIZATION,
                f"{outcome.reason}; activation completes after reboot",
                ["Reboot, then verify the installation again"] + steps,
                indeterminate=True,
            )
        raise InstallerError(kind, outcome.reason or "Installation is not functional", steps)

    # ----------------------------
    # Rollback / progress
    # ----------------------------

    def _push_undo(self, ctx: _RunContext, resolution: ResolvedConflict) -> None:
        if not resolution.undo_command:
            return
        command = " ".join(resolution.undo_command)

        def undo() -> Tuple[bool, str]:
            result = self.service.revert(resolution)
            if result is None:
                return True, "nothing to revert"
            return result.ok, result.describe()

        ctx.rollback.append(RollbackAction(
            name=resolution.action,
            description=f"Undo '{resolution.message}' ({command})",
            undo=undo,
        ))

    def _rollback(self, ctx: _RunContext) -> List[RollbackRecord]:
        records: List[RollbackRecord] = []
        for action in reversed(ctx.rollback):
            try:
                ok, detail = action.undo()
            except Exception as e:
                logger.exception("Rollback action %s failed", action.name)
                ok, detail = False, str(e)
            log = logger.info if ok else logger.error
            log("Rollback %s: %s (%s)", "done" if ok else "FAILED", action.description, detail)
            records.append(RollbackRecord(
                name=action.name, description=action.description, succeeded=ok, detail=detail,
            ))
        ctx.rollback.clear()
        return records

    def _enter(self, ctx: _RunContext, phase: OrchestrationPhase, progress: float, message: str) -> None:
        ctx.phase = phase
        self.state = phase
        logger.info("Phase %s: %s", phase.value, message)
        self._report(phase, progress, message, [])

    def _report(self, phase: OrchestrationPhase, progress: float, message: str, user_actions: List[str]) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.report(phase, progress, message, list(user_actions))
        except Exception:
            logger.exception("Progress reporter failed")
