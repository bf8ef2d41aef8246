from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from ..domain.errors import DEVELOPER_MODE_INSTRUCTIONS, ActivationErrorKind, remediation_for
from ..domain.models import (
    ACTIVATION_STATE_RANK,
    ActivationOutcome,
    ActivationState,
    BundleDescriptor,
)
from .developer_mode import DeveloperModeDetector
from .registrar import (
    FINISHED_AFTER_REBOOT,
    REPLACE,
    RegistrarCallbacks,
    RegistrarClient,
    map_registrar_error,
)

logger = logging.getLogger("extinstaller.activation")


class ActivationChannel:
    """
    State channel for one submission.

    A multi-write interim slot (submitting / pending_approval) and a
    write-once terminal slot. Writers are registrar callbacks on another
    thread; readers block in wait_terminal()/wait_for_update().
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._interim: ActivationOutcome = ActivationOutcome.not_submitted()
        self._terminal: Optional[ActivationOutcome] = None
        self._history: List[ActivationOutcome] = [self._interim]

    @property
    def current(self) -> ActivationOutcome:
        with self._cond:
            return self._terminal or self._interim

    @property
    def history(self) -> List[ActivationOutcome]:
        with self._cond:
            return list(self._history)

    @property
    def states(self) -> List[ActivationState]:
        return [o.state for o in self.history]

    def publish(self, outcome: ActivationOutcome) -> bool:
        """Apply a transition. Returns False when it would move backwards or the channel is closed."""
        with self._cond:
            if self._terminal is not None:
                logger.debug("Dropping %s: channel already terminal (%s)", outcome.state.value, self._terminal.state.value)
                return False

            if outcome.is_terminal:
                self._terminal = outcome
            else:
                current_rank = ACTIVATION_STATE_RANK[self._interim.state]
                new_rank = ACTIVATION_STATE_RANK[outcome.state]
                if new_rank < current_rank:
                    logger.debug("Dropping backwards transition %s -> %s", self._interim.state.value, outcome.state.value)
                    return False
                if new_rank == current_rank and outcome.state != ActivationState.PENDING_APPROVAL:
                    return False
                self._interim = outcome

            self._history.append(outcome)
            self._cond.notify_all()
            return True

    def wait_terminal(self, timeout: Optional[float] = None) -> Optional[ActivationOutcome]:
        """Block until a terminal outcome arrives. Returns None on timeout."""
        with self._cond:
            self._cond.wait_for(lambda: self._terminal is not None, timeout)
            return self._terminal

    def wait_for_update(self, timeout: Optional[float] = None) -> ActivationOutcome:
        """Block until the channel is terminal or pending approval, or the timeout passes."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._terminal is not None
                or self._interim.state == ActivationState.PENDING_APPROVAL,
                timeout,
            )
            return self._terminal or self._interim


RequestKind = Literal["activation", "deactivation"]


@dataclass
class ActivationHandle:
    identifier: str
    kind: RequestKind
    channel: ActivationChannel
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    request_id: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def outcome(self) -> ActivationOutcome:
        return self.channel.current


class ActivationCoordinator:
    """
    Submits bundles to the OS extension registrar and maps its asynchronous
    callbacks onto ActivationOutcome transitions.

    - One outstanding request per identifier; a second submit fails with
      already_in_progress instead of queuing.
    - Replacement of an older registered version is always accepted.
    - Development bundles are gated on developer mode when a detector is given.
    """

    def __init__(
        self,
        registrar: RegistrarClient,
        *,
        developer_mode: Optional[DeveloperModeDetector] = None,
    ) -> None:
        self.registrar = registrar
        self.developer_mode = developer_mode
        self._lock = threading.Lock()
        self._in_flight: Dict[str, ActivationHandle] = {}
        self._handles: Dict[str, ActivationHandle] = {}
        self.submission_count = 0

    # ----------------------------
    # Public API
    # ----------------------------

    def submit(self, descriptor: BundleDescriptor) -> Tuple[ActivationHandle, ActivationChannel]:
        identifier = (descriptor.bundle_identifier or "").strip()
        if not identifier:
            logger.error("Refusing submission: bundle has no identifier (path=%s)", descriptor.bundle_path)
            return self._rejected(
                "", "activation", ActivationErrorKind.INVALID_BUNDLE, "bundle identifier is empty"
            )

        handle = self._reserve(identifier, "activation")
        if handle is None:
            return self._rejected(
                identifier, "activation", ActivationErrorKind.ALREADY_IN_PROGRESS,
                f"an activation request for {identifier} is already in progress",
            )

        handle.channel.publish(ActivationOutcome.submitting())

        env = descriptor.environment
        if env is not None and env.kind == "development" and self.developer_mode is not None:
            status = self.developer_mode.detect()
            if status.enabled is False:
                logger.warning("Developer mode disabled; development bundle %s needs user action", identifier)
                self._finish(handle, ActivationOutcome.requires_user_action(DEVELOPER_MODE_INSTRUCTIONS))
                return handle, handle.channel

        logger.info("Submitting activation request for %s (%s)", identifier, descriptor.bundle_path)
        try:
            handle.request_id = self.registrar.submit_activation(
                identifier, descriptor.bundle_path or "", self._callbacks(handle)
            )
        except Exception as exc:
            logger.exception("Registrar rejected activation submission for %s", identifier)
            self._finish(handle, ActivationOutcome.failed(ActivationErrorKind.UNKNOWN, str(exc)))
        else:
            with self._lock:
                self.submission_count += 1

        return handle, handle.channel

    def submit_deactivation(self, identifier: str) -> Tuple[ActivationHandle, ActivationChannel]:
        identifier = (identifier or "").strip()
        if not identifier:
            return self._rejected(
                "", "deactivation", ActivationErrorKind.INVALID_BUNDLE, "bundle identifier is empty"
            )

        handle = self._reserve(identifier, "deactivation")
        if handle is None:
            return self._rejected(
                identifier, "deactivation", ActivationErrorKind.ALREADY_IN_PROGRESS,
                f"a request for {identifier} is already in progress",
            )

        handle.channel.publish(ActivationOutcome.submitting())
        logger.info("Submitting deactivation request for %s", identifier)
        try:
            handle.request_id = self.registrar.submit_deactivation(identifier, self._callbacks(handle))
        except Exception as exc:
            logger.exception("Registrar rejected deactivation submission for %s", identifier)
            self._finish(handle, ActivationOutcome.failed(ActivationErrorKind.UNKNOWN, str(exc)))
        return handle, handle.channel

    def cancel(
        self,
        handle: ActivationHandle,
        *,
        error_kind: ActivationErrorKind = ActivationErrorKind.CANCELED,
        detail: str = "request canceled by caller",
    ) -> bool:
        """
        Cancel an outstanding request. No-op (returns False) once terminal.
        """
        if handle.channel.current.is_terminal:
            logger.debug("Cancel ignored for %s: already %s", handle.identifier, handle.outcome.state.value)
            return False

        # Publish first so a registrar acknowledging the cancel cannot claim the outcome.
        if not self._finish(handle, ActivationOutcome.failed(error_kind, detail)):
            logger.debug("Cancel lost the race for %s: already %s", handle.identifier, handle.outcome.state.value)
            return False
        logger.info("Canceled %s request for %s (%s)", handle.kind, handle.identifier, error_kind.value)

        if handle.request_id is not None:
            try:
                self.registrar.cancel(handle.request_id)
            except Exception:
                logger.exception("Registrar cancel failed for request %s", handle.request_id)
        return True

    def get_handle(self, handle_id: str) -> Optional[ActivationHandle]:
        with self._lock:
            return self._handles.get(handle_id)

    def in_flight(self, identifier: str) -> Optional[ActivationHandle]:
        with self._lock:
            return self._in_flight.get(identifier)

    # ----------------------------
    # Internals
    # ----------------------------

    def _reserve(self, identifier: str, kind: RequestKind) -> Optional[ActivationHandle]:
        with self._lock:
            existing = self._in_flight.get(identifier)
            if existing is not None and not existing.channel.current.is_terminal:
                logger.warning("Request for %s already in flight (handle %s)", identifier, existing.handle_id)
                return None
            handle = ActivationHandle(identifier=identifier, kind=kind, channel=ActivationChannel())
            self._in_flight[identifier] = handle
            self._handles[handle.handle_id] = handle
            return handle

    def _rejected(
        self, identifier: str, kind: RequestKind, error_kind: ActivationErrorKind, detail: str
    ) -> Tuple[ActivationHandle, ActivationChannel]:
        handle = ActivationHandle(identifier=identifier, kind=kind, channel=ActivationChannel())
        handle.channel.publish(ActivationOutcome.failed(error_kind, detail))
        with self._lock:
            self._handles[handle.handle_id] = handle
        return handle, handle.channel

    def _finish(self, handle: ActivationHandle, outcome: ActivationOutcome) -> bool:
        applied = handle.channel.publish(outcome)
        with self._lock:
            if self._in_flight.get(handle.identifier) is handle:
                del self._in_flight[handle.identifier]
        if applied:
            logger.info(
                "%s request for %s finished: %s%s",
                handle.kind.capitalize(),
                handle.identifier,
                outcome.state.value,
                f" ({outcome.error_kind.value})" if outcome.error_kind else "",
            )
        return applied

    def _callbacks(self, handle: ActivationHandle) -> RegistrarCallbacks:
        def on_needs_approval() -> None:
            logger.info("Registrar requires user approval for %s", handle.identifier)
            handle.channel.publish(ActivationOutcome.pending_approval(handle.request_id or handle.handle_id))

        def on_finished(result: str) -> None:
            deferred = result == FINISHED_AFTER_REBOOT
            if deferred:
                logger.info("Activation of %s will complete after reboot", handle.identifier)
            self._finish(handle, ActivationOutcome.approved(handle.identifier, deferred_until_reboot=deferred))

        def on_failed(code: int, detail: str) -> None:
            kind = map_registrar_error(code)
            logger.error("Registrar failed %s for %s: code=%s kind=%s detail=%s",
                         handle.kind, handle.identifier, code, kind.value, detail)
            self._finish(handle, ActivationOutcome.failed(kind, detail or remediation_for(kind).description))

        def on_replacement(existing_version: str, new_version: str) -> str:
            # Downgrades are accepted too; see DESIGN.md open question.
            logger.info("Replacing registered %s %s with %s", handle.identifier, existing_version, new_version)
            return REPLACE

        return RegistrarCallbacks(
            on_needs_approval=on_needs_approval,
            on_finished=on_finished,
            on_failed=on_failed,
            on_replacement=on_replacement,
        )
