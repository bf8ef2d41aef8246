from __future__ import annotations

import logging
import subprocess
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..domain.errors import ActivationErrorKind

logger = logging.getLogger("extinstaller.activation.registrar")

FINISHED_COMPLETED = "completed"
FINISHED_AFTER_REBOOT = "will-complete-after-reboot"

REPLACE = "replace"
CANCEL = "cancel"

# OSSystemExtensionError.Code values as reported by the registrar.
OS_ERROR_CODES: Dict[int, ActivationErrorKind] = {
    1: ActivationErrorKind.UNKNOWN,               # unknown
    2: ActivationErrorKind.MISSING_ENTITLEMENT,   # missingEntitlement
    3: ActivationErrorKind.VALIDATION_FAILED,     # unsupportedParentBundleLocation
    4: ActivationErrorKind.VALIDATION_FAILED,     # extensionNotFound
    5: ActivationErrorKind.VALIDATION_FAILED,     # extensionMissingIdentifier
    6: ActivationErrorKind.DUPLICATE_IDENTIFIER,  # duplicateExtensionIdentifer
    7: ActivationErrorKind.VALIDATION_FAILED,     # unknownExtensionCategory
    8: ActivationErrorKind.INVALID_SIGNATURE,     # codeSignatureInvalid
    9: ActivationErrorKind.VALIDATION_FAILED,     # validationFailed
    10: ActivationErrorKind.FORBIDDEN_BY_POLICY,  # forbiddenBySystemPolicy
    11: ActivationErrorKind.CANCELED,             # requestCanceled
    12: ActivationErrorKind.SUPERSEDED,           # requestSuperseded
    13: ActivationErrorKind.UNAUTHORIZED,         # authorizationRequired
}


def map_registrar_error(code: int) -> ActivationErrorKind:
    return OS_ERROR_CODES.get(code, ActivationErrorKind.UNKNOWN)


@dataclass
class RegistrarCallbacks:
    """
    The three callback shapes a registrar request can deliver, plus the
    replacement decision.

    - on_needs_approval(): zero or more times.
    - on_finished(result): result is FINISHED_COMPLETED or FINISHED_AFTER_REBOOT.
    - on_failed(code, detail): registrar error code and message.
    - on_replacement(existing_version, new_version) -> REPLACE | CANCEL.

    Exactly one of on_finished / on_failed is delivered per request.
    """

    on_needs_approval: Callable[[], None]
    on_finished: Callable[[str], None]
    on_failed: Callable[[int, str], None]
    on_replacement: Callable[[str, str], str]


class RegistrarClient(ABC):
    """Interface to the OS extension registrar. Calls return immediately."""

    @abstractmethod
    def submit_activation(
        self, identifier: str, bundle_path: str, callbacks: RegistrarCallbacks
    ) -> str:
        """Submit an activation request. Returns a registrar request id."""

    @abstractmethod
    def submit_deactivation(self, identifier: str, callbacks: RegistrarCallbacks) -> str:
        """Submit a deactivation request. Returns a registrar request id."""

    @abstractmethod
    def cancel(self, request_id: str) -> None:
        """Best-effort cancellation of an outstanding request."""


class HelperProcessRegistrar(RegistrarClient):
    """
    Drives a host helper executable that owns the OSSystemExtensionRequest.

    The helper is started as `<command> activate <identifier> <bundle_path>`
    (or `deactivate <identifier>`) and speaks a line protocol on stdout:

        needs-approval
        replace <existing_version> <new_version>    (answered on stdin)
        finished completed | finished will-complete-after-reboot
        failed <code> <detail...>

    Lines are read on a background thread, so callbacks arrive off the
    caller's thread.
    """

    def __init__(self, command: Sequence[str]):
        self.command = list(command)
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def submit_activation(self, identifier: str, bundle_path: str, callbacks: RegistrarCallbacks) -> str:
        return self._start(["activate", identifier, bundle_path], callbacks)

    def submit_deactivation(self, identifier: str, callbacks: RegistrarCallbacks) -> str:
        return self._start(["deactivate", identifier], callbacks)

    def cancel(self, request_id: str) -> None:
        with self._lock:
            proc = self._processes.get(request_id)
        if proc is None or proc.poll() is not None:
            return
        logger.info("Canceling registrar request %s (pid %s)", request_id, proc.pid)
        proc.terminate()

    # ----------------------------
    # Internals
    # ----------------------------

    def _start(self, args: List[str], callbacks: RegistrarCallbacks) -> str:
        request_id = uuid.uuid4().hex
        argv = self.command + args
        logger.info("Starting registrar helper for request %s: %s", request_id, " ".join(argv))

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            logger.error("Registrar helper could not be started: %s", e)
            # Deliver the terminal failure off-thread like any other callback.
            threading.Thread(
                target=callbacks.on_failed,
                args=(1, f"registrar helper could not be started: {e}"),
                daemon=True,
            ).start()
            return request_id

        with self._lock:
            self._processes[request_id] = proc

        reader = threading.Thread(
            target=self._pump,
            args=(request_id, proc, callbacks),
            name=f"registrar-{request_id[:8]}",
            daemon=True,
        )
        reader.start()
        return request_id

    def _pump(self, request_id: str, proc: subprocess.Popen, callbacks: RegistrarCallbacks) -> None:
        terminal = False
        try:
            for raw in proc.stdout or []:
                line = raw.strip()
                if not line:
                    continue
                logger.debug("registrar[%s] <- %s", request_id[:8], line)
                terminal = self._dispatch(line, proc, callbacks) or terminal
                if terminal:
                    break
        except Exception:
            logger.exception("Registrar helper reader failed for request %s", request_id)
        finally:
            code = proc.wait()
            with self._lock:
                self._processes.pop(request_id, None)
            if not terminal:
                stderr = proc.stderr.read().strip() if proc.stderr else ""
                if code < 0:
                    callbacks.on_failed(11, "registrar helper was terminated")
                else:
                    callbacks.on_failed(1, stderr or f"registrar helper exited {code} without a result")

    def _dispatch(self, line: str, proc: subprocess.Popen, callbacks: RegistrarCallbacks) -> bool:
        """Handle one protocol line. Returns True for terminal lines."""
        verb, _, rest = line.partition(" ")

        if verb == "needs-approval":
            callbacks.on_needs_approval()
            return False

        if verb == "replace":
            parts = rest.split()
            existing = parts[0] if parts else "?"
            new = parts[1] if len(parts) > 1 else "?"
            answer = callbacks.on_replacement(existing, new)
            if proc.stdin is not None:
                proc.stdin.write(answer + "\n")
                proc.stdin.flush()
            return False

        if verb == "finished":
            callbacks.on_finished(rest.strip() or FINISHED_COMPLETED)
            return True

        if verb == "failed":
            code_str, _, detail = rest.partition(" ")
            try:
                code = int(code_str)
            except ValueError:
                code, detail = 1, rest
            callbacks.on_failed(code, detail.strip())
            return True

        logger.warning("Ignoring unrecognized registrar line: %r", line)
        return False
