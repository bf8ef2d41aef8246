from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    """
    Five-kind taxonomy every failure is reported under.

    - discovery: bundle missing, malformed manifest, unreadable provenance.
    - authorization: user approval required / pending / denied.
    - policy: system policy, signature, entitlement, developer mode.
    - conflict: duplicate identifier, orphaned process, registration mismatch.
    - infrastructure: command timeout/failure, filesystem, internal.
    """

    DISCOVERY = "discovery"
    AUTHORIZATION = "authorization"
    POLICY = "policy"
    CONFLICT = "conflict"
    INFRASTRUCTURE = "infrastructure"


class ActivationErrorKind(str, Enum):
    INVALID_BUNDLE = "invalid_bundle"
    ALREADY_IN_PROGRESS = "already_in_progress"
    UNAUTHORIZED = "unauthorized"
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    MISSING_ENTITLEMENT = "missing_entitlement"
    INVALID_SIGNATURE = "invalid_signature"
    VALIDATION_FAILED = "validation_failed"
    FORBIDDEN_BY_POLICY = "forbidden_by_policy"
    CANCELED = "canceled"
    SUPERSEDED = "superseded"
    INSTALLATION_TIMEOUT = "installation_timeout"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Remediation:
    kind: ErrorKind
    description: str
    steps: List[str]


ACTIVATION_REMEDIATION: Dict[ActivationErrorKind, Remediation] = {
    ActivationErrorKind.INVALID_BUNDLE: Remediation(
        ErrorKind.DISCOVERY,
        "System extension bundle is invalid",
        [
            "Rebuild the system extension",
            "Verify the bundle structure and CFBundleIdentifier in Info.plist",
        ],
    ),
    ActivationErrorKind.ALREADY_IN_PROGRESS: Remediation(
        ErrorKind.CONFLICT,
        "Another activation request is in progress for this identifier",
        [
            "Wait for the current request to complete",
            "Cancel the existing request if it is stuck",
        ],
    ),
    ActivationErrorKind.UNAUTHORIZED: Remediation(
        ErrorKind.AUTHORIZATION,
        "User authorization is required",
        [
            "Open System Settings > Privacy & Security",
            "Allow the blocked system extension, then run the installation again",
        ],
    ),
    ActivationErrorKind.DUPLICATE_IDENTIFIER: Remediation(
        ErrorKind.CONFLICT,
        "An extension with this identifier is already registered",
        [
            "Uninstall the existing extension first (systemextensionsctl uninstall <team> <id>)",
            "Check for conflicting installations from other install roots",
        ],
    ),
    ActivationErrorKind.MISSING_ENTITLEMENT: Remediation(
        ErrorKind.POLICY,
        "System extension is missing required entitlements",
        [
            "Add the required entitlements to the extension",
            "Verify the provisioning profile and code signing configuration",
        ],
    ),
    ActivationErrorKind.INVALID_SIGNATURE: Remediation(
        ErrorKind.POLICY,
        "System extension code signature is invalid",
        [
            "Re-sign the system extension with a valid certificate",
            "Check that the certificate has not expired",
        ],
    ),
    ActivationErrorKind.VALIDATION_FAILED: Remediation(
        ErrorKind.POLICY,
        "System extension failed registrar validation",
        [
            "Check the bundle structure and Info.plist",
            "Enable developer mode for unsigned development builds (systemextensionsctl developer on)",
        ],
    ),
    ActivationErrorKind.FORBIDDEN_BY_POLICY: Remediation(
        ErrorKind.POLICY,
        "Installation is forbidden by system policy",
        [
            "Check the system security settings and any MDM restrictions",
            "Ask an administrator to allow the extension's team identifier",
        ],
    ),
    ActivationErrorKind.CANCELED: Remediation(
        ErrorKind.AUTHORIZATION,
        "Activation request was canceled",
        ["Run the installation again and complete the approval prompt"],
    ),
    ActivationErrorKind.SUPERSEDED: Remediation(
        ErrorKind.CONFLICT,
        "Activation request was superseded by a newer request",
        ["Wait for the newer request to complete, then verify the installation"],
    ),
    ActivationErrorKind.INSTALLATION_TIMEOUT: Remediation(
        ErrorKind.AUTHORIZATION,
        "Activation did not complete before the timeout",
        [
            "Approve the extension in System Settings > Privacy & Security if prompted",
            "Run the installation again once approved",
        ],
    ),
    ActivationErrorKind.UNKNOWN: Remediation(
        ErrorKind.INFRASTRUCTURE,
        "Unknown registrar error",
        [
            "Check the system log for sysextd messages",
            "Retry the operation",
        ],
    ),
}


def remediation_for(kind: ActivationErrorKind) -> Remediation:
    return ACTIVATION_REMEDIATION.get(kind, ACTIVATION_REMEDIATION[ActivationErrorKind.UNKNOWN])


DEVELOPER_MODE_INSTRUCTIONS = (
    "Development bundles require system extension developer mode: "
    "run 'systemextensionsctl developer on' (requires SIP adjustments), "
    "then run the installation again"
)


class InstallerError(Exception):
    """
    Raised inside the orchestrator to short-circuit a stage.

    Always caught by InstallationOrchestrator.run(); never surfaces to callers.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        remediation: Optional[List[str]] = None,
        *,
        indeterminate: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.remediation = list(remediation or [])
        self.indeterminate = indeterminate

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"
