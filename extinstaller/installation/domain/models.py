from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .errors import ActivationErrorKind, ErrorKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Bundle discovery
# -----------------------------

class DevelopmentEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["development"] = "development"
    build_path: str


class PackageManagedEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["package_managed"] = "package_managed"
    install_root: str
    package_version: Optional[str] = None


class ManualEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["manual"] = "manual"
    path: str


DeploymentEnvironment = Annotated[
    Union[DevelopmentEnvironment, PackageManagedEnvironment, ManualEnvironment],
    Field(discriminator="kind"),
]

EnvironmentKind = Literal["development", "package_managed", "manual"]


class ProvenanceRecord(BaseModel):
    """
    Sidecar metadata written by the package manager next to a production bundle.

    Accepts both snake_case and the Homebrew formula's camelCase keys:

    {
      "version": "1.2.0",
      "installationPrefix": "/opt/homebrew",
      "installationDate": "2025-01-01T00:00:00Z",
      "formulaRevision": "1"
    }
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    install_version: str = Field(validation_alias=AliasChoices("install_version", "version"))
    install_prefix: str = Field(
        validation_alias=AliasChoices("install_prefix", "installationPrefix")
    )
    installed_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("installed_at", "installationDate")
    )
    formula_revision: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("formula_revision", "formulaRevision")
    )


class SearchCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    reason: str


class SearchEntry(BaseModel):
    """One configured search root and why nothing usable was found under it."""

    model_config = ConfigDict(frozen=True)

    root: str
    environment: EnvironmentKind
    exists: bool
    reason: str
    candidates: List[SearchCandidate] = Field(default_factory=list)


class BundleDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    found: bool
    bundle_path: Optional[str] = None
    bundle_identifier: Optional[str] = None
    version: Optional[str] = None
    build_number: Optional[str] = None
    environment: Optional[DeploymentEnvironment] = None
    provenance: Optional[ProvenanceRecord] = None
    issues: List[str] = Field(default_factory=list)
    search_entries: List[SearchEntry] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _found_requires_location(self) -> "BundleDescriptor":
        if self.found and (not self.bundle_path or not self.bundle_identifier):
            raise ValueError("a found bundle must carry a bundle_path and bundle_identifier")
        return self


# -----------------------------
# Activation
# -----------------------------

class ActivationState(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    SUBMITTING = "submitting"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REQUIRES_USER_ACTION = "requires_user_action"
    FAILED = "failed"


TERMINAL_ACTIVATION_STATES = frozenset(
    {ActivationState.APPROVED, ActivationState.REQUIRES_USER_ACTION, ActivationState.FAILED}
)

# Position of each state in the forward-only ordering; terminal states share the last rank.
ACTIVATION_STATE_RANK = {
    ActivationState.NOT_SUBMITTED: 0,
    ActivationState.SUBMITTING: 1,
    ActivationState.PENDING_APPROVAL: 2,
    ActivationState.APPROVED: 3,
    ActivationState.REQUIRES_USER_ACTION: 3,
    ActivationState.FAILED: 3,
}


class ActivationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ActivationState
    request_token: Optional[str] = None
    extension_id: Optional[str] = None
    instructions: Optional[str] = None
    error_kind: Optional[ActivationErrorKind] = None
    detail: Optional[str] = None
    deferred_until_reboot: bool = False
    at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ACTIVATION_STATES

    @classmethod
    def not_submitted(cls) -> "ActivationOutcome":
        return cls(state=ActivationState.NOT_SUBMITTED)

    @classmethod
    def submitting(cls) -> "ActivationOutcome":
        return cls(state=ActivationState.SUBMITTING)

    @classmethod
    def pending_approval(cls, request_token: str) -> "ActivationOutcome":
        return cls(state=ActivationState.PENDING_APPROVAL, request_token=request_token)

    @classmethod
    def approved(cls, extension_id: str, *, deferred_until_reboot: bool = False) -> "ActivationOutcome":
        return cls(
            state=ActivationState.APPROVED,
            extension_id=extension_id,
            deferred_until_reboot=deferred_until_reboot,
        )

    @classmethod
    def requires_user_action(cls, instructions: str) -> "ActivationOutcome":
        return cls(state=ActivationState.REQUIRES_USER_ACTION, instructions=instructions)

    @classmethod
    def failed(cls, error_kind: ActivationErrorKind, detail: str = "") -> "ActivationOutcome":
        return cls(state=ActivationState.FAILED, error_kind=error_kind, detail=detail)


# -----------------------------
# Service supervision
# -----------------------------

ServiceIssueKind = Literal[
    "registration_mismatch",
    "supervisor_disconnected",
    "orphaned_process",
    "privilege_escalation_failure",
]


class ServiceIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ServiceIssueKind
    pid: Optional[int] = None

    @classmethod
    def orphaned_process(cls, pid: int) -> "ServiceIssue":
        return cls(kind="orphaned_process", pid=pid)


class ServiceStatus(BaseModel):
    """
    Snapshot of how the host daemon is registered and supervised.

    - supervisor_registered: the external supervisor (brew services) has a record
      for the daemon.
    - independently_managed: a process registration (launchd label) exists, so
      the OS keeps the daemon alive independent of this installer.
    - unknown_sources: queries whose result could not be determined (non-zero
      exit or timeout). Cross-checks depending on them are skipped.
    """

    model_config = ConfigDict(frozen=True)

    supervisor_registered: bool = False
    independently_managed: bool = False
    process_running: bool = False
    pid: Optional[int] = None
    issues: List[ServiceIssue] = Field(default_factory=list)
    unknown_sources: List[str] = Field(default_factory=list)
    plist_path: Optional[str] = None
    client_connections: Optional[int] = None
    checked_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _running_requires_pid(self) -> "ServiceStatus":
        if self.process_running and self.pid is None:
            raise ValueError("process_running requires a pid")
        return self

    @model_validator(mode="after")
    def _unique_issues(self) -> "ServiceStatus":
        if len(set(self.issues)) != len(self.issues):
            raise ValueError("service issues must be unique")
        return self

    @property
    def is_status_unknown(self) -> bool:
        return bool(self.unknown_sources)


ResolutionAction = Literal["terminated", "reregistered", "registered", "skipped"]


class ResolvedConflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue: Optional[ServiceIssue] = None
    action: ResolutionAction
    success: bool
    message: str
    undo_command: Optional[List[str]] = None


# -----------------------------
# Verification
# -----------------------------

class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RegistryEntry(BaseModel):
    """One row of the OS extension registry listing."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    team_id: Optional[str] = None
    version: Optional[str] = None
    build: Optional[str] = None
    name: Optional[str] = None
    enabled: bool = False
    active: bool = False
    state: str = "unknown"


class Check(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    passed: bool
    message: str
    severity: Severity = Severity.INFO


class Issue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ErrorKind
    message: str
    remediation: str

    @model_validator(mode="after")
    def _remediation_required(self) -> "Issue":
        if not self.remediation.strip():
            raise ValueError(f"issue '{self.id}' has no remediation text")
        return self


OverallStatus = Literal["fully_functional", "partially_functional", "non_functional", "indeterminate"]


class VerificationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall: OverallStatus
    limitations: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    diagnostic_failure: Optional[str] = None
    checks: List[Check] = Field(default_factory=list)
    issues: List[Issue] = Field(default_factory=list)
    entries: List[RegistryEntry] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def is_fully_functional(self) -> bool:
        return self.overall == "fully_functional"


# -----------------------------
# Orchestration
# -----------------------------

class OrchestrationPhase(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    ACTIVATING = "activating"
    RECONCILING = "reconciling"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class OrchestrationError(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: OrchestrationPhase
    kind: ErrorKind
    message: str
    remediation: List[str] = Field(default_factory=list)


class RollbackRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    succeeded: bool
    detail: Optional[str] = None


RunStatus = Literal["succeeded", "failed", "indeterminate"]


class OrchestrationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: OrchestrationPhase
    final_state: OrchestrationPhase
    success: bool
    status: RunStatus
    errors: List[OrchestrationError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    rollback_actions: List[RollbackRecord] = Field(default_factory=list)
    duration_seconds: float = 0.0
    activation_submitted: bool = False

    descriptor: Optional[BundleDescriptor] = None
    activation: Optional[ActivationOutcome] = None
    service_status: Optional[ServiceStatus] = None
    verification: Optional[VerificationOutcome] = None


# -----------------------------
# API views
# -----------------------------

class ActivationHandleView(BaseModel):
    handle_id: str
    identifier: str
    kind: Literal["activation", "deactivation"]
    request_id: Optional[str] = None
    submitted_at: datetime
    outcome: ActivationOutcome
    history: List[ActivationState] = Field(default_factory=list)


class ResolveConflictsResponse(BaseModel):
    before: ServiceStatus
    resolutions: List[ResolvedConflict] = Field(default_factory=list)
    after: ServiceStatus


class InstallRequest(BaseModel):
    timeout: Optional[float] = Field(default=None, gt=0)


class DeactivateRequest(BaseModel):
    identifier: Optional[str] = None
