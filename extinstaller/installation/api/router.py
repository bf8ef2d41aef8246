# extinstaller/installation/api/router.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ...config import load_config
from ..domain.errors import ErrorKind
from ..domain.models import (
    ActivationHandleView,
    BundleDescriptor,
    DeactivateRequest,
    InstallRequest,
    OrchestrationPhase,
    OrchestrationResult,
    ResolveConflictsResponse,
    ServiceStatus,
    VerificationOutcome,
)
from ..services.activation import ActivationHandle
from ..services.developer_mode import DeveloperModeStatus
from ..services.orchestrator import InstallationOrchestrator

router = APIRouter(tags=["installer"])
logger = logging.getLogger("extinstaller.api")

# ----------------------------
# Singletons
# ----------------------------

_orchestrator: Optional[InstallationOrchestrator] = None


def get_orchestrator() -> InstallationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = InstallationOrchestrator(load_config())
    return _orchestrator


def _handle_view(handle: ActivationHandle) -> ActivationHandleView:
    return ActivationHandleView(
        handle_id=handle.handle_id,
        identifier=handle.identifier,
        kind=handle.kind,
        request_id=handle.request_id,
        submitted_at=handle.submitted_at,
        outcome=handle.outcome,
        history=handle.channel.states,
    )


# ----------------------------
# Discovery / status
# ----------------------------

@router.get("/bundle", response_model=BundleDescriptor)
def get_bundle(orch: InstallationOrchestrator = Depends(get_orchestrator)) -> BundleDescriptor:
    """
    Locate the extension bundle. found=false lists every searched root.
    """
    return orch.locator.locate()


@router.get("/service", response_model=ServiceStatus)
def get_service_status(orch: InstallationOrchestrator = Depends(get_orchestrator)) -> ServiceStatus:
    return orch.service.reconcile()


@router.post("/service/resolve", response_model=ResolveConflictsResponse)
def resolve_service_conflicts(
    orch: InstallationOrchestrator = Depends(get_orchestrator),
) -> ResolveConflictsResponse:
    """
    Reconcile, apply conservative conflict resolution, then reconcile again.
    """
    logger.info("POST /service/resolve called")
    before = orch.service.reconcile()
    resolutions = orch.service.resolve_conflicts(before)
    after = orch.service.reconcile() if resolutions else before
    return ResolveConflictsResponse(before=before, resolutions=resolutions, after=after)


@router.get("/verify", response_model=VerificationOutcome)
def verify_installation(orch: InstallationOrchestrator = Depends(get_orchestrator)) -> VerificationOutcome:
    return orch.verifier.verify()


@router.get("/developer-mode", response_model=DeveloperModeStatus)
def get_developer_mode(orch: InstallationOrchestrator = Depends(get_orchestrator)) -> DeveloperModeStatus:
    detector = orch.activation.developer_mode
    if detector is None:
        return DeveloperModeStatus(enabled=None, error="developer mode detection is not configured")
    return detector.detect()


# ----------------------------
# Activation requests
# ----------------------------

@router.post("/activation", response_model=ActivationHandleView)
def submit_activation(orch: InstallationOrchestrator = Depends(get_orchestrator)) -> ActivationHandleView:
    """
    Locate the bundle and submit it to the registrar without waiting.
    Poll GET /activation/{handle_id} for the outcome.
    """
    descriptor = orch.locator.locate()
    if not descriptor.found:
        raise HTTPException(status_code=404, detail="No valid system extension bundle found")
    handle, _ = orch.activation.submit(descriptor)
    logger.info("POST /activation submitted %s (handle %s)", handle.identifier, handle.handle_id)
    return _handle_view(handle)


@router.post("/deactivation", response_model=ActivationHandleView)
def submit_deactivation(
    req: Optional[DeactivateRequest] = None,
    orch: InstallationOrchestrator = Depends(get_orchestrator),
) -> ActivationHandleView:
    identifier = (req.identifier if req else None) or orch.config.bundle_identifier
    handle, _ = orch.activation.submit_deactivation(identifier)
    logger.info("POST /deactivation submitted %s (handle %s)", identifier, handle.handle_id)
    return _handle_view(handle)


@router.get("/activation/{handle_id}", response_model=ActivationHandleView)
def get_activation(handle_id: str, orch: InstallationOrchestrator = Depends(get_orchestrator)) -> ActivationHandleView:
    handle = orch.activation.get_handle(handle_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Unknown activation handle: {handle_id}")
    return _handle_view(handle)


@router.post("/activation/{handle_id}/cancel", response_model=ActivationHandleView)
def cancel_activation(handle_id: str, orch: InstallationOrchestrator = Depends(get_orchestrator)) -> ActivationHandleView:
    handle = orch.activation.get_handle(handle_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Unknown activation handle: {handle_id}")
    orch.activation.cancel(handle)
    return _handle_view(handle)


# ----------------------------
# Full installation
# ----------------------------

@router.post("/install", response_model=OrchestrationResult)
def install(
    req: Optional[InstallRequest] = None,
    orch: InstallationOrchestrator = Depends(get_orchestrator),
) -> OrchestrationResult:
    """
    Run locate -> activate -> reconcile -> verify. Blocks until the registrar
    answers or the timeout passes.

    Example:
      curl -X POST http://localhost:9002/api/installer/install \
        -H 'Content-Type: application/json' -d '{"timeout": 120}'
    """
    if orch.is_running():
        raise HTTPException(status_code=409, detail="An installation run is already in progress")

    req = req or InstallRequest()
    logger.info("POST /install called (timeout=%s)", req.timeout)
    result = orch.run(timeout=req.timeout)

    rejected = (
        result.phase == OrchestrationPhase.IDLE
        and result.errors
        and result.errors[0].kind == ErrorKind.CONFLICT
    )
    if rejected:
        raise HTTPException(status_code=409, detail=result.errors[0].message)
    return result
