from .activation import ActivationChannel, ActivationCoordinator, ActivationHandle
from .bundle_locator import BundleLocator
from .commands import CommandResult, CommandRunner
from .developer_mode import DeveloperModeDetector, DeveloperModeStatus
from .orchestrator import InstallationOrchestrator, ProgressReporter
from .registrar import HelperProcessRegistrar, RegistrarCallbacks, RegistrarClient
from .service_lifecycle import ServiceLifecycleCoordinator
from .verifier import InstallationVerifier

__all__ = [
    "ActivationChannel",
    "ActivationCoordinator",
    "ActivationHandle",
    "BundleLocator",
    "CommandResult",
    "CommandRunner",
    "DeveloperModeDetector",
    "DeveloperModeStatus",
    "HelperProcessRegistrar",
    "InstallationOrchestrator",
    "InstallationVerifier",
    "ProgressReporter",
    "RegistrarCallbacks",
    "RegistrarClient",
    "ServiceLifecycleCoordinator",
]
