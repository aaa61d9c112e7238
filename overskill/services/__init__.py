from overskill.services.source_file_set import SourceFile, SourceFileSet
from overskill.services.build_error_detector import BuildError, BuildErrorDetector, ErrorType, build_error_detector
from overskill.services.auto_fixer import AutoFixEngine, FixResult, auto_fix_engine
from overskill.services.worker_optimizer import (
    BuildArtifact,
    OptimizedPackage,
    WorkerSizeOptimizer,
    worker_size_optimizer,
)
from overskill.services.build_executor import BuildExecutor, BuildMode, build_executor, select_build_mode

# Deployment
from overskill.services.deployment_targets import DeploymentTarget
from overskill.services.app_store import AppContext, AppStore, InMemoryAppStore
from overskill.services.deployment_coordinator import (
    CancellationToken,
    DeploymentCoordinator,
    DeploymentResult,
    DeploymentStatus,
    FailureReason,
    RolloutConfig,
)

__all__ = [
    # Source and build
    "SourceFile",
    "SourceFileSet",
    "BuildError",
    "BuildErrorDetector",
    "ErrorType",
    "build_error_detector",
    "AutoFixEngine",
    "FixResult",
    "auto_fix_engine",
    "BuildArtifact",
    "OptimizedPackage",
    "WorkerSizeOptimizer",
    "worker_size_optimizer",
    "BuildExecutor",
    "BuildMode",
    "build_executor",
    "select_build_mode",
    # Deployment
    "DeploymentTarget",
    "AppContext",
    "AppStore",
    "InMemoryAppStore",
    "CancellationToken",
    "DeploymentCoordinator",
    "DeploymentResult",
    "DeploymentStatus",
    "FailureReason",
    "RolloutConfig",
]
