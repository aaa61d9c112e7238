"""
Deployment Coordinator - Build, self-heal and deploy an app to a target

Flow for one deploy request:

    pending -> building -> deploying -> deployed
                  |            |
                  v            v
          building_failed   deploying_failed
                  |
                  v
               fixing -> building (bounded)

A failed build is classified by the BuildErrorDetector. Auto-fixable errors are
patched by the AutoFixEngine and the build is retried; anything else ends the
attempt with a failure reason the caller can act on. Platform failures are never
retried here beyond the transport-level backoff of the clients.

Promotion redeploys a cached BuildArtifact to another target without rebuilding.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from overskill.core.config import settings
from overskill.core.exceptions import (
    BuildFailureError,
    BuildOutputMissingError,
    DeploymentCancelledError,
    InvalidSubdomainError,
    InvalidTransitionError,
    OverskillError,
    PlatformError,
    SecretPolicyError,
    SizeViolationError,
)
from overskill.core.logging_config import logger, set_app_id, set_deployment_id, generate_deployment_id
from overskill.services.app_store import AppContext, AppStore, AppVersion, DeploymentRecord
from overskill.services.auto_fixer import AutoFixEngine, FixResult, auto_fix_engine
from overskill.services.build_error_detector import BuildError, BuildErrorDetector, build_error_detector
from overskill.services.build_executor import BuildExecutor, BuildMode, BuildResult, build_executor, select_build_mode
from overskill.services.cloudflare_client import CloudflareClient, cloudflare_client
from overskill.services.deployment_targets import (
    DeploymentTarget,
    WorkerSecretSet,
    build_secret_set,
    route_pattern,
    target_url,
    worker_name,
)
from overskill.services.r2_storage import R2StorageService, r2_storage
from overskill.services.source_file_set import SourceFileSet
from overskill.services.worker_optimizer import (
    BuildArtifact,
    OptimizedPackage,
    WorkerSizeOptimizer,
    worker_size_optimizer,
)


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    BUILDING_FAILED = "building_failed"
    FIXING = "fixing"
    DEPLOYING = "deploying"
    DEPLOYING_FAILED = "deploying_failed"
    DEPLOYED = "deployed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    RETRIES_EXHAUSTED = "retries_exhausted"
    NON_FIXABLE_ERROR = "non_fixable_error"
    PLATFORM_REJECTED = "platform_rejected"
    UNCLASSIFIED_BUILD_FAILURE = "unclassified_build_failure"
    FIX_FAILED = "fix_failed"
    SIZE_VIOLATION = "size_violation"
    BUILD_OUTPUT_MISSING = "build_output_missing"
    INVALID_CONFIGURATION = "invalid_configuration"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    DeploymentStatus.DEPLOYED,
    DeploymentStatus.DEPLOYING_FAILED,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
}

ALLOWED_TRANSITIONS = {
    # pending -> deploying is the promotion path (artifact reuse)
    DeploymentStatus.PENDING: {DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING,
                               DeploymentStatus.FAILED, DeploymentStatus.CANCELLED},
    DeploymentStatus.BUILDING: {DeploymentStatus.BUILDING_FAILED, DeploymentStatus.DEPLOYING,
                                DeploymentStatus.FAILED, DeploymentStatus.CANCELLED},
    DeploymentStatus.BUILDING_FAILED: {DeploymentStatus.FIXING, DeploymentStatus.FAILED,
                                       DeploymentStatus.CANCELLED},
    DeploymentStatus.FIXING: {DeploymentStatus.BUILDING, DeploymentStatus.FAILED,
                              DeploymentStatus.CANCELLED},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.DEPLOYING_FAILED,
                                 DeploymentStatus.CANCELLED},
    DeploymentStatus.DEPLOYING_FAILED: set(),
    DeploymentStatus.DEPLOYED: set(),
    DeploymentStatus.FAILED: set(),
    DeploymentStatus.CANCELLED: set(),
}


class CancellationToken:
    """Cooperative cancellation, honoured at the next state transition"""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by user") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RolloutConfig:
    """
    Gate for auto-fix. Apps are bucketed by a stable hash of their id, so an
    app stays on the same side of the gate for a given percentage.
    """
    enabled: bool = True
    percentage: int = 100

    @classmethod
    def from_settings(cls) -> "RolloutConfig":
        return cls(enabled=settings.AUTO_FIX_ENABLED, percentage=settings.AUTO_FIX_ROLLOUT_PERCENTAGE)

    @staticmethod
    def bucket(app_id: str) -> int:
        return int(hashlib.sha256(str(app_id).encode("utf-8")).hexdigest()[:8], 16) % 100

    def allows(self, app_id: str) -> bool:
        if not self.enabled or self.percentage <= 0:
            return False
        if self.percentage >= 100:
            return True
        return self.bucket(app_id) < self.percentage


@dataclass
class CoordinatorPolicy:
    max_build_attempts: int = field(default_factory=lambda: settings.MAX_BUILD_ATTEMPTS)
    max_fixes_per_attempt: int = field(default_factory=lambda: settings.MAX_FIXES_PER_ATTEMPT)
    # Production targets never receive a development-mode artifact
    require_production_build: bool = True


@dataclass
class DeploymentAttempt:
    """Mutable lifecycle record of one deploy or promote request"""
    app_id: str
    target: DeploymentTarget
    mode: BuildMode
    deployment_id: str = field(default_factory=generate_deployment_id)
    attempt_number: int = 0
    status: DeploymentStatus = DeploymentStatus.PENDING
    errors: List[BuildError] = field(default_factory=list)
    history: List[Tuple[DeploymentStatus, datetime]] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None
    cancellation: Optional[CancellationToken] = None

    def transition(self, new_status: DeploymentStatus) -> None:
        """
        Move to new_status.

        Raises:
            InvalidTransitionError: new_status is not reachable from the current status
            DeploymentCancelledError: cancellation was requested (checked on every
                non-terminal transition)
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, new_status.value)
        if (self.cancellation is not None and self.cancellation.cancelled
                and new_status not in TERMINAL_STATUSES):
            raise DeploymentCancelledError(new_status.value)

        logger.debug(f"[DeploymentCoordinator] {self.app_id}/{self.target.value}: "
                     f"{self.status.value} -> {new_status.value}")
        self.status = new_status
        self.history.append((new_status, datetime.utcnow()))
        if new_status in TERMINAL_STATUSES:
            self.ended_at = datetime.utcnow()


@dataclass
class DeploymentResult:
    """What the caller sees; failures always say why"""
    success: bool
    status: DeploymentStatus
    target: DeploymentTarget
    mode: BuildMode
    attempts: int
    errors: List[BuildError] = field(default_factory=list)
    failure_reason: Optional[FailureReason] = None
    message: str = ""
    url: Optional[str] = None
    worker_name: Optional[str] = None
    deployment_id: Optional[str] = None
    build_log: str = ""
    fixes: List[FixResult] = field(default_factory=list)
    version: Optional[AppVersion] = None
    worker_size: Optional[int] = None
    reused_artifact: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "target": self.target.value,
            "mode": self.mode.value,
            "attempts": self.attempts,
            "errors": [e.to_dict() for e in self.errors],
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "message": self.message,
            "url": self.url,
            "worker_name": self.worker_name,
            "deployment_id": self.deployment_id,
            "fixes_applied": sum(1 for f in self.fixes if f.success),
            "version": self.version.version_number if self.version else None,
            "worker_size": self.worker_size,
            "reused_artifact": self.reused_artifact,
        }


@dataclass
class _CachedBuild:
    artifact: BuildArtifact
    files: SourceFileSet
    version_number: Optional[int] = None


class _AttemptFailed(Exception):
    """Internal: ends an attempt with a failure reason"""

    def __init__(self, reason: FailureReason, message: str, status: DeploymentStatus = DeploymentStatus.FAILED,
                 build_log: str = ""):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status = status
        self.build_log = build_log


class DeploymentCoordinator:
    """Runs the build -> fix -> deploy state machine for one app at a time per target"""

    LOG_TAIL_CHARS = 4000

    def __init__(
        self,
        store: AppStore,
        executor: Optional[BuildExecutor] = None,
        detector: Optional[BuildErrorDetector] = None,
        fixer: Optional[AutoFixEngine] = None,
        optimizer: Optional[WorkerSizeOptimizer] = None,
        storage: Optional[R2StorageService] = None,
        cloudflare: Optional[CloudflareClient] = None,
        rollout: Optional[RolloutConfig] = None,
        policy: Optional[CoordinatorPolicy] = None,
    ):
        self.store = store
        self.executor = executor or build_executor
        self.detector = detector or build_error_detector
        self.fixer = fixer or auto_fix_engine
        self.optimizer = optimizer or worker_size_optimizer
        self.storage = storage or r2_storage
        self.cloudflare = cloudflare or cloudflare_client
        self.rollout = rollout or RolloutConfig.from_settings()
        self.policy = policy or CoordinatorPolicy()
        self._builds: Dict[Tuple[str, DeploymentTarget], _CachedBuild] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def select_mode(self, intent: Optional[str], target: DeploymentTarget) -> BuildMode:
        if target.requires_production_build and self.policy.require_production_build:
            return BuildMode.PRODUCTION
        return select_build_mode(intent)

    def cached_artifact(self, app_id: str, target: DeploymentTarget) -> Optional[BuildArtifact]:
        cached = self._builds.get((app_id, target))
        return cached.artifact if cached else None

    async def deploy(
        self,
        app: AppContext,
        files: SourceFileSet,
        intent: Optional[str] = None,
        target: DeploymentTarget = DeploymentTarget.PREVIEW,
        cancellation: Optional[CancellationToken] = None,
        mode: Optional[BuildMode] = None,
    ) -> DeploymentResult:
        """
        Build files (fixing what can be fixed), then deploy to target.

        Args:
            app: app identity, subdomain and user variables
            files: source tree to build; never mutated
            intent: free-text request used to pick the build mode
            target: preview, staging or production
            cancellation: checked at every state transition
            mode: overrides intent-based mode selection
        """
        mode = mode or self.select_mode(intent, target)
        attempt = DeploymentAttempt(app_id=app.app_id, target=target, mode=mode, cancellation=cancellation)
        set_app_id(app.app_id)
        set_deployment_id(attempt.deployment_id)
        logger.log_deploy_event("requested", target.value, mode=mode.value)

        fixes: List[FixResult] = []
        build_log = ""
        start = time.time()
        try:
            secret_set = self._prepare_configuration(app, target, attempt)
            current = files.copy()
            result, current = await self._build_with_fixes(attempt, app, current, target, fixes)
            build_log = result.log

            package, url, name = await self._deploy_artifact(attempt, app, result.artifact, target, secret_set)

            version = await self.store.save_version(
                app.app_id, current, self._changelog(target, mode, fixes)
            )
            await self.store.record_deployment(DeploymentRecord(
                app_id=app.app_id,
                target=target.value,
                url=url,
                worker_name=name,
                build_id=result.artifact.build_id,
                version_number=version.version_number,
            ))
            self._builds[(app.app_id, target)] = _CachedBuild(result.artifact, current, version.version_number)
            attempt.transition(DeploymentStatus.DEPLOYED)

            logger.log_deploy_event("deployed", target.value, url=url, attempts=attempt.attempt_number)
            logger.log_performance("deploy", (time.time() - start) * 1000, threshold_ms=120_000)
            return self._result(attempt, url=url, worker_name=name, build_log=build_log, fixes=fixes,
                                version=version, worker_size=package.worker_size)

        except _AttemptFailed as e:
            return self._fail(attempt, e.reason, e.message, status=e.status,
                              build_log=e.build_log or build_log, fixes=fixes)
        except DeploymentCancelledError as e:
            return self._cancelled(attempt, e, build_log, fixes)
        except Exception as e:
            return self._unexpected(attempt, e, build_log=build_log, fixes=fixes)

    async def promote(
        self,
        app: AppContext,
        from_target: DeploymentTarget,
        to_target: DeploymentTarget,
        rebuild: bool = False,
        cancellation: Optional[CancellationToken] = None,
    ) -> DeploymentResult:
        """
        Redeploy the artifact last deployed to from_target onto to_target.

        A fresh build runs instead when nothing is cached for from_target, when
        rebuild is requested, or when to_target needs a production build and the
        cached artifact was built in development mode.
        """
        cached = self._builds.get((app.app_id, from_target))
        needs_production = to_target.requires_production_build and self.policy.require_production_build
        stale_mode = (cached is not None and needs_production
                      and cached.artifact.build_mode != BuildMode.PRODUCTION.value)

        if cached is None or rebuild or stale_mode:
            files = cached.files if cached is not None else await self.store.get_files(app.app_id)
            if files is None:
                attempt = DeploymentAttempt(app_id=app.app_id, target=to_target,
                                            mode=self.select_mode(None, to_target))
                return self._fail(attempt, FailureReason.INVALID_CONFIGURATION,
                                  f"No build or stored sources for app {app.app_id} to promote")
            logger.info(f"[DeploymentCoordinator] Promoting {app.app_id} {from_target.value} -> "
                        f"{to_target.value} with a fresh build")
            return await self.deploy(app, files, target=to_target, cancellation=cancellation,
                                     mode=self.select_mode(None, to_target))

        artifact = cached.artifact
        attempt = DeploymentAttempt(app_id=app.app_id, target=to_target,
                                    mode=BuildMode(artifact.build_mode), cancellation=cancellation)
        set_app_id(app.app_id)
        set_deployment_id(attempt.deployment_id)
        logger.info(f"[DeploymentCoordinator] Promoting {app.app_id} {from_target.value} -> "
                    f"{to_target.value} reusing build {artifact.build_id}")
        try:
            secret_set = self._prepare_configuration(app, to_target, attempt)
            package, url, name = await self._deploy_artifact(attempt, app, artifact, to_target, secret_set)
            await self.store.record_deployment(DeploymentRecord(
                app_id=app.app_id,
                target=to_target.value,
                url=url,
                worker_name=name,
                build_id=artifact.build_id,
                version_number=cached.version_number,
            ))
            self._builds[(app.app_id, to_target)] = cached
            attempt.transition(DeploymentStatus.DEPLOYED)
            logger.log_deploy_event("promoted", to_target.value, url=url, source=from_target.value)
            return self._result(attempt, url=url, worker_name=name, worker_size=package.worker_size,
                                reused_artifact=True)
        except _AttemptFailed as e:
            return self._fail(attempt, e.reason, e.message, status=e.status)
        except DeploymentCancelledError as e:
            return self._cancelled(attempt, e)
        except Exception as e:
            return self._unexpected(attempt, e)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prepare_configuration(self, app: AppContext, target: DeploymentTarget,
                               attempt: DeploymentAttempt) -> WorkerSecretSet:
        """Validate naming and secrets before any build work starts"""
        try:
            target_url(app.subdomain, target)
            return build_secret_set(app.app_id, app.owner_id, app.env_vars)
        except (InvalidSubdomainError, SecretPolicyError) as e:
            raise _AttemptFailed(FailureReason.INVALID_CONFIGURATION, e.message)

    async def _build_with_fixes(
        self,
        attempt: DeploymentAttempt,
        app: AppContext,
        files: SourceFileSet,
        target: DeploymentTarget,
        fixes: List[FixResult],
    ) -> Tuple[BuildResult, SourceFileSet]:
        """Bounded build/classify/fix loop; applied fixes are appended to fixes"""
        auto_fix = self.rollout.allows(app.app_id)

        while True:
            attempt.attempt_number += 1
            attempt.transition(DeploymentStatus.BUILDING)
            logger.log_build_event("attempt", attempt.mode.value, attempt=attempt.attempt_number,
                                   target=target.value)
            try:
                result = await self.executor.build(files, attempt.mode, app.app_id, target.value)
            except BuildOutputMissingError as e:
                raise _AttemptFailed(FailureReason.BUILD_OUTPUT_MISSING, e.message,
                                     build_log=e.details.get("log", ""))
            except BuildFailureError as e:
                raise _AttemptFailed(FailureReason.UNCLASSIFIED_BUILD_FAILURE, e.message)

            if result.success:
                attempt.errors = []
                return result, files

            attempt.transition(DeploymentStatus.BUILDING_FAILED)
            extra_roots = [result.workspace_dir] if result.workspace_dir else None
            errors = self.detector.analyze_text(result.log, extra_roots=extra_roots)
            attempt.errors = errors
            log_tail = result.log[-self.LOG_TAIL_CHARS:]

            if not errors:
                raise _AttemptFailed(
                    FailureReason.UNCLASSIFIED_BUILD_FAILURE,
                    "Build timed out" if result.timed_out else
                    f"Build failed with exit code {result.exit_code} and no recognizable errors",
                    build_log=log_tail,
                )

            blocking = [e for e in errors if not e.auto_fixable]
            if blocking:
                raise _AttemptFailed(
                    FailureReason.NON_FIXABLE_ERROR,
                    "; ".join(f"{e.location}: {e.message}" for e in blocking),
                    build_log=log_tail,
                )

            if attempt.attempt_number >= self.policy.max_build_attempts:
                raise _AttemptFailed(
                    FailureReason.RETRIES_EXHAUSTED,
                    f"Build still failing after {attempt.attempt_number} attempts "
                    f"({len(errors)} errors remaining)",
                    build_log=log_tail,
                )

            if not auto_fix:
                raise _AttemptFailed(FailureReason.FIX_FAILED,
                                     f"Auto-fix is not enabled for app {app.app_id}",
                                     build_log=log_tail)

            attempt.transition(DeploymentStatus.FIXING)
            batch = self.fixer.apply_fixes(errors, files, limit=self.policy.max_fixes_per_attempt)
            fixes.extend(batch.results)
            if batch.applied == 0:
                raise _AttemptFailed(
                    FailureReason.FIX_FAILED,
                    "; ".join(f"{r.file_path}: {r.error}" for r in batch.failed) or "No fix could be applied",
                    build_log=log_tail,
                )
            files = batch.files

    async def _deploy_artifact(
        self,
        attempt: DeploymentAttempt,
        app: AppContext,
        artifact: BuildArtifact,
        target: DeploymentTarget,
        secret_set: WorkerSecretSet,
    ) -> Tuple[OptimizedPackage, str, str]:
        """Package, upload offloaded assets, then push the worker"""
        attempt.transition(DeploymentStatus.DEPLOYING)
        build_id = artifact.build_id or uuid.uuid4().hex[:12]
        name = worker_name(app.app_id, target)
        url = target_url(app.subdomain, target)

        try:
            package = self.optimizer.optimize(
                artifact, self.storage.cdn_url_planner(app.app_id, build_id), app_label=app.name or app.app_id
            )
        except SizeViolationError as e:
            raise _AttemptFailed(FailureReason.SIZE_VIOLATION, e.message, status=DeploymentStatus.DEPLOYING_FAILED)

        try:
            await self.storage.upload_assets(app.app_id, build_id, package.offloaded_assets)
            await self.cloudflare.deploy_worker(
                name,
                package.worker_script,
                secret_set,
                pattern=route_pattern(app.subdomain, target),
                url=url,
            )
        except PlatformError as e:
            logger.log_deploy_event("rejected", target.value, success=False, reason=e.message)
            raise _AttemptFailed(FailureReason.PLATFORM_REJECTED, e.message,
                                 status=DeploymentStatus.DEPLOYING_FAILED)
        return package, url, name

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _changelog(target: DeploymentTarget, mode: BuildMode, fixes: List[FixResult]) -> str:
        applied = [f for f in fixes if f.success]
        changelog = f"Deployed to {target.value} ({mode.value} build)"
        if applied:
            changelog += f"; auto-fixed {len(applied)} error(s): " + ", ".join(
                f"{f.error_type.value} in {f.file_path}" for f in applied
            )
        return changelog

    @staticmethod
    def _result(attempt: DeploymentAttempt, **kwargs) -> DeploymentResult:
        return DeploymentResult(
            success=attempt.status == DeploymentStatus.DEPLOYED,
            status=attempt.status,
            target=attempt.target,
            mode=attempt.mode,
            attempts=attempt.attempt_number,
            errors=list(attempt.errors),
            deployment_id=attempt.deployment_id,
            **kwargs,
        )

    def _fail(self, attempt: DeploymentAttempt, reason: FailureReason, message: str,
              status: DeploymentStatus = DeploymentStatus.FAILED, build_log: str = "",
              fixes: Optional[List[FixResult]] = None) -> DeploymentResult:
        if attempt.status in (DeploymentStatus.DEPLOYING, DeploymentStatus.DEPLOYING_FAILED):
            status = DeploymentStatus.DEPLOYING_FAILED
        attempt.transition(status)
        logger.log_deploy_event("failed", attempt.target.value, success=False, reason=reason.value,
                                attempts=attempt.attempt_number)
        return self._result(attempt, failure_reason=reason, message=message, build_log=build_log,
                            fixes=fixes or [])

    def _cancelled(self, attempt: DeploymentAttempt, error: DeploymentCancelledError,
                   build_log: str = "", fixes: Optional[List[FixResult]] = None) -> DeploymentResult:
        reason = attempt.cancellation.reason if attempt.cancellation else None
        attempt.transition(DeploymentStatus.CANCELLED)
        logger.log_deploy_event("cancelled", attempt.target.value, success=False, reason=reason)
        return self._result(attempt, failure_reason=FailureReason.CANCELLED,
                            message=reason or error.message, build_log=build_log, fixes=fixes or [])

    def _unexpected(self, attempt: DeploymentAttempt, error: Exception, build_log: str = "",
                    fixes: Optional[List[FixResult]] = None) -> DeploymentResult:
        """End the attempt on an error no stage handled, with a reason for the stage it hit"""
        if attempt.status in TERMINAL_STATUSES:
            raise error
        logger.log_error_with_context(error, "DeploymentCoordinator", stage=attempt.status.value)

        if isinstance(error, PlatformError) or attempt.status == DeploymentStatus.DEPLOYING:
            reason = FailureReason.PLATFORM_REJECTED
        elif attempt.status == DeploymentStatus.PENDING:
            reason = FailureReason.INVALID_CONFIGURATION
        else:
            reason = FailureReason.UNCLASSIFIED_BUILD_FAILURE
        message = error.message if isinstance(error, OverskillError) else f"{type(error).__name__}: {error}"
        return self._fail(attempt, reason, message, build_log=build_log, fixes=fixes)
