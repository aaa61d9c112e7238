"""
Custom Exceptions for the OverSkill Pipeline
============================================

Use these instead of generic Exception so callers can tell apart:
1. Build failures that happen inside the toolchain
2. Policy violations (size ceiling, secret naming, subdomains)
3. Platform failures reported by Cloudflare, R2 or GitHub

Usage:
    from overskill.core.exceptions import SizeViolationError, CloudflareAPIError

    try:
        package = optimizer.optimize(artifact)
    except SizeViolationError as e:
        logger.error(f"Worker too large: {e}")
        raise
"""

from typing import Optional, Any, Dict, List


class OverskillError(Exception):
    """Base exception for all pipeline errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Source File Errors
# ============================================

class FileSetError(OverskillError):
    """A source file set invariant was violated"""

    def __init__(self, message: str, path: Optional[str] = None):
        details = {"path": path} if path is not None else {}
        super().__init__(message, code="INVALID_FILE_SET", details=details)


# ============================================
# Build Errors
# ============================================

class BuildFailureError(OverskillError):
    """Base class for toolchain failures"""

    def __init__(self, message: str, code: str = "BUILD_FAILED",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class BuildExecutionError(BuildFailureError):
    """The toolchain could not be started at all"""

    def __init__(self, command: str, reason: str):
        super().__init__(
            f"Could not run '{command}': {reason}",
            code="BUILD_EXECUTION_ERROR",
            details={"command": command, "reason": reason}
        )


class BuildTimeoutError(BuildFailureError):
    """The toolchain exceeded its timeout and was killed"""

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"'{command}' timed out after {timeout:.0f}s",
            code="BUILD_TIMEOUT",
            details={"command": command, "timeout": timeout}
        )


class BuildOutputMissingError(BuildFailureError):
    """Build finished but produced no output directory"""

    def __init__(self, output_dir: str, log: str = ""):
        super().__init__(
            f"Build produced no output directory '{output_dir}'",
            code="BUILD_OUTPUT_MISSING",
            details={"output_dir": output_dir, "log": log}
        )


class BuildInProgressError(BuildFailureError):
    """Another build holds the lock for this app and target"""

    def __init__(self, app_id: str, target: str):
        super().__init__(
            f"A build for app '{app_id}' ({target}) is already running",
            code="BUILD_IN_PROGRESS",
            details={"app_id": app_id, "target": target}
        )


# ============================================
# Worker Size Errors
# ============================================

class SizeViolationError(OverskillError):
    """Embedded worker content exceeds the configured ceiling"""

    def __init__(self, size: int, limit: int, message: Optional[str] = None,
                 assets: Optional[List[str]] = None):
        super().__init__(
            message or f"Worker size {size} bytes exceeds limit of {limit} bytes",
            code="WORKER_SIZE_VIOLATION",
            details={"size": size, "limit": limit, "assets": assets or []}
        )
        self.size = size
        self.limit = limit


# ============================================
# Deployment Policy Errors
# ============================================

class SecretPolicyError(OverskillError):
    """User-visible environment variables look like secrets"""

    def __init__(self, keys: List[str]):
        super().__init__(
            f"Environment variables with secret-like names are not allowed: {', '.join(keys)}",
            code="SECRET_POLICY_VIOLATION",
            details={"keys": keys}
        )


class InvalidSubdomainError(OverskillError):
    """Subdomain does not satisfy DNS label rules"""

    def __init__(self, subdomain: str):
        super().__init__(
            f"Invalid subdomain '{subdomain}'",
            code="INVALID_SUBDOMAIN",
            details={"subdomain": subdomain}
        )


class InvalidTransitionError(OverskillError):
    """Deployment attempted an illegal state transition"""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot transition deployment from '{current}' to '{requested}'",
            code="INVALID_TRANSITION",
            details={"from": current, "to": requested}
        )


class DeploymentCancelledError(OverskillError):
    """Deployment was cancelled between pipeline stages"""

    def __init__(self, stage: str):
        super().__init__(
            f"Deployment cancelled before '{stage}'",
            code="DEPLOYMENT_CANCELLED",
            details={"stage": stage}
        )


# ============================================
# Platform Errors (external services)
# ============================================

class PlatformError(OverskillError):
    """Base class for failures reported by an external platform"""

    def __init__(self, message: str, code: str = "PLATFORM_ERROR",
                 status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class CloudflareAPIError(PlatformError):
    """Cloudflare API returned a failure envelope or a non-2xx status"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            f"Cloudflare API error: {message}",
            code="CLOUDFLARE_API_ERROR",
            status_code=status_code,
            details={"errors": errors or []}
        )
        self.platform_message = message


class StorageError(PlatformError):
    """Object storage upload or lookup failed"""

    def __init__(self, message: str, key: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(
            f"Storage error: {message}",
            code="STORAGE_ERROR",
            status_code=status_code,
            details={"key": key} if key else {}
        )


class GitHubAPIError(PlatformError):
    """GitHub API call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            f"GitHub API error: {message}",
            code="GITHUB_API_ERROR",
            status_code=status_code
        )
