"""
Retry Policy - Exponential backoff for transient external failures

Only network-level failures and 5xx responses are retried. 4xx responses are
application errors and are raised immediately. Sleep is injectable so retry
behaviour can be tested without real delays.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar
from dataclasses import dataclass, field

import httpx
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from overskill.core.config import settings
from overskill.core.exceptions import PlatformError
from overskill.core.logging_config import logger


T = TypeVar("T")

TRANSIENT_STATUS_CODES = {500, 502, 503, 504}
TRANSIENT_S3_CODES = {"InternalError", "ServiceUnavailable", "SlowDown", "RequestTimeout"}


@dataclass
class BackoffPolicy:
    """Attempt count and delay schedule: min(base * multiplier**attempt, max)"""
    max_attempts: int = field(default_factory=lambda: settings.API_MAX_RETRIES)
    base_delay: float = field(default_factory=lambda: settings.API_RETRY_BASE_DELAY)
    max_delay: float = field(default_factory=lambda: settings.API_RETRY_MAX_DELAY)
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt"""
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)


def is_transient_error(error: BaseException) -> bool:
    """True for failures worth retrying: network errors and 5xx responses"""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, PlatformError):
        return error.status_code is not None and error.status_code in TRANSIENT_STATUS_CODES
    if isinstance(error, (EndpointConnectionError, ConnectionClosedError,
                          ConnectTimeoutError, ReadTimeoutError)):
        return True
    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        code = error.response.get("Error", {}).get("Code", "")
        return status in TRANSIENT_STATUS_CODES or code in TRANSIENT_S3_CODES
    return isinstance(error, (ConnectionError, TimeoutError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[BackoffPolicy] = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    name: str = "operation",
) -> T:
    policy = policy or BackoffPolicy()
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e) or attempt >= policy.max_attempts - 1:
                if is_transient(e):
                    logger.error(f"[Retry] {name}: all {policy.max_attempts} attempts failed: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(f"[Retry] {name}: attempt {attempt + 1}/{policy.max_attempts} failed: {e}. "
                           f"Retrying in {delay:.1f}s...")
            await sleep(delay)
    raise RuntimeError(f"{name}: retry policy allows no attempts")


def retry_sync(
    operation: Callable[[], T],
    policy: Optional[BackoffPolicy] = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Any] = time.sleep,
    name: str = "operation",
) -> T:
    policy = policy or BackoffPolicy()
    for attempt in range(policy.max_attempts):
        try:
            return operation()
        except Exception as e:
            if not is_transient(e) or attempt >= policy.max_attempts - 1:
                if is_transient(e):
                    logger.error(f"[Retry] {name}: all {policy.max_attempts} attempts failed: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(f"[Retry] {name}: attempt {attempt + 1}/{policy.max_attempts} failed: {e}. "
                           f"Retrying in {delay:.1f}s...")
            sleep(delay)
    raise RuntimeError(f"{name}: retry policy allows no attempts")

