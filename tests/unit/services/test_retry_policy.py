"""
Unit Tests for the retry policy
"""
import pytest
import httpx
from unittest.mock import AsyncMock, Mock, call
from botocore.exceptions import ClientError, EndpointConnectionError

from overskill.core.exceptions import CloudflareAPIError, StorageError
from overskill.services.retry_policy import BackoffPolicy, is_transient_error, retry_async, retry_sync


def client_error(code, status):
    return ClientError({"Error": {"Code": code, "Message": code},
                        "ResponseMetadata": {"HTTPStatusCode": status}}, "PutObject")


def status_error(status):
    request = httpx.Request("GET", "https://api.test/x")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status, request=request))


class TestBackoffPolicy:
    """Test the delay schedule"""

    def test_exponential_with_cap(self):
        policy = BackoffPolicy(max_attempts=7, base_delay=1.0, max_delay=30.0)

        assert [policy.delay_for(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_defaults_from_settings(self):
        policy = BackoffPolicy()

        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0


class TestIsTransientError:
    """Test which failures are retried"""

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        status_error(503),
        CloudflareAPIError("upstream", status_code=502),
        client_error("SlowDown", 503),
        client_error("InternalError", 500),
        EndpointConnectionError(endpoint_url="https://r2.test"),
        ConnectionResetError(),
    ])
    def test_transient(self, error):
        assert is_transient_error(error) is True

    @pytest.mark.parametrize("error", [
        status_error(404),
        status_error(429),
        CloudflareAPIError("bad script", status_code=400),
        CloudflareAPIError("envelope failure", status_code=200),
        StorageError("no status"),
        client_error("AccessDenied", 403),
        ValueError("bug"),
    ])
    def test_not_transient(self, error):
        assert is_transient_error(error) is False


class TestRetryAsync:
    """Test async retries with an injected sleep"""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        operation = AsyncMock(side_effect=[httpx.ConnectError("a"), httpx.ConnectError("b"), "ok"])
        sleep = AsyncMock()

        result = await retry_async(operation, BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
                                   sleep=sleep)

        assert result == "ok"
        assert operation.await_count == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_non_transient_error_is_raised_immediately(self):
        operation = AsyncMock(side_effect=CloudflareAPIError("invalid script", status_code=400))
        sleep = AsyncMock()

        with pytest.raises(CloudflareAPIError):
            await retry_async(operation, BackoffPolicy(max_attempts=3), sleep=sleep)

        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        operation = AsyncMock(side_effect=httpx.ConnectError("down"))
        sleep = AsyncMock()

        with pytest.raises(httpx.ConnectError):
            await retry_async(operation, BackoffPolicy(max_attempts=3, base_delay=0.5, max_delay=1.0), sleep=sleep)

        assert operation.await_count == 3
        assert sleep.await_args_list == [call(0.5), call(1.0)]


class TestRetrySync:
    """Test sync retries used by boto3 calls"""

    def test_retries_s3_throttling(self):
        operation = Mock(side_effect=[client_error("SlowDown", 503), {"ETag": "abc"}])
        sleep = Mock()

        result = retry_sync(operation, BackoffPolicy(max_attempts=3, base_delay=2.0, max_delay=30.0), sleep=sleep)

        assert result == {"ETag": "abc"}
        sleep.assert_called_once_with(2.0)

    def test_access_denied_is_not_retried(self):
        operation = Mock(side_effect=client_error("AccessDenied", 403))

        with pytest.raises(ClientError):
            retry_sync(operation, BackoffPolicy(max_attempts=3), sleep=Mock())

        assert operation.call_count == 1
