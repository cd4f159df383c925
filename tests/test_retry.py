import pytest
import httpx
from unittest.mock import AsyncMock

from marketdata.core.errors import DataIntegrityError, FatalRequestError, RetryableTransportError
from marketdata.services.retry import is_retryable_error, with_retry


def _status_error(status):
    request = httpx.Request("GET", "https://example.test/quote")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status, request=request))


class CodedError(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.code = code


async def test_returns_first_success_without_retry():
    operation = AsyncMock(return_value=42)
    assert await with_retry(operation, base_delay=0) == 42
    assert operation.await_count == 1


async def test_retries_then_succeeds():
    operation = AsyncMock(side_effect=[RetryableTransportError("reset"), RetryableTransportError("reset"), "ok"])
    on_retry = AsyncMock()

    assert await with_retry(operation, max_retries=3, base_delay=0, on_retry=on_retry) == "ok"
    assert operation.await_count == 3
    assert [call.args[1] for call in on_retry.await_args_list] == [0, 1]


@pytest.mark.parametrize("max_retries", [0, 1, 4])
async def test_never_exceeds_max_retries_plus_one(max_retries):
    error = RetryableTransportError("still down")
    operation = AsyncMock(side_effect=error)

    with pytest.raises(RetryableTransportError) as exc_info:
        await with_retry(operation, max_retries=max_retries, base_delay=0)

    assert exc_info.value is error
    assert operation.await_count == max_retries + 1


async def test_non_retryable_error_runs_once():
    error = ValueError("bad symbol")
    operation = AsyncMock(side_effect=error)

    with pytest.raises(ValueError) as exc_info:
        await with_retry(operation, max_retries=5, base_delay=0, should_retry=lambda e: False)

    assert exc_info.value is error
    assert operation.await_count == 1


async def test_sync_on_retry_callback_receives_error():
    seen = []
    error = RetryableTransportError("flaky")
    operation = AsyncMock(side_effect=[error, "done"])

    await with_retry(operation, base_delay=0, on_retry=lambda e, i: seen.append((e, i)))

    assert seen == [(error, 0)]


async def test_negative_max_retries_rejected():
    with pytest.raises(ValueError):
        await with_retry(AsyncMock(), max_retries=-1)


@pytest.mark.parametrize("error", [
    RetryableTransportError("x"),
    httpx.ConnectError("refused"),
    httpx.ReadTimeout("slow"),
    _status_error(429),
    _status_error(503),
    ConnectionResetError(),
    TimeoutError(),
    CodedError("ECONNRESET"),
    CodedError("ThrottlingException"),
    CodedError("ProvisionedThroughputExceededException"),
])
def test_retryable_errors(error):
    assert is_retryable_error(error)


@pytest.mark.parametrize("error", [
    FatalRequestError("x"),
    DataIntegrityError("x"),
    _status_error(404),
    _status_error(401),
    ValueError("nope"),
    CodedError("ValidationException"),
])
def test_fatal_errors(error):
    assert not is_retryable_error(error)
