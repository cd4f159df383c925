"""
Generic retry executor with exponential backoff and jitter.

``with_retry`` wraps any awaitable-producing callable: retryable failures are
retried up to ``max_retries`` extra times, anything else propagates unchanged.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from marketdata.core.errors import FatalRequestError, DataIntegrityError, RetryableTransportError
from marketdata.core.logging_config import get_logger

logger = get_logger("retry")

JITTER_RATIO = 0.2

RETRYABLE_CODES = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "ENOTFOUND",
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
})

def _is_retryable_status(status: Any) -> bool:
    return isinstance(status, int) and (status == 429 or status >= 500)

def is_retryable_error(error: BaseException) -> bool:
    """Default classifier: transient transport trouble and throttling are retryable."""
    if isinstance(error, RetryableTransportError):
        return True
    if isinstance(error, (FatalRequestError, DataIntegrityError)):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        return _is_retryable_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if getattr(error, "code", None) in RETRYABLE_CODES:
        return True
    return _is_retryable_status(getattr(error, "status_code", None)) or _is_retryable_status(getattr(error, "status", None))


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 10.0,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[BaseException, int], Any]] = None,
):
    """
    Run ``operation`` until it succeeds or retries are exhausted.

    Delays are ``base_delay * 2**attempt`` seconds capped at ``max_delay``, plus up
    to 20% of ``base_delay`` as jitter. ``on_retry(error, attempt_index)`` runs after
    the wait and before the next attempt; it may be a coroutine function. The last
    error is re-raised as the same object.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    scheduled = []

    def _before_sleep(retry_state):
        error = retry_state.outcome.exception()
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            delay=round(retry_state.next_action.sleep, 3),
            error=str(error) or error.__class__.__name__,
        )
        scheduled.append((error, retry_state.attempt_number - 1))

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, min=0, max=max_delay) + wait_random(0, base_delay * JITTER_RATIO),
        retry=retry_if_exception(should_retry),
        before_sleep=_before_sleep,
        reraise=True,
    )

    async for attempt in retrying:
        while scheduled:
            error, attempt_index = scheduled.pop(0)
            if on_retry is not None:
                result = on_retry(error, attempt_index)
                if inspect.isawaitable(result):
                    await result
        with attempt:
            return await operation()
