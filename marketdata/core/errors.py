"""
Error taxonomy for upstream and storage failures.

RetryableTransportError  transient transport trouble, worth another attempt.
FatalRequestError        the request itself is wrong or refused; retrying cannot help.
DataIntegrityError       the upstream answered but the payload is unusable.

Fatal and integrity errors abort the current stage of a fallback chain and let the
chain advance; retryable errors are retried first and only surface on exhaustion.
"""
import httpx


class MarketDataError(Exception):
    def __init__(self, message: str, *, source: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class RetryableTransportError(MarketDataError):
    pass


class FatalRequestError(MarketDataError):
    pass


class DataIntegrityError(MarketDataError):
    pass


def classify_http_error(exc: Exception, source: str | None = None) -> MarketDataError:
    """Map an httpx failure onto the taxonomy."""
    if isinstance(exc, MarketDataError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return RetryableTransportError(str(exc), source=source, status_code=status)
        return FatalRequestError(str(exc), source=source, status_code=status)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return RetryableTransportError(str(exc) or exc.__class__.__name__, source=source)
    if isinstance(exc, ValueError):
        # json decoding errors land here
        return DataIntegrityError(str(exc), source=source)
    return FatalRequestError(str(exc), source=source)
