"""
Request core exceptions.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storefront.services.recovery import RecoveryResult


class ServiceError(Exception):
    """Base exception for request core errors."""

    def __init__(self, message: str, endpoint: str | None = None):
        self.endpoint = endpoint
        self.recovery: "RecoveryResult | None" = None
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class NetworkError(ServiceError):
    """The request never produced an HTTP response (connection, DNS, CORS)."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        mixed_content: bool = False,
    ):
        self.mixed_content = mixed_content
        super().__init__(message, endpoint=endpoint)


class BlockedRequestError(NetworkError):
    """Request rejected by the request filter before being sent."""

    def __init__(self, url: str, rule: str):
        self.url = url
        self.rule = rule
        super().__init__(f"Blocked request to {url} (rule: {rule})", endpoint=url)


class RequestTimeoutError(ServiceError):
    """Request exceeded its deadline and was cancelled."""

    def __init__(self, endpoint: str, timeout: float, elapsed: float | None = None):
        self.timeout = timeout
        self.elapsed = elapsed if elapsed is not None else timeout
        super().__init__(
            f"Request timeout - {endpoint} did not respond within {timeout}s",
            endpoint=endpoint,
        )


class HttpError(ServiceError):
    """Non-2xx response."""

    def __init__(self, status: int, message: str, endpoint: str | None = None):
        self.status = status
        super().__init__(message, endpoint=endpoint)


class AuthError(HttpError):
    """401 response. Stored credentials have already been cleared."""

    def __init__(
        self,
        endpoint: str | None = None,
        message: str = "Unauthorized - Please login again",
    ):
        super().__init__(401, message, endpoint=endpoint)


class RateLimitError(HttpError):
    """429 response."""

    def __init__(self, endpoint: str | None = None, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(
            429,
            f"Rate limit exceeded - Please wait {retry_after:g} seconds "
            "before trying again",
            endpoint=endpoint,
        )
