"""Error taxonomy for the Marquee client core.

UI collaborators map these onto user-visible behaviour:

- AuthError, SessionExpiredError: return to the login screen
- ServerError, CircuitOpenError, NetworkError: show the server-down banner
- ClientError: feature-specific failure unrelated to authentication
"""

from typing import Any


class MarqueeError(Exception):
    """Base class for all Marquee client errors."""


class ConfigurationError(MarqueeError):
    """Client used before it was configured (e.g. no server URL)."""


class ApiError(MarqueeError):
    """HTTP-level failure with an optional status code and response body."""

    def __init__(self, status: int | None, data: Any = None, message: str | None = None):
        super().__init__(message or f"API Error: {status}")
        self.status = status
        self.data = data


class NetworkError(ApiError):
    """No usable response (connection failure, timeout, redirect loop, undecodable body)."""

    def __init__(self, message: str | None = None):
        super().__init__(None, None, message or "Network Error")


class ServerError(ApiError):
    """Server answered with a 5xx status."""


class ClientError(ApiError):
    """Server answered with a 4xx status other than 401."""


class AuthError(ApiError):
    """401 that survived one token refresh, or a refresh that was rejected."""

    def __init__(self, data: Any = None, message: str | None = None):
        super().__init__(401, data, message or "Authentication required")


class CircuitOpenError(MarqueeError):
    """Circuit breaker is open for the endpoint; no request was attempted."""

    def __init__(self, endpoint: str):
        super().__init__(f"Circuit breaker is open for {endpoint}")
        self.endpoint = endpoint


class SessionExpiredError(MarqueeError):
    """Login or pairing session expired on the server or timed out locally."""


class AuthFlowCancelledError(MarqueeError):
    """Login or pairing flow was cancelled before it completed."""
