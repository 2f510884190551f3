"""Marquee - auth and API resilience core of a media-browsing client."""

from marquee.auth import AuthFlow, AuthOrchestrator, TokenRefreshManager
from marquee.client import ContentCache, MarqueeClient
from marquee.errors import (
    ApiError,
    AuthError,
    AuthFlowCancelledError,
    CircuitOpenError,
    ClientError,
    ConfigurationError,
    MarqueeError,
    NetworkError,
    ServerError,
    SessionExpiredError,
)
from marquee.health import ServerHealthMonitor
from marquee.resilience import CircuitBreaker, HttpResilienceClient, RetryPolicy
from marquee.session import SessionStore
from marquee.types import CredentialBundle, FlowState, PairingSession, ServerHealth

__version__ = "0.1.0"

__all__ = [
    "MarqueeClient",
    "ContentCache",
    "SessionStore",
    "CircuitBreaker",
    "RetryPolicy",
    "HttpResilienceClient",
    "TokenRefreshManager",
    "ServerHealthMonitor",
    "AuthOrchestrator",
    "AuthFlow",
    "CredentialBundle",
    "PairingSession",
    "ServerHealth",
    "FlowState",
    "MarqueeError",
    "ConfigurationError",
    "ApiError",
    "NetworkError",
    "ServerError",
    "ClientError",
    "AuthError",
    "CircuitOpenError",
    "SessionExpiredError",
    "AuthFlowCancelledError",
]
