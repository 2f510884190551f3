"""Resilience primitives for media server requests.

Provides the circuit breaker, retry policy, retry decorator and the
HTTP client that combines them.
"""

from .circuit_breaker import CircuitBreaker, CircuitState
from .decorators import with_retry
from .http_client import HttpClientConfig, HttpResilienceClient
from .retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
    "with_retry",
    "HttpClientConfig",
    "HttpResilienceClient",
]
