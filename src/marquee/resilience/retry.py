"""Retry policy for media server requests.

Pure decision functions; attempt counters live with the caller.
"""

from dataclasses import dataclass

from marquee.errors import NetworkError, ServerError


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy: ``delay = base_delay * 2^attempt``.

    Only failures where the server never answered, or answered with a 5xx,
    are retried. ``max_retries`` is the number of retries after the first
    attempt; the caller enforces it.
    """

    max_retries: int = 3
    base_delay: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got {self.base_delay}")

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, NetworkError):
            return True
        if isinstance(error, ServerError):
            return error.status is not None and 500 <= error.status <= 599
        return False

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        return self.base_delay * (2 ** attempt)
