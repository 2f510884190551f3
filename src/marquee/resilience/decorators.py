"""Resilience decorators for async operations."""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec('P')
T = TypeVar('T')


def with_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] | None = None
):
    """Decorator to retry an async function a bounded number of times.

    Does NOT include circuit breaker logic (HttpResilienceClient owns that).

    Args:
        max_attempts: Total attempts including the first one (default: 3)
        delay: Seconds to wait before the first retry (default: 1.0)
        backoff: Multiplier applied to the delay after each retry; 1.0 gives
            a fixed delay (default: 1.0)
        exceptions: Exception types that trigger a retry; anything else
            propagates immediately (default: all)
        operation_name: Human-readable operation name for logging
        sleep: Awaitable sleep function (default: asyncio.sleep)

    Example:
        @with_retry(
            max_attempts=3,
            delay=2.0,
            exceptions=(NetworkError, ServerError),
            operation_name="system status probe"
        )
        async def probe():
            return await client.get("/api/authenticated/system-status")
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            do_sleep = sleep or asyncio.sleep
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{operation_name} failed after {max_attempts} attempts: {e}"
                        )
                        raise

                    logger.info(
                        f"{operation_name} attempt {attempt}/{max_attempts} "
                        f"failed: {e}. Retrying in {current_delay:.2f}s..."
                    )
                    await do_sleep(current_delay)
                    current_delay *= backoff

            # This should never be reached, but satisfy type checker
            raise RuntimeError(f"{operation_name} failed unexpectedly")

        return wrapper
    return decorator
