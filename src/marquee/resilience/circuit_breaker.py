"""Per-endpoint circuit breaker for media server requests.

The breaker tracks failure patterns per endpoint key (request path without
query string) and moves each key between three states:

- CLOSED: Normal operation, requests pass through (no entry is stored)
- OPEN: Too many consecutive failures, reject requests immediately
- HALF_OPEN: Cooldown elapsed, exactly one trial request is let through

Entries are created lazily on the first failure and dropped again on
recovery, so a healthy endpoint costs nothing.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states.

    States:
        CLOSED: Normal operation, requests pass through
        OPEN: Failures reached threshold, reject requests
        HALF_OPEN: Testing if endpoint recovered after cooldown
    """
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failures reached threshold, reject requests
    HALF_OPEN = "half_open"  # Testing if endpoint recovered


@dataclass
class _CircuitEntry:
    failure_count: int
    last_failure_time: float
    state: CircuitState = CircuitState.CLOSED
    trial_started_at: float | None = None
    last_activity: float = 0.0


class CircuitBreaker:
    """
    Circuit breaker keyed by endpoint.

    State Machine (per key):
        CLOSED -> (failure_count >= threshold) -> OPEN
        OPEN -> (cooldown elapsed, next check) -> HALF_OPEN (one trial)
        HALF_OPEN -> (trial success) -> CLOSED
        HALF_OPEN -> (trial failure) -> OPEN
        CLOSED, HALF_OPEN -> (reset_window idle) -> entry dropped

    Configuration:
        threshold: Consecutive failures before opening the circuit
        cooldown: Seconds since the last failure before a trial is allowed
        reset_window: Seconds without failures after which counters reset
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 60.0,
        reset_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize circuit breaker.

        Args:
            threshold: Number of consecutive failures required to open a circuit
            cooldown: Seconds to stay OPEN before allowing a HALF_OPEN trial
            reset_window: Seconds without activity before a CLOSED or
                HALF_OPEN entry is forgotten
            clock: Monotonic time source (injectable for tests)

        Raises:
            ValueError: If threshold <= 0, cooldown < 0 or reset_window < cooldown
        """
        if threshold <= 0:
            raise ValueError("threshold must be > 0")
        if cooldown < 0:
            raise ValueError("cooldown must be >= 0")
        if reset_window < cooldown:
            raise ValueError("reset_window must be >= cooldown")

        self.threshold = threshold
        self.cooldown = cooldown
        self.reset_window = reset_window
        self._clock = clock

        self._entries: dict[str, _CircuitEntry] = {}

        # Thread safety
        self._lock = threading.Lock()

    def _get_entry(self, key: str) -> _CircuitEntry | None:
        """Get the entry for a key, applying time-based transitions.

        NOTE: This method must be called with self._lock held.

        - A CLOSED or HALF_OPEN entry idle for longer than reset_window is
          dropped. Activity is a failure, the move to HALF_OPEN or a trial.
        - A HALF_OPEN entry whose trial never reported back within the
          cooldown is allowed a fresh trial.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.state != CircuitState.OPEN and now - entry.last_activity > self.reset_window:
            logger.debug(f"Circuit for {key} idle past reset window, dropping entry")
            del self._entries[key]
            return None

        if (
            entry.state == CircuitState.HALF_OPEN
            and entry.trial_started_at is not None
            and now - entry.trial_started_at >= self.cooldown
        ):
            entry.trial_started_at = None

        return entry

    def is_open(self, key: str) -> bool:
        """Check whether requests to ``key`` must be rejected (thread-safe).

        The first check after the cooldown moves an OPEN circuit to HALF_OPEN
        and returns False exactly once; further checks return True until the
        trial reports success or failure.
        """
        with self._lock:
            entry = self._get_entry(key)
            if entry is None or entry.state == CircuitState.CLOSED:
                return False

            now = self._clock()

            if entry.state == CircuitState.OPEN:
                elapsed = now - entry.last_failure_time
                if elapsed < self.cooldown:
                    return True
                logger.info(
                    f"Circuit for {key} transitioning to HALF_OPEN "
                    f"after {elapsed:.1f}s cooldown"
                )
                entry.state = CircuitState.HALF_OPEN
                entry.trial_started_at = now
                entry.last_activity = now
                return False

            # HALF_OPEN: one trial at a time
            if entry.trial_started_at is None:
                entry.trial_started_at = now
                entry.last_activity = now
                logger.debug(f"Allowing HALF_OPEN trial request for {key}")
                return False
            return True

    def record_success(self, key: str) -> None:
        """Record a successful request (thread-safe).

        Any success closes the circuit: consecutive failures are broken and a
        HALF_OPEN trial resolves to CLOSED.
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None and entry.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit for {key} transitioned to CLOSED (recovery complete)")

    def record_failure(self, key: str) -> None:
        """Record a failed request (thread-safe).

        - CLOSED -> OPEN once failure_count reaches threshold
        - HALF_OPEN -> OPEN immediately
        """
        with self._lock:
            now = self._clock()
            entry = self._get_entry(key)

            if entry is None:
                entry = _CircuitEntry(failure_count=0, last_failure_time=now)
                self._entries[key] = entry

            entry.failure_count += 1
            entry.last_failure_time = now
            entry.last_activity = now
            entry.trial_started_at = None
            logger.debug(f"Recorded failure for {key} (count: {entry.failure_count})")

            if entry.state == CircuitState.HALF_OPEN:
                entry.state = CircuitState.OPEN
                logger.warning(
                    f"Circuit for {key} transitioned to OPEN "
                    f"(failure during HALF_OPEN trial)"
                )
            elif entry.state == CircuitState.CLOSED and entry.failure_count >= self.threshold:
                entry.state = CircuitState.OPEN
                logger.warning(
                    f"Circuit for {key} transitioned to OPEN "
                    f"(failure count {entry.failure_count} >= threshold {self.threshold})"
                )

    def get_state(self, key: str) -> CircuitState:
        """Get the current state for a key without consuming a trial (thread-safe)."""
        with self._lock:
            entry = self._get_entry(key)
            return entry.state if entry else CircuitState.CLOSED

    def reset(self) -> None:
        """Forget all endpoints."""
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> dict:
        """Get circuit breaker statistics for monitoring (thread-safe).

        Returns:
            Dict keyed by endpoint with state and failure_count fields
        """
        with self._lock:
            stats = {}
            for key in list(self._entries):
                entry = self._get_entry(key)
                if entry is not None:
                    stats[key] = {
                        "state": entry.state.value,
                        "failure_count": entry.failure_count,
                    }
            return stats
