"""Test suite for the per-endpoint CircuitBreaker.

Tests cover:
- Threshold-based opening per endpoint key
- Cooldown and the single HALF_OPEN trial
- Reset window eviction of stale counters
- Thread safety with concurrent operations
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from marquee.resilience import CircuitBreaker, CircuitState

KEY = "/api/authenticated/media"


@pytest.fixture
def breaker(fake_clock):
    """Circuit breaker with default thresholds on a fake clock"""
    return CircuitBreaker(threshold=5, cooldown=60.0, reset_window=300.0, clock=fake_clock)


def open_circuit(breaker, key=KEY):
    for _ in range(breaker.threshold):
        breaker.record_failure(key)


class TestValidation:
    """Constructor argument validation"""

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError, match="threshold must be > 0"):
            CircuitBreaker(threshold=0)

    def test_reset_window_must_cover_cooldown(self):
        with pytest.raises(ValueError, match="reset_window must be >= cooldown"):
            CircuitBreaker(cooldown=60, reset_window=10)


class TestOpening:
    """CLOSED -> OPEN"""

    def test_unknown_key_is_closed(self, breaker):
        assert breaker.is_open(KEY) is False
        assert breaker.get_state(KEY) == CircuitState.CLOSED

    def test_four_failures_stay_closed(self, breaker):
        for _ in range(4):
            breaker.record_failure(KEY)
        assert breaker.is_open(KEY) is False

    def test_fifth_failure_opens(self, breaker):
        """Test the circuit opens exactly at the threshold"""
        open_circuit(breaker)
        assert breaker.get_state(KEY) == CircuitState.OPEN
        assert breaker.is_open(KEY) is True

    def test_keys_are_independent(self, breaker):
        open_circuit(breaker)
        assert breaker.is_open("/api/auth/user-status") is False

    def test_success_resets_count(self, breaker):
        for _ in range(4):
            breaker.record_failure(KEY)
        breaker.record_success(KEY)
        breaker.record_failure(KEY)

        assert breaker.is_open(KEY) is False
        assert breaker.get_stats()[KEY]["failure_count"] == 1


class TestCooldown:
    """OPEN -> HALF_OPEN -> CLOSED/OPEN"""

    def test_open_during_cooldown(self, breaker, fake_clock):
        open_circuit(breaker)
        fake_clock.advance(59)
        assert breaker.is_open(KEY) is True

    def test_single_trial_after_cooldown(self, breaker, fake_clock):
        """Test exactly one request is let through after the cooldown"""
        open_circuit(breaker)
        fake_clock.advance(60)

        assert breaker.is_open(KEY) is False
        assert breaker.get_state(KEY) == CircuitState.HALF_OPEN
        assert breaker.is_open(KEY) is True

    def test_trial_success_closes(self, breaker, fake_clock):
        open_circuit(breaker)
        fake_clock.advance(60)
        breaker.is_open(KEY)

        breaker.record_success(KEY)

        assert breaker.get_state(KEY) == CircuitState.CLOSED
        assert breaker.get_stats() == {}

    def test_trial_failure_reopens(self, breaker, fake_clock):
        open_circuit(breaker)
        fake_clock.advance(60)
        breaker.is_open(KEY)

        breaker.record_failure(KEY)

        assert breaker.get_state(KEY) == CircuitState.OPEN
        fake_clock.advance(30)
        assert breaker.is_open(KEY) is True

    def test_stuck_trial_is_replaced(self, breaker, fake_clock):
        """Test a trial that never reports back does not block forever"""
        open_circuit(breaker)
        fake_clock.advance(60)
        assert breaker.is_open(KEY) is False

        fake_clock.advance(60)
        assert breaker.is_open(KEY) is False


class TestResetWindow:
    """Stale counters are forgotten"""

    def test_failures_expire(self, breaker, fake_clock):
        for _ in range(4):
            breaker.record_failure(KEY)

        fake_clock.advance(301)
        breaker.record_failure(KEY)

        assert breaker.is_open(KEY) is False
        assert breaker.get_stats()[KEY]["failure_count"] == 1

    def test_open_circuit_is_not_evicted(self, breaker, fake_clock):
        """Test an OPEN entry survives the window and goes HALF_OPEN instead"""
        open_circuit(breaker)
        fake_clock.advance(301)

        assert breaker.get_state(KEY) == CircuitState.OPEN
        assert breaker.is_open(KEY) is False
        assert breaker.get_state(KEY) == CircuitState.HALF_OPEN

    def test_idle_half_open_entry_is_evicted(self, breaker, fake_clock):
        """Test a HALF_OPEN entry with no trial activity is dropped after the window"""
        open_circuit(breaker)
        fake_clock.advance(61)
        assert breaker.is_open(KEY) is False
        assert breaker.get_state(KEY) == CircuitState.HALF_OPEN

        fake_clock.advance(301)

        assert breaker.get_state(KEY) == CircuitState.CLOSED
        assert KEY not in breaker.get_stats()

    def test_half_open_trial_keeps_entry(self, breaker, fake_clock):
        open_circuit(breaker)
        fake_clock.advance(250)
        assert breaker.is_open(KEY) is False

        fake_clock.advance(100)

        assert breaker.get_state(KEY) == CircuitState.HALF_OPEN

    def test_reset_forgets_everything(self, breaker):
        open_circuit(breaker)
        breaker.reset()
        assert breaker.is_open(KEY) is False


class TestThreadSafety:
    def test_concurrent_failures_are_counted(self, fake_clock):
        breaker = CircuitBreaker(threshold=1000, clock=fake_clock)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: breaker.record_failure(KEY), range(200)))

        assert breaker.get_stats()[KEY]["failure_count"] == 200
