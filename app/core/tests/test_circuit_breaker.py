"""
Tests for the CircuitBreaker class.

These tests verify the distributed circuit breaker behavior including:
- State transitions (closed -> open -> half-open -> closed)
- Failure counting and threshold detection
- Recovery timeout handling
- Context manager usage
- Multi-worker behavior via cache backend
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from django.core.cache import cache

from core.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


@pytest.fixture
def circuit():
    """Create a circuit breaker with test-friendly settings."""
    return CircuitBreaker(
        name="test-service",
        failure_threshold=3,
        recovery_timeout=5,
    )


def trip(circuit: CircuitBreaker) -> float:
    """Open the circuit and return the time it opened at."""
    for _ in range(circuit.failure_threshold):
        circuit.record_failure()
    return cache.get(f"circuit:{circuit.name}:opened_at")


class TestCircuitBreakerInitialState:
    """Test circuit breaker initial state."""

    def test_starts_in_closed_state(self, circuit: CircuitBreaker):
        """Circuit should start in closed state."""
        assert circuit.state == CircuitState.CLOSED
        assert circuit.is_available() is True

    def test_initial_failure_count_is_zero(self, circuit: CircuitBreaker):
        """Failure count should be zero initially."""
        assert circuit.failure_count == 0


class TestCircuitBreakerFailureTracking:
    """Test failure counting and threshold detection."""

    def test_failures_below_threshold_keep_circuit_closed(self, circuit: CircuitBreaker):
        """Circuit should stay closed until the threshold is reached."""
        circuit.record_failure()
        circuit.record_failure()

        assert circuit.failure_count == 2
        assert circuit.state == CircuitState.CLOSED
        assert circuit.is_available() is True

    def test_reaching_threshold_opens_circuit(self, circuit: CircuitBreaker):
        """Circuit should open when failures reach the threshold."""
        trip(circuit)

        assert circuit.state == CircuitState.OPEN
        assert circuit.is_available() is False

    def test_success_resets_failure_count(self, circuit: CircuitBreaker):
        """A success should reset the consecutive failure count."""
        circuit.record_failure()
        circuit.record_failure()

        circuit.record_success()
        circuit.record_failure()

        assert circuit.failure_count == 1
        assert circuit.is_available() is True


class TestCircuitBreakerRecovery:
    """Test circuit breaker recovery behavior."""

    def test_open_circuit_rejects_calls_before_timeout(self, circuit: CircuitBreaker):
        opened_at = trip(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 4):
            assert circuit.is_available() is False

    def test_circuit_transitions_to_half_open_after_timeout(self, circuit: CircuitBreaker):
        """Circuit should admit a probe after the recovery timeout."""
        opened_at = trip(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            assert circuit.is_available() is True

        assert circuit.state == CircuitState.HALF_OPEN

    def test_only_one_probe_is_admitted(self, circuit: CircuitBreaker):
        """Concurrent callers should not all hit a recovering service."""
        opened_at = trip(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            assert circuit.is_available() is True
            assert circuit.is_available() is False

    def test_successful_probe_closes_circuit(self, circuit: CircuitBreaker):
        opened_at = trip(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            circuit.is_available()
            circuit.record_success()

        assert circuit.state == CircuitState.CLOSED
        assert circuit.failure_count == 0
        assert circuit.is_available() is True

    def test_failed_probe_reopens_circuit(self, circuit: CircuitBreaker):
        opened_at = trip(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            circuit.is_available()
            circuit.record_failure()

            assert circuit.state == CircuitState.OPEN
            assert circuit.is_available() is False


class TestCircuitBreakerContextManager:
    """Test context manager usage."""

    def test_context_manager_records_success(self, circuit: CircuitBreaker):
        """Context manager should record success on normal completion."""
        circuit.record_failure()

        with circuit.call():
            pass

        assert circuit.failure_count == 0

    def test_context_manager_records_failure_on_exception(self, circuit: CircuitBreaker):
        """Context manager should record failure and re-raise."""
        with pytest.raises(ValueError):
            with circuit.call():
                raise ValueError("Simulated error")

        assert circuit.failure_count == 1

    def test_context_manager_raises_circuit_open_error_when_open(self, circuit: CircuitBreaker):
        trip(circuit)

        with pytest.raises(CircuitOpenError) as exc_info:
            with circuit.call():
                pass

        assert "test-service" in str(exc_info.value)

    def test_circuit_open_error_does_not_count_as_failure(self, circuit: CircuitBreaker):
        trip(circuit)
        failure_count_before = circuit.failure_count

        with pytest.raises(CircuitOpenError):
            with circuit.call():
                pass

        assert circuit.failure_count == failure_count_before


class TestCircuitBreakerReset:
    """Test manual reset functionality."""

    def test_reset_closes_open_circuit(self, circuit: CircuitBreaker):
        trip(circuit)

        circuit.reset()

        assert circuit.state == CircuitState.CLOSED
        assert circuit.failure_count == 0
        assert circuit.is_available() is True


class TestCircuitBreakerDistributedState:
    """Test distributed behavior via cache backend."""

    def test_state_shared_across_instances(self):
        """Instances with the same name should share state."""
        worker_a = CircuitBreaker(name="shared-service", failure_threshold=3)
        worker_b = CircuitBreaker(name="shared-service", failure_threshold=3)

        trip(worker_a)

        assert worker_b.is_available() is False
        assert worker_b.state == CircuitState.OPEN

    def test_different_circuits_are_independent(self):
        circuit_a = CircuitBreaker(name="service-a", failure_threshold=3)
        circuit_b = CircuitBreaker(name="service-b", failure_threshold=3)

        trip(circuit_a)

        assert circuit_a.is_available() is False
        assert circuit_b.is_available() is True


class TestCircuitBreakerCacheFailure:
    """Test behavior when cache is unavailable."""

    def test_is_available_fails_open_on_cache_error(self, circuit: CircuitBreaker):
        """Should fail open if cache is unavailable."""
        with patch.object(cache, "get", side_effect=Exception("Cache error")):
            assert circuit.is_available() is True

    def test_record_success_handles_cache_error(self, circuit: CircuitBreaker):
        with patch.object(cache, "get", side_effect=Exception("Cache error")):
            circuit.record_success()

    def test_record_failure_handles_cache_error(self, circuit: CircuitBreaker):
        with patch.object(cache, "get", side_effect=Exception("Cache error")):
            circuit.record_failure()
