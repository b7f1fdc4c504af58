"""
Circuit breaker for calls to external services.

State lives in the Django cache (Redis in production) so every web and
worker process sees the same circuit. When a downstream service keeps
failing, the circuit opens and callers fail fast until the recovery
timeout has elapsed; one probe call is then let through (half-open) and
its outcome closes or re-opens the circuit.

States:
    - CLOSED: Normal operation, all calls pass through
    - OPEN: Calls fail fast without touching the service
    - HALF_OPEN: A single probe call is allowed

Usage:
    from core.circuit_breaker import CircuitBreaker, CircuitOpenError

    stripe_circuit = CircuitBreaker("stripe-verification", failure_threshold=5)

    try:
        with stripe_circuit.call():
            intent = StripeAdapter.retrieve_payment_intent("pi_123")
    except CircuitOpenError:
        ...  # degrade instead of waiting on a dead service

Note:
    Cache errors never break the caller: the breaker logs them and fails
    open (treats the circuit as closed).
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING

from django.core.cache import cache

if TYPE_CHECKING:
    from collections.abc import Generator

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised by CircuitBreaker.call() while the circuit is open."""


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Distributed circuit breaker using the Django cache backend.

    Attributes:
        name: Unique identifier used to build the cache keys
        failure_threshold: Consecutive failures before the circuit opens
        recovery_timeout: Seconds the circuit stays open before a probe
    """

    cache_ttl = 3600

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state_key = f"circuit:{name}:state"
        self._failures_key = f"circuit:{name}:failures"
        self._opened_at_key = f"circuit:{name}:opened_at"

    @property
    def state(self) -> CircuitState:
        try:
            return CircuitState(cache.get(self._state_key, CircuitState.CLOSED.value))
        except ValueError:
            return CircuitState.CLOSED

    @property
    def failure_count(self) -> int:
        return cache.get(self._failures_key, 0) or 0

    def is_available(self) -> bool:
        """
        Check if the circuit lets a call through.

        An open circuit whose recovery timeout has elapsed moves to
        half-open and admits exactly one probe.
        """
        try:
            state = self.state
            if state == CircuitState.CLOSED:
                return True

            if state == CircuitState.OPEN:
                opened_at = cache.get(self._opened_at_key)
                if opened_at and (time.time() - opened_at) >= self.recovery_timeout:
                    # add() is atomic, only one caller wins the probe slot
                    if cache.add(f"circuit:{self.name}:probe", 1, timeout=self.recovery_timeout):
                        self._set_state(CircuitState.HALF_OPEN)
                        logger.info(
                            "Circuit breaker half-open, allowing probe",
                            extra={"circuit": self.name},
                        )
                        return True
                return False

            # HALF_OPEN: the probe is already in flight
            return False

        except Exception as e:
            logger.warning(
                f"Circuit breaker cache error, failing open: {e}",
                extra={"circuit": self.name},
            )
            return True

    def record_success(self) -> None:
        try:
            if self.state != CircuitState.CLOSED:
                logger.info(
                    "Circuit breaker closed after successful probe",
                    extra={"circuit": self.name},
                )
            self._set_state(CircuitState.CLOSED)
            cache.set(self._failures_key, 0, timeout=self.cache_ttl)
            cache.delete(f"circuit:{self.name}:probe")
        except Exception as e:
            logger.warning(
                f"Circuit breaker failed to record success: {e}",
                extra={"circuit": self.name},
            )

    def record_failure(self) -> None:
        try:
            if self.state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning(
                    "Circuit breaker reopened after failed probe",
                    extra={"circuit": self.name},
                )
                return

            try:
                failures = cache.incr(self._failures_key)
            except ValueError:
                cache.set(self._failures_key, 1, timeout=self.cache_ttl)
                failures = 1

            if failures >= self.failure_threshold:
                self._open()
                logger.warning(
                    f"Circuit breaker opened after {failures} failures",
                    extra={
                        "circuit": self.name,
                        "failure_count": failures,
                        "threshold": self.failure_threshold,
                    },
                )
        except Exception as e:
            logger.warning(
                f"Circuit breaker failed to record failure: {e}",
                extra={"circuit": self.name},
            )

    @contextmanager
    def call(self) -> Generator[None, None, None]:
        """
        Guard a block of code, recording its success or failure.

        Raises:
            CircuitOpenError: If the circuit does not admit the call
        """
        if not self.is_available():
            raise CircuitOpenError(f"Circuit '{self.name}' is open")

        try:
            yield
        except Exception:
            self.record_failure()
            raise
        self.record_success()

    def reset(self) -> None:
        """Force the circuit closed (administration and tests)."""
        cache.delete_many(
            [
                self._state_key,
                self._failures_key,
                self._opened_at_key,
                f"circuit:{self.name}:probe",
            ]
        )

    def _set_state(self, state: CircuitState) -> None:
        cache.set(self._state_key, state.value, timeout=self.cache_ttl)

    def _open(self) -> None:
        self._set_state(CircuitState.OPEN)
        cache.set(self._opened_at_key, time.time(), timeout=self.cache_ttl)
        cache.delete(f"circuit:{self.name}:probe")
