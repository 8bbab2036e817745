"""Per-backend circuit breakers guarding the retry/fallback executor.

Updates:
    v0.1 - 2025-11-08 - Added closed/open/half-open breaker with injectable clock.
    v0.2 - 2025-11-09 - Added operator reset of one or all breakers.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional

from config.settings import CircuitBreakerConfig
from core.telemetry import publish_event

LOGGER = logging.getLogger("agc.circuit")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Track consecutive failures for one backend and short-circuit when tripped."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = max(1, failure_threshold)
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state is not CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                LOGGER.info("Circuit for backend '%s' closed after successful probe.", self.name)
                publish_event("circuit.closed", backend=self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or self._failures >= self._failure_threshold:
                if self._state is not CircuitState.OPEN:
                    LOGGER.warning(
                        "Circuit for backend '%s' opened after %s consecutive failures.",
                        self.name,
                        self._failures,
                    )
                    publish_event("circuit.opened", backend=self.name, failures=self._failures)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            previous = self._state
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
        LOGGER.info("Circuit for backend '%s' reset (was %s).", self.name, previous.value)
        publish_event("circuit.reset", backend=self.name, previous=previous.value)

    def _maybe_half_open(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self._recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            LOGGER.info("Circuit for backend '%s' half-open; allowing probe.", self.name)


class CircuitBreakerRegistry:
    """Lazily creates one breaker per backend id."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def get(self, backend_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(backend_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    backend_id,
                    failure_threshold=self._config.failure_threshold,
                    recovery_timeout=self._config.recovery_timeout_seconds,
                    clock=self._clock,
                )
                self._breakers[backend_id] = breaker
            return breaker

    def allow(self, backend_id: str) -> bool:
        if not self.enabled:
            return True
        return self.get(backend_id).allow_request()

    def record(self, backend_id: str, success: bool) -> None:
        if not self.enabled:
            return
        breaker = self.get(backend_id)
        if success:
            breaker.record_success()
        else:
            breaker.record_failure()

    def states(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.state.value for breaker in breakers}

    def reset(self, backend_id: Optional[str] = None) -> Dict[str, str]:
        """Close one breaker, or all when *backend_id* is None; KeyError if unknown."""
        with self._lock:
            if backend_id is None:
                breakers = list(self._breakers.values())
            else:
                breakers = [self._breakers[backend_id]]
        for breaker in breakers:
            breaker.reset()
        return self.states()
