"""Retry/fallback executor walking a declarative backend chain.

Updates:
    v0.1 - 2025-11-06 - Added exponential backoff retries for the primary backend.
    v0.2 - 2025-11-07 - Walked ordered fallbacks once each after primary exhaustion.
    v0.3 - 2025-11-08 - Propagated request deadlines and skipped backends with open circuits.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from config.settings import RetryPolicyConfig
from core.backend_invoker import BackendInvoker
from core.circuit_breaker import CircuitBreakerRegistry
from core.telemetry import emit_metric
from models.generation import GenerationAttempt, SubRequest

LOGGER = logging.getLogger("agc.executor")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Backoff policy for the primary backend plus the per-attempt timeout."""

    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, retry_cfg: RetryPolicyConfig, timeout_seconds: float) -> "RetryPolicy":
        return cls(
            max_retries=retry_cfg.max_retries,
            base_delay_seconds=retry_cfg.base_delay_seconds,
            max_delay_seconds=retry_cfg.max_delay_seconds,
            timeout_seconds=timeout_seconds,
        )

    @property
    def primary_attempts(self) -> int:
        # Zero retries still means one primary attempt.
        return max(1, self.max_retries)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the 1-based *attempt* failed; non-decreasing in *attempt*."""
        return min((2 ** attempt) * self.base_delay_seconds, self.max_delay_seconds)


class Deadline:
    """Absolute deadline derived from a relative budget on an injectable clock."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.budget_seconds = budget_seconds
        self._expires_at = clock() + max(0.0, budget_seconds)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0


@dataclass(slots=True)
class ExecutionReport:
    """Ordered attempts made for one tier plus why the walk stopped."""

    attempts: List[GenerationAttempt] = field(default_factory=list)
    deadline_exhausted: bool = False
    skipped_backends: List[str] = field(default_factory=list)

    @property
    def success(self) -> Optional[GenerationAttempt]:
        for attempt in self.attempts:
            if attempt.succeeded:
                return attempt
        return None


class RetryFallbackExecutor:
    """Retries the primary backend with backoff, then tries each fallback once."""

    def __init__(
        self,
        invoker: BackendInvoker,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._invoker = invoker
        self._breakers = breakers
        self._sleep = sleep
        self._clock = clock
        self._logger = LOGGER

    def execute(
        self,
        primary: str,
        fallbacks: Sequence[str],
        sub_request: SubRequest,
        policy: RetryPolicy,
        deadline: Optional[Deadline] = None,
    ) -> ExecutionReport:
        report = ExecutionReport()

        for attempt_number in range(1, policy.primary_attempts + 1):
            if not self._allowed(primary):
                report.skipped_backends.append(primary)
                self._logger.info("Skipping primary backend '%s': circuit open.", primary)
                break
            timeout = self._attempt_timeout(policy, deadline)
            if timeout is None:
                return self._abort(report, primary)
            attempt = self._invoke(primary, sub_request, timeout)
            report.attempts.append(attempt)
            if attempt.succeeded:
                return report
            if attempt_number >= policy.primary_attempts:
                break
            delay = policy.delay_for(attempt_number)
            if deadline is not None and delay >= deadline.remaining():
                return self._abort(report, primary)
            self._logger.debug(
                "Primary backend '%s' attempt %s failed (%s); retrying in %.2fs.",
                primary,
                attempt_number,
                attempt.outcome.value,
                delay,
            )
            self._sleep(delay)

        for backend_id in fallbacks:
            if backend_id == primary:
                continue
            if not self._allowed(backend_id):
                report.skipped_backends.append(backend_id)
                self._logger.info("Skipping fallback backend '%s': circuit open.", backend_id)
                continue
            timeout = self._attempt_timeout(policy, deadline)
            if timeout is None:
                return self._abort(report, backend_id)
            attempt = self._invoke(backend_id, sub_request, timeout)
            report.attempts.append(attempt)
            if attempt.succeeded:
                self._logger.info(
                    "Fallback backend '%s' succeeded after primary '%s' was exhausted.",
                    backend_id,
                    primary,
                )
                return report

        return report

    def _invoke(self, backend_id: str, sub_request: SubRequest, timeout: float) -> GenerationAttempt:
        attempt = self._invoker.invoke(backend_id, sub_request, timeout)
        if self._breakers is not None:
            self._breakers.record(backend_id, attempt.succeeded)
        emit_metric(
            "agc.backend.attempt",
            attempt.duration,
            backend=backend_id,
            outcome=attempt.outcome.value,
            tier=sub_request.tier.value,
        )
        return attempt

    def _allowed(self, backend_id: str) -> bool:
        return self._breakers is None or self._breakers.allow(backend_id)

    @staticmethod
    def _attempt_timeout(policy: RetryPolicy, deadline: Optional[Deadline]) -> Optional[float]:
        if deadline is None:
            return policy.timeout_seconds
        remaining = deadline.remaining()
        if remaining <= 0.0:
            return None
        return min(policy.timeout_seconds, remaining)

    def _abort(self, report: ExecutionReport, backend_id: str) -> ExecutionReport:
        self._logger.warning(
            "Deadline exhausted before calling backend '%s' (%s attempts made).",
            backend_id,
            len(report.attempts),
        )
        report.deadline_exhausted = True
        return report
