"""Tests for the retry/fallback executor.

Updates: v0.1 - 2025-11-08 - Covered backoff, fallback ordering, deadlines, and circuits.
"""

from __future__ import annotations

from typing import Dict

import pytest

from conftest import FakeClock, ScriptedBackend
from config.settings import CircuitBreakerConfig
from core.backend_invoker import BackendInvoker
from core.circuit_breaker import CircuitBreakerRegistry
from core.retry_executor import Deadline, RetryFallbackExecutor, RetryPolicy
from models.generation import AttemptOutcome, StrategyTier, SubRequest

SUB_REQUEST = SubRequest(tier=StrategyTier.FULL_ENHANCEMENT, system="sys", prompt="task")


def _executor(
    clock: FakeClock,
    backends: Dict[str, ScriptedBackend],
    breakers: CircuitBreakerRegistry | None = None,
) -> RetryFallbackExecutor:
    invoker = BackendInvoker(backends, clock=clock)
    return RetryFallbackExecutor(invoker, breakers, sleep=clock.sleep, clock=clock)


def test_backoff_is_non_decreasing_and_capped() -> None:
    policy = RetryPolicy(max_retries=8, base_delay_seconds=0.5, max_delay_seconds=4.0)

    delays = [policy.delay_for(attempt) for attempt in range(1, 8)]

    assert delays == sorted(delays)
    assert delays[0] == pytest.approx(1.0)
    assert max(delays) == pytest.approx(4.0)


def test_zero_retries_still_makes_one_attempt() -> None:
    assert RetryPolicy(max_retries=0).primary_attempts == 1


def test_primary_success_stops_immediately(clock: FakeClock) -> None:
    primary = ScriptedBackend(clock)
    fallback = ScriptedBackend(clock)
    executor = _executor(clock, {"p": primary, "f": fallback})

    report = executor.execute("p", ["f"], SUB_REQUEST, RetryPolicy(max_retries=3))

    assert [attempt.backend_id for attempt in report.attempts] == ["p"]
    assert report.success is not None
    assert fallback.calls == []


def test_primary_retries_with_backoff_then_fallbacks_in_order(clock: FakeClock) -> None:
    primary = ScriptedBackend(clock, default=RuntimeError("down"))
    first = ScriptedBackend(clock, default=RuntimeError("also down"))
    second = ScriptedBackend(clock, default="served")
    third = ScriptedBackend(clock)
    executor = _executor(clock, {"p": primary, "f1": first, "f2": second, "f3": third})
    policy = RetryPolicy(max_retries=3, base_delay_seconds=0.1, max_delay_seconds=1.0)

    report = executor.execute("p", ["f1", "f2", "f3"], SUB_REQUEST, policy)

    assert [attempt.backend_id for attempt in report.attempts] == ["p", "p", "p", "f1", "f2"]
    assert report.success is not None and report.success.backend_id == "f2"
    assert clock.sleeps == [pytest.approx(0.2), pytest.approx(0.4)]
    assert third.calls == []


def test_every_backend_failing_returns_full_attempt_list(clock: FakeClock) -> None:
    executor = _executor(
        clock,
        {
            "p": ScriptedBackend(clock, default=RuntimeError("x")),
            "f": ScriptedBackend(clock, default="late", latency=9.0),
        },
    )

    report = executor.execute("p", ["f"], SUB_REQUEST, RetryPolicy(max_retries=2, timeout_seconds=5.0))

    assert report.success is None
    assert [attempt.outcome for attempt in report.attempts] == [
        AttemptOutcome.ERROR,
        AttemptOutcome.ERROR,
        AttemptOutcome.TIMEOUT,
    ]
    assert report.deadline_exhausted is False


def test_deadline_stops_retries_when_backoff_exceeds_budget(clock: FakeClock) -> None:
    primary = ScriptedBackend(clock, default=RuntimeError("slow failure"), latency=0.8)
    fallback = ScriptedBackend(clock)
    executor = _executor(clock, {"p": primary, "f": fallback})
    policy = RetryPolicy(max_retries=3, base_delay_seconds=0.1, max_delay_seconds=1.0, timeout_seconds=5.0)

    report = executor.execute("p", ["f"], SUB_REQUEST, policy, Deadline(2.0, clock))

    assert report.deadline_exhausted is True
    assert len(report.attempts) == 2
    assert fallback.calls == []


def test_attempt_timeout_is_bounded_by_remaining_deadline(clock: FakeClock) -> None:
    seen = []

    class _Recording(ScriptedBackend):
        def generate(self, sub_request: SubRequest, timeout: float) -> str:
            seen.append(timeout)
            return super().generate(sub_request, timeout)

    executor = _executor(clock, {"p": _Recording(clock)})

    executor.execute("p", [], SUB_REQUEST, RetryPolicy(timeout_seconds=30.0), Deadline(1.5, clock))

    assert seen == [pytest.approx(1.5)]


def test_open_circuit_skips_backend_without_attempt(clock: FakeClock) -> None:
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=60.0), clock=clock
    )
    breakers.record("p", success=False)
    primary = ScriptedBackend(clock)
    fallback = ScriptedBackend(clock, default="fallback output")
    executor = _executor(clock, {"p": primary, "f": fallback}, breakers)

    report = executor.execute("p", ["f"], SUB_REQUEST, RetryPolicy(max_retries=3))

    assert primary.calls == []
    assert report.skipped_backends == ["p"]
    assert [attempt.backend_id for attempt in report.attempts] == ["f"]


def test_circuit_half_opens_after_recovery_timeout(clock: FakeClock) -> None:
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=2, recovery_timeout_seconds=10.0), clock=clock
    )
    breakers.record("p", success=False)
    breakers.record("p", success=False)
    assert breakers.allow("p") is False

    clock.advance(10.0)
    assert breakers.states()["p"] == "half_open"
    assert breakers.allow("p") is True

    breakers.record("p", success=False)
    assert breakers.states()["p"] == "open"
