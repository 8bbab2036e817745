"""Tests for telemetry aggregation and snapshot statistics.

Updates: v0.1 - 2025-11-08 - Covered percentiles, trends, counters, and reset.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from conftest import FakeClock
from config.settings import TelemetryConfig
from core.aggregator import TelemetryAggregator, classify_trend, percentile
from models.generation import (
    Artifact,
    AttemptOutcome,
    GenerationResult,
    StrategyTier,
    TierOutcome,
    TierStatus,
)
from models.metrics import TrendDirection


def _result(
    tier: StrategyTier = StrategyTier.BASELINE,
    score: Optional[float] = 8.0,
    attempts: Tuple[Tuple[str, AttemptOutcome], ...] = (("secondary", AttemptOutcome.SUCCESS),),
    used_fallback: bool = False,
) -> GenerationResult:
    artifact = Artifact(artifact_id="a", content="text", tier=tier, backend_id=attempts[-1][0] if attempts else None)
    return GenerationResult(
        request_id="r",
        strategy_tier=tier,
        artifact=artifact,
        quality_score=score,
        total_attempts=len(attempts),
        tier_outcomes=(
            TierOutcome(tier=tier, status=TierStatus.ACCEPTED, threshold=6.0, attempts=attempts, score=score),
        ),
        used_fallback=used_fallback,
    )


def test_percentile_uses_nearest_rank() -> None:
    values = [float(value) for value in range(1, 101)]

    assert percentile(values, 50) == 50.0
    assert percentile(values, 95) == 95.0
    assert percentile(values, 99) == 99.0
    assert percentile([], 95) == 0.0
    assert percentile([4.0], 99) == 4.0


def test_trend_compares_outer_thirds() -> None:
    assert classify_trend([5, 5, 5, 8, 8, 8]) is TrendDirection.IMPROVING
    assert classify_trend([8, 8, 8, 5, 5, 5]) is TrendDirection.DECLINING
    assert classify_trend([7.0, 7.1, 7.0, 7.1, 7.0, 7.1]) is TrendDirection.STABLE
    assert classify_trend([1.0, 9.0]) is TrendDirection.STABLE


def test_snapshot_counts_results(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)
    aggregator.record(_result(score=8.0), elapsed=1.0)
    aggregator.record(
        _result(
            score=9.0,
            attempts=(("primary", AttemptOutcome.TIMEOUT), ("secondary", AttemptOutcome.SUCCESS)),
            used_fallback=True,
        ),
        elapsed=3.0,
    )
    aggregator.record(
        _result(tier=StrategyTier.STATIC_TEMPLATE, score=4.0, attempts=()),
        elapsed=2.0,
    )

    snapshot = aggregator.snapshot()

    assert snapshot.total_generations == 3
    assert snapshot.successful_generations == 2
    assert snapshot.static_fallbacks == 1
    assert snapshot.fallback_usages == 1
    assert snapshot.sample_size == 3
    assert abs(snapshot.success_rate - 2 / 3) < 1e-9
    assert snapshot.average_quality == 7.0
    assert snapshot.total_attempts == 3
    assert snapshot.attempt_timeouts == 1
    assert snapshot.backends["primary"].timeouts == 1
    assert snapshot.backends["secondary"].successes == 2
    assert snapshot.latency.p95 == 3.0
    assert snapshot.tiers["baseline"].accepted == 2
    assert snapshot.quality_distribution["cinematic"] == 1


def test_success_rate_uses_bounded_window(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(TelemetryConfig(success_window=5), clock=clock)
    for _ in range(5):
        aggregator.record(_result(tier=StrategyTier.STATIC_TEMPLATE, attempts=()), elapsed=0.1)
    for _ in range(5):
        aggregator.record(_result(), elapsed=0.1)

    snapshot = aggregator.snapshot()

    assert snapshot.success_rate == 1.0
    assert snapshot.sample_size == 5
    assert snapshot.total_generations == 10


def test_snapshot_is_stable_copy(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)
    aggregator.record(_result(), elapsed=1.0)
    snapshot = aggregator.snapshot()

    aggregator.record(_result(), elapsed=1.0)

    assert snapshot.total_generations == 1
    assert aggregator.snapshot().total_generations == 2


def test_fatal_failure_counts_against_success_rate(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)
    aggregator.record(_result(), elapsed=1.0)
    aggregator.record_failure(elapsed=2.0)

    snapshot = aggregator.snapshot()

    assert snapshot.fatal_failures == 1
    assert snapshot.success_rate == 0.5


def test_reset_clears_window(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)
    aggregator.record(_result(), elapsed=1.0)

    aggregator.reset()
    snapshot = aggregator.snapshot()

    assert snapshot.total_generations == 0
    assert snapshot.average_quality is None
    assert snapshot.backends == {}


def test_generations_today_rolls_over(clock: FakeClock) -> None:
    day = {"now": datetime(2025, 11, 8, 23, 0, tzinfo=timezone.utc)}
    aggregator = TelemetryAggregator(clock=clock, now=lambda: day["now"])
    aggregator.record(_result(), elapsed=1.0)
    aggregator.record(_result(), elapsed=1.0)

    day["now"] += timedelta(hours=2)
    aggregator.record(_result(), elapsed=1.0)

    snapshot = aggregator.snapshot()
    assert snapshot.generations_today == 1
    assert snapshot.total_generations == 3


def test_flag_usage_is_tracked(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)
    aggregator.record(_result(score=8.0), elapsed=2.0, flags={"canary": True})
    aggregator.record(_result(score=6.0), elapsed=4.0, flags={"canary": False})

    usage = aggregator.snapshot().flags["canary"]

    assert usage.total_requests == 2
    assert usage.enabled_requests == 1
    assert usage.average_quality == 8.0
    assert usage.average_processing_time == 2.0


def test_concurrent_records_are_not_lost(clock: FakeClock) -> None:
    aggregator = TelemetryAggregator(clock=clock)

    def _worker() -> None:
        for _ in range(200):
            aggregator.record(_result(), elapsed=0.01)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert aggregator.snapshot().total_generations == 800
