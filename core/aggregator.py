"""Telemetry aggregation for pipeline results.

The aggregator is the single writer of the metrics window; every other
component reads frozen :class:`MetricsSnapshot` copies.

Updates:
    v0.1 - 2025-11-07 - Added per-tier counters and bounded latency samples.
    v0.2 - 2025-11-07 - Added nearest-rank percentiles and third-based trend detection.
    v0.3 - 2025-11-08 - Tracked per-backend and per-flag usage counters.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from statistics import mean
from threading import Lock
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence

from config.settings import TelemetryConfig
from core.quality import QUALITY_BANDS, classify_quality
from core.telemetry import emit_metric
from models.generation import TIER_ORDER, AttemptOutcome, GenerationResult, TierStatus
from models.metrics import (
    BackendMetrics,
    FlagMetrics,
    LatencySummary,
    MetricsSnapshot,
    TierMetrics,
    TrendDirection,
)

LOGGER = logging.getLogger("agc.aggregator")

TREND_DEAD_ZONE = 0.2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted sequence."""
    if not sorted_values:
        return 0.0
    index = max(0, math.ceil(pct / 100.0 * len(sorted_values)) - 1)
    return sorted_values[min(index, len(sorted_values) - 1)]


def classify_trend(series: Sequence[float], dead_zone: float = TREND_DEAD_ZONE) -> TrendDirection:
    """Compare the mean of the latest third with the earliest third."""
    if len(series) < 3:
        return TrendDirection.STABLE
    third = len(series) // 3
    delta = mean(series[-third:]) - mean(series[:third])
    if delta > dead_zone:
        return TrendDirection.IMPROVING
    if delta < -dead_zone:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def summarise_latency(samples: Sequence[float]) -> LatencySummary:
    if not samples:
        return LatencySummary()
    ordered = sorted(samples)
    return LatencySummary(
        sample_size=len(ordered),
        mean=round(mean(ordered), 4),
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        maximum=ordered[-1],
    )


@dataclass(slots=True)
class _TierCounter:
    attempts: int = 0
    accepted: int = 0
    rejected: int = 0
    exhausted: int = 0
    aborted: int = 0
    backend_attempts: int = 0
    latencies: Deque[float] = field(default_factory=deque)
    scores: Deque[float] = field(default_factory=deque)


@dataclass(slots=True)
class _BackendCounter:
    attempts: int = 0
    successes: int = 0
    timeouts: int = 0
    errors: int = 0


@dataclass(slots=True)
class _FlagCounter:
    total_requests: int = 0
    enabled_requests: int = 0
    successful_requests: int = 0
    quality_total: float = 0.0
    quality_samples: int = 0
    processing_total: float = 0.0


@dataclass(slots=True)
class MetricsWindow:
    """Mutable rolling aggregate owned by :class:`TelemetryAggregator`."""

    latency_window: int
    score_window: int
    success_window: int
    started_at: float
    total_generations: int = 0
    successful_generations: int = 0
    static_fallbacks: int = 0
    fallback_usages: int = 0
    fatal_failures: int = 0
    total_attempts: int = 0
    attempt_timeouts: int = 0
    today: Optional[date] = None
    generations_today: int = 0
    latencies: Deque[float] = field(default_factory=deque)
    scores: Deque[float] = field(default_factory=deque)
    outcomes: Deque[bool] = field(default_factory=deque)
    tiers: Dict[str, _TierCounter] = field(default_factory=dict)
    backends: Dict[str, _BackendCounter] = field(default_factory=dict)
    flags: Dict[str, _FlagCounter] = field(default_factory=dict)

    @classmethod
    def create(cls, config: TelemetryConfig, started_at: float) -> "MetricsWindow":
        window = cls(
            latency_window=config.latency_window,
            score_window=config.score_window,
            success_window=config.success_window,
            started_at=started_at,
            latencies=deque(maxlen=config.latency_window),
            scores=deque(maxlen=config.score_window),
            outcomes=deque(maxlen=config.success_window),
        )
        for tier in TIER_ORDER:
            window.tiers[tier.value] = window.new_tier_counter()
        return window

    def new_tier_counter(self) -> _TierCounter:
        return _TierCounter(
            latencies=deque(maxlen=self.latency_window),
            scores=deque(maxlen=self.score_window),
        )


class TelemetryAggregator:
    """Fold pipeline results into rolling metrics and serve stable snapshots."""

    def __init__(
        self,
        config: Optional[TelemetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or TelemetryConfig()
        self._clock = clock
        self._now = now
        self._lock = Lock()
        self._window = MetricsWindow.create(self._config, clock())
        self._logger = LOGGER

    def record(
        self,
        result: GenerationResult,
        elapsed: float,
        flags: Optional[Mapping[str, bool]] = None,
    ) -> None:
        """Fold one pipeline result; the only write path for the window."""
        elapsed = max(0.0, float(elapsed))
        with self._lock:
            window = self._window
            window.total_generations += 1
            self._roll_day(window)
            window.generations_today += 1
            window.latencies.append(elapsed)
            window.outcomes.append(result.succeeded)
            if result.succeeded:
                window.successful_generations += 1
            else:
                window.static_fallbacks += 1
            if result.used_fallback:
                window.fallback_usages += 1
            if result.quality_score is not None:
                window.scores.append(result.quality_score)

            for outcome in result.tier_outcomes:
                counter = window.tiers.setdefault(outcome.tier.value, window.new_tier_counter())
                counter.attempts += 1
                counter.backend_attempts += len(outcome.attempts)
                counter.latencies.append(outcome.elapsed_seconds)
                if outcome.score is not None:
                    counter.scores.append(outcome.score)
                if outcome.status is TierStatus.ACCEPTED:
                    counter.accepted += 1
                elif outcome.status is TierStatus.REJECTED:
                    counter.rejected += 1
                elif outcome.status is TierStatus.EXHAUSTED:
                    counter.exhausted += 1
                else:
                    counter.aborted += 1

            for backend_id, attempt_outcome in result.iter_attempts():
                backend = window.backends.setdefault(backend_id, _BackendCounter())
                backend.attempts += 1
                window.total_attempts += 1
                if attempt_outcome is AttemptOutcome.SUCCESS:
                    backend.successes += 1
                elif attempt_outcome is AttemptOutcome.TIMEOUT:
                    backend.timeouts += 1
                    window.attempt_timeouts += 1
                else:
                    backend.errors += 1

            for name, enabled in (flags or {}).items():
                flag = window.flags.setdefault(name, _FlagCounter())
                flag.total_requests += 1
                if not enabled:
                    continue
                flag.enabled_requests += 1
                flag.processing_total += elapsed
                if result.succeeded:
                    flag.successful_requests += 1
                if result.quality_score is not None:
                    flag.quality_total += result.quality_score
                    flag.quality_samples += 1

        emit_metric(
            "agc.generation.elapsed",
            elapsed,
            tier=result.strategy_tier.value,
            succeeded=result.succeeded,
        )

    def record_failure(self, elapsed: float) -> None:
        """Count a fatal pipeline failure as an unsuccessful generation."""
        with self._lock:
            window = self._window
            window.total_generations += 1
            window.fatal_failures += 1
            self._roll_day(window)
            window.generations_today += 1
            window.latencies.append(max(0.0, float(elapsed)))
            window.outcomes.append(False)
        self._logger.error("Recorded fatal pipeline failure after %.2fs.", elapsed)

    def reset(self) -> None:
        """Clear the metrics window (operator command only)."""
        with self._lock:
            self._window = MetricsWindow.create(self._config, self._clock())
        self._logger.info("Metrics window reset.")

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            window = self._window
            latencies = list(window.latencies)
            scores = list(window.scores)
            outcomes = list(window.outcomes)
            tiers = {
                name: TierMetrics(
                    tier=name,
                    attempts=counter.attempts,
                    accepted=counter.accepted,
                    rejected=counter.rejected,
                    exhausted=counter.exhausted,
                    aborted=counter.aborted,
                    backend_attempts=counter.backend_attempts,
                    average_score=round(mean(counter.scores), 3) if counter.scores else None,
                    latency=summarise_latency(list(counter.latencies)),
                )
                for name, counter in window.tiers.items()
            }
            backends = {
                backend_id: BackendMetrics(
                    backend_id=backend_id,
                    attempts=counter.attempts,
                    successes=counter.successes,
                    timeouts=counter.timeouts,
                    errors=counter.errors,
                )
                for backend_id, counter in window.backends.items()
            }
            flags = {
                name: FlagMetrics(
                    name=name,
                    total_requests=counter.total_requests,
                    enabled_requests=counter.enabled_requests,
                    successful_requests=counter.successful_requests,
                    average_quality=(
                        round(counter.quality_total / counter.quality_samples, 3)
                        if counter.quality_samples
                        else None
                    ),
                    average_processing_time=(
                        round(counter.processing_total / counter.enabled_requests, 4)
                        if counter.enabled_requests
                        else 0.0
                    ),
                )
                for name, counter in window.flags.items()
            }
            totals = {
                "total_generations": window.total_generations,
                "successful_generations": window.successful_generations,
                "static_fallbacks": window.static_fallbacks,
                "fallback_usages": window.fallback_usages,
                "fatal_failures": window.fatal_failures,
                "total_attempts": window.total_attempts,
                "attempt_timeouts": window.attempt_timeouts,
                "generations_today": window.generations_today,
            }
            uptime = self._clock() - window.started_at

        return MetricsSnapshot(
            taken_at=self._now(),
            uptime_seconds=round(max(0.0, uptime), 3),
            success_rate=(sum(outcomes) / len(outcomes)) if outcomes else 0.0,
            sample_size=len(outcomes),
            average_quality=round(mean(scores), 3) if scores else None,
            score_sample_size=len(scores),
            quality_distribution=self._distribution(scores),
            quality_trend=classify_trend(scores),
            latency_trend=classify_trend([-value for value in latencies]),
            latency=summarise_latency(latencies),
            tiers=tiers,
            backends=backends,
            flags=flags,
            **totals,
        )

    @staticmethod
    def _distribution(scores: List[float]) -> Dict[str, int]:
        distribution = {band: 0 for band, _ in QUALITY_BANDS}
        for score in scores:
            band = classify_quality(score)
            if band is not None:
                distribution[band] += 1
        return distribution

    def _roll_day(self, window: MetricsWindow) -> None:
        today = self._now().date()
        if window.today != today:
            window.today = today
            window.generations_today = 0
