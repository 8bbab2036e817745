"""Metric snapshot and alert models consumed by rollout, alerting, and the console.

Updates:
    v0.1 - 2025-11-07 - Added frozen metrics snapshot with per-tier and per-backend views.
    v0.2 - 2025-11-08 - Added alert model with resolution tracking.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class TrendDirection(str, Enum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


class AlertLevel(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(slots=True, frozen=True)
class LatencySummary:
    sample_size: int = 0
    mean: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    maximum: float = 0.0


@dataclass(slots=True, frozen=True)
class TierMetrics:
    """Cumulative counters for one strategy tier."""

    tier: str
    attempts: int = 0
    accepted: int = 0
    rejected: int = 0
    exhausted: int = 0
    aborted: int = 0
    backend_attempts: int = 0
    average_score: Optional[float] = None
    latency: LatencySummary = field(default_factory=LatencySummary)

    @property
    def success_rate(self) -> float:
        return self.accepted / self.attempts if self.attempts else 0.0


@dataclass(slots=True, frozen=True)
class BackendMetrics:
    backend_id: str
    attempts: int = 0
    successes: int = 0
    timeouts: int = 0
    errors: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0


@dataclass(slots=True, frozen=True)
class FlagMetrics:
    """Usage counters for one feature flag."""

    name: str
    total_requests: int = 0
    enabled_requests: int = 0
    successful_requests: int = 0
    average_quality: Optional[float] = None
    average_processing_time: float = 0.0

    @property
    def error_rate(self) -> float:
        if not self.enabled_requests:
            return 0.0
        return 1.0 - self.successful_requests / self.enabled_requests


@dataclass(slots=True, frozen=True)
class MetricsSnapshot:
    """Stable read view of the telemetry aggregator state."""

    taken_at: datetime
    uptime_seconds: float
    total_generations: int
    successful_generations: int
    static_fallbacks: int
    fallback_usages: int
    fatal_failures: int
    total_attempts: int
    attempt_timeouts: int
    generations_today: int
    success_rate: float
    sample_size: int
    average_quality: Optional[float]
    score_sample_size: int
    quality_distribution: Dict[str, int]
    quality_trend: TrendDirection
    latency_trend: TrendDirection
    latency: LatencySummary
    tiers: Dict[str, TierMetrics] = field(default_factory=dict)
    backends: Dict[str, BackendMetrics] = field(default_factory=dict)
    flags: Dict[str, FlagMetrics] = field(default_factory=dict)

    @property
    def cumulative_success_rate(self) -> float:
        if not self.total_generations:
            return 0.0
        return self.successful_generations / self.total_generations

    @property
    def timeout_rate(self) -> float:
        return self.attempt_timeouts / self.total_attempts if self.total_attempts else 0.0

    @property
    def backend_success_rate(self) -> float:
        attempts = sum(item.attempts for item in self.backends.values())
        if not attempts:
            return 0.0
        return sum(item.successes for item in self.backends.values()) / attempts


@dataclass(slots=True, frozen=True)
class Alert:
    """Discrete alert raised when a metric crosses a configured threshold."""

    level: AlertLevel
    metric: str
    message: str
    value: float
    threshold: float
    alert_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def resolve(self, when: Optional[datetime] = None) -> "Alert":
        return replace(self, resolved_at=when or _utcnow())
