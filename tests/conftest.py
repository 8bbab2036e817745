"""Shared fixtures for controller tests.

Updates: v0.1 - 2025-11-08 - Added fake clock, scripted backends, and config factory.
"""

from __future__ import annotations

import copy
import os
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

import pytest

# Keep litellm from fetching its model cost map over the network at import time.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from config import settings
from core.telemetry import GLOBAL_TELEMETRY_FEED
from models.generation import Artifact, QualityAssessment, StrategyTier, SubRequest
from models.metrics import LatencySummary, MetricsSnapshot, TrendDirection

GOOD_TEXT = (
    "The quarterly service report covers availability, latency, and cost. "
    "Availability stayed above target for every region during the period. "
    "Latency improved after the cache rollout and cost fell slightly."
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


Step = Union[str, BaseException]


class ScriptedBackend:
    """Backend that replays a script of outputs/exceptions, advancing a fake clock."""

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        script: Iterable[Step] = (),
        default: Step = GOOD_TEXT,
        latency: float = 0.0,
    ) -> None:
        self._clock = clock
        self._script = list(script)
        self._default = default
        self._latency = latency
        self.calls: List[SubRequest] = []

    def generate(self, sub_request: SubRequest, timeout: float) -> str:
        self.calls.append(sub_request)
        step = self._script.pop(0) if self._script else self._default
        if self._clock is not None and self._latency:
            self._clock.advance(self._latency)
        if isinstance(step, BaseException):
            raise step
        return step


class FixedAssessor:
    """Assessor returning a configured score per tier."""

    def __init__(self, scores: Optional[Mapping[StrategyTier, float]] = None, default: float = 9.0) -> None:
        self._scores = dict(scores or {})
        self._default = default
        self.assessed: List[Artifact] = []

    def assess(self, artifact: Artifact, context: Mapping[str, object]) -> QualityAssessment:
        self.assessed.append(artifact)
        score = self._scores.get(artifact.tier, self._default)
        deficiencies = () if score >= 10 else (f"scored {score} by fixture",)
        return QualityAssessment(score=score, deficiencies=deficiencies)


BASE_CONFIG: Dict[str, object] = {
    "version": "test",
    "backends": {
        "primary": {"provider": "ollama", "model": "primary-model"},
        "secondary": {"provider": "ollama", "model": "secondary-model"},
        "tertiary": {"provider": "ollama", "model": "tertiary-model"},
    },
    "retry": {"max_retries": 3, "base_delay_seconds": 0.1, "max_delay_seconds": 1.0},
    "tiers": {
        "full_enhancement": {
            "backends": ["primary", "secondary"],
            "acceptance_threshold": 7.0,
            "timeout_seconds": 5.0,
        },
        "baseline": {
            "backends": ["secondary", "tertiary"],
            "acceptance_threshold": 6.0,
            "timeout_seconds": 5.0,
        },
        "minimal": {
            "backends": ["tertiary"],
            "acceptance_threshold": 4.0,
            "timeout_seconds": 5.0,
        },
        "static_template": {"backends": [], "acceptance_threshold": 0.0, "timeout_seconds": 1.0},
    },
    "circuit_breaker": {"enabled": True, "failure_threshold": 10, "recovery_timeout_seconds": 30.0},
    "store": {"enabled": False},
    "quality_log": {"enabled": False},
}


def _merge(base: Dict[str, object], overrides: Mapping[str, object]) -> Dict[str, object]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@pytest.fixture(autouse=True)
def _clear_event_feed() -> None:
    GLOBAL_TELEMETRY_FEED.clear()


@pytest.fixture()
def make_config() -> Callable[..., settings.AppConfig]:
    """Build an AppConfig from the test baseline merged with overrides."""

    def _factory(**overrides: object) -> settings.AppConfig:
        return settings.AppConfig.model_validate(_merge(BASE_CONFIG, overrides))

    return _factory


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_snapshot() -> Callable[..., MetricsSnapshot]:
    """Build a metrics snapshot with neutral defaults."""

    def _factory(**overrides: object) -> MetricsSnapshot:
        values: Dict[str, object] = {
            "taken_at": datetime(2025, 11, 8, tzinfo=timezone.utc),
            "uptime_seconds": 60.0,
            "total_generations": 0,
            "successful_generations": 0,
            "static_fallbacks": 0,
            "fallback_usages": 0,
            "fatal_failures": 0,
            "total_attempts": 0,
            "attempt_timeouts": 0,
            "generations_today": 0,
            "success_rate": 0.0,
            "sample_size": 0,
            "average_quality": None,
            "score_sample_size": 0,
            "quality_distribution": {},
            "quality_trend": TrendDirection.STABLE,
            "latency_trend": TrendDirection.STABLE,
            "latency": LatencySummary(),
        }
        values.update(overrides)
        return MetricsSnapshot(**values)  # type: ignore[arg-type]

    return _factory
