"""Threshold alerts derived from telemetry snapshots.

Updates:
    v0.1 - 2025-11-07 - Added warning/critical rules with per-(metric, level) dedupe.
    v0.2 - 2025-11-08 - Added debounce-based resolution and per-backend rules.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional, Tuple

from config.settings import AlertingConfig, AlertRuleConfig
from core.telemetry import publish_event
from models.metrics import Alert, AlertLevel, MetricsSnapshot

LOGGER = logging.getLogger("agc.alerts")

AlertKey = Tuple[str, AlertLevel]
AlertListener = Callable[[Alert], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class AlertEvaluation:
    created: Tuple[Alert, ...] = ()
    resolved: Tuple[Alert, ...] = ()


@dataclass(slots=True, frozen=True)
class _Observation:
    metric: str
    value: float
    rule: AlertRuleConfig


class AlertManager:
    """Raise one alert per breached (metric, level) and resolve after a clear streak."""

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or AlertingConfig()
        self._now = now
        self._lock = Lock()
        self._open: Dict[AlertKey, Alert] = {}
        self._clear_streaks: Dict[AlertKey, int] = {}
        self._history: Deque[Alert] = deque(maxlen=self._config.history_limit)
        self._listeners: List[AlertListener] = []
        self._logger = LOGGER

    def add_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def open_alerts(self) -> List[Alert]:
        with self._lock:
            return sorted(self._open.values(), key=lambda alert: alert.created_at)

    def history(self, limit: int = 50) -> List[Alert]:
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit > 0 else []

    def critical_count(self) -> int:
        return sum(1 for alert in self.open_alerts() if alert.level is AlertLevel.CRITICAL)

    def evaluate(self, snapshot: MetricsSnapshot) -> AlertEvaluation:
        created: List[Alert] = []
        resolved: List[Alert] = []
        observations = self._observe(snapshot)
        with self._lock:
            for observation in observations:
                rule = observation.rule
                for level, threshold in (
                    (AlertLevel.WARNING, rule.warning),
                    (AlertLevel.CRITICAL, rule.critical),
                ):
                    key = (observation.metric, level)
                    if self._breached(rule, observation.value, threshold):
                        self._clear_streaks[key] = 0
                        if key not in self._open:
                            alert = self._build_alert(observation, level, threshold)
                            self._open[key] = alert
                            self._history.append(alert)
                            created.append(alert)
                        continue
                    if key not in self._open:
                        continue
                    streak = self._clear_streaks.get(key, 0) + 1
                    self._clear_streaks[key] = streak
                    if streak >= self._config.debounce_snapshots:
                        alert = self._open.pop(key).resolve(self._now())
                        self._clear_streaks.pop(key, None)
                        self._history.append(alert)
                        resolved.append(alert)

        for alert in created:
            self._logger.warning("Alert raised [%s] %s", alert.level.value, alert.message)
            publish_event("alert.created", level=alert.level.value, metric=alert.metric, value=alert.value)
        for alert in resolved:
            self._logger.info("Alert resolved [%s] %s", alert.level.value, alert.metric)
            publish_event("alert.resolved", level=alert.level.value, metric=alert.metric)
        for alert in created + resolved:
            for listener in tuple(self._listeners):
                listener(alert)
        return AlertEvaluation(created=tuple(created), resolved=tuple(resolved))

    def _observe(self, snapshot: MetricsSnapshot) -> List[_Observation]:
        observations: List[_Observation] = []
        for rule in self._config.rules:
            if rule.metric == "success_rate":
                if snapshot.sample_size >= rule.min_sample_size:
                    observations.append(_Observation(rule.metric, snapshot.success_rate, rule))
            elif rule.metric == "p95_latency_seconds":
                if snapshot.latency.sample_size >= rule.min_sample_size:
                    observations.append(_Observation(rule.metric, snapshot.latency.p95, rule))
            elif rule.metric == "average_quality":
                if (
                    snapshot.average_quality is not None
                    and snapshot.score_sample_size >= rule.min_sample_size
                ):
                    observations.append(_Observation(rule.metric, snapshot.average_quality, rule))
            elif rule.metric == "backend_success_rate":
                for backend_id, backend in sorted(snapshot.backends.items()):
                    if backend.attempts >= rule.min_sample_size:
                        observations.append(
                            _Observation(
                                f"backend_success_rate:{backend_id}",
                                backend.success_rate,
                                rule,
                            )
                        )
        return observations

    @staticmethod
    def _breached(rule: AlertRuleConfig, value: float, threshold: float) -> bool:
        if rule.direction == "below":
            return value < threshold
        return value > threshold

    def _build_alert(self, observation: _Observation, level: AlertLevel, threshold: float) -> Alert:
        direction = "below" if observation.rule.direction == "below" else "above"
        return Alert(
            level=level,
            metric=observation.metric,
            message=(
                f"{observation.metric} at {observation.value:.3f} is {direction} the "
                f"{level.value.lower()} threshold {threshold:g}"
            ),
            value=observation.value,
            threshold=threshold,
            created_at=self._now(),
        )
