"""Operator command surface for rollout, flags, tiers, and metrics.

Every command validates its input before touching state, so a rejected
command never leaves a partial mutation behind.

Updates:
    v0.1 - 2025-11-08 - Added status, rollout override, and flag commands.
    v0.2 - 2025-11-08 - Added metric reset/export and tier toggles.
    v0.3 - 2025-11-09 - Surfaced recent control events and added circuit resets.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from config.settings import HealthThresholdConfig
from core.aggregator import TelemetryAggregator
from core.alerting import AlertManager
from core.circuit_breaker import CircuitBreakerRegistry
from core.dashboard import (
    EXPORT_FORMATS,
    SystemHealth,
    assess_system_health,
    build_dashboard,
    export_metrics,
)
from core.exceptions import OperatorCommandError
from core.feature_flags import FeatureFlagRegistry
from core.pipeline import TieredGenerationPipeline
from core.rollout import RolloutController
from core.telemetry import CONTROL_CATEGORIES, GLOBAL_TELEMETRY_FEED, TelemetryEvent, TelemetryFeed
from models.generation import StrategyTier
from models.metrics import Alert, MetricsSnapshot
from models.rollout import FeatureFlag, RolloutEvent, RolloutState

LOGGER = logging.getLogger("agc.console")


@dataclass(slots=True, frozen=True)
class ConsoleStatus:
    rollout_state: RolloutState
    metrics_snapshot: MetricsSnapshot
    open_alerts: List[Alert]
    flags: List[Dict[str, object]]
    tiers: Dict[str, bool]
    circuits: Dict[str, str]
    health: SystemHealth
    recent_events: List[TelemetryEvent]


class OperatorConsole:
    """Validated operator commands over the controller components."""

    def __init__(
        self,
        rollout: RolloutController,
        aggregator: TelemetryAggregator,
        alerts: AlertManager,
        flags: FeatureFlagRegistry,
        pipeline: Optional[TieredGenerationPipeline] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        health_thresholds: Optional[HealthThresholdConfig] = None,
        feed: Optional[TelemetryFeed] = None,
    ) -> None:
        self._rollout = rollout
        self._aggregator = aggregator
        self._alerts = alerts
        self._flags = flags
        self._pipeline = pipeline
        self._breakers = breakers
        self._health_thresholds = health_thresholds or HealthThresholdConfig()
        self._feed = feed if feed is not None else GLOBAL_TELEMETRY_FEED
        self._logger = LOGGER

    def get_status(self) -> ConsoleStatus:
        snapshot = self._aggregator.snapshot()
        open_alerts = self._alerts.open_alerts()
        return ConsoleStatus(
            rollout_state=self._rollout.state(),
            metrics_snapshot=snapshot,
            open_alerts=open_alerts,
            flags=self._flags.snapshot(),
            tiers=self._pipeline.tier_states() if self._pipeline else {},
            circuits=self._breakers.states() if self._breakers else {},
            health=assess_system_health(snapshot, open_alerts, self._health_thresholds),
            recent_events=self.recent_events(),
        )

    def recent_events(self, limit: int = 10) -> List[TelemetryEvent]:
        """Newest rollout, alert, circuit, and flag events, oldest first."""
        return self._feed.recent(CONTROL_CATEGORIES, limit)

    def set_rollout_percentage(self, value: object, reason: str = "manual override") -> RolloutEvent:
        """Force the rollout percentage; values outside [0, 100] are clamped."""
        numeric = self._coerce_percentage(value)
        if not isinstance(reason, str) or not reason.strip():
            raise OperatorCommandError("A non-empty reason is required for rollout overrides.")
        event = self._rollout.set_percentage(numeric, reason.strip())
        self._logger.warning(
            "Operator set rollout %s%% -> %s%% (%s)",
            event.old_percentage,
            event.new_percentage,
            event.reason,
        )
        return event

    def set_feature_enabled(self, flag_name: str, enabled: object) -> FeatureFlag:
        if not isinstance(enabled, bool):
            raise OperatorCommandError(f"Flag state must be a boolean, got {enabled!r}.")
        return self._flags.set_enabled(flag_name, enabled)

    def emergency_disable(self, flag_name: str) -> FeatureFlag:
        return self._flags.emergency_disable(flag_name)

    def emergency_enable(self, flag_name: str) -> FeatureFlag:
        return self._flags.emergency_enable(flag_name)

    def set_tier_enabled(self, tier: object, enabled: object) -> Dict[str, bool]:
        if self._pipeline is None:
            raise OperatorCommandError("No pipeline attached to this console.")
        if not isinstance(enabled, bool):
            raise OperatorCommandError(f"Tier state must be a boolean, got {enabled!r}.")
        try:
            resolved = StrategyTier.parse(tier)
        except ValueError as exc:
            raise OperatorCommandError(str(exc)) from exc
        self._pipeline.set_tier_enabled(resolved, enabled)
        return self._pipeline.tier_states()

    def reset_circuits(self, backend_id: Optional[str] = None) -> Dict[str, str]:
        """Close the breaker for *backend_id*, or every breaker when omitted."""
        if self._breakers is None:
            raise OperatorCommandError("No circuit breakers attached to this console.")
        try:
            states = self._breakers.reset(backend_id)
        except KeyError as exc:
            raise OperatorCommandError(f"No circuit recorded for backend {backend_id!r}.") from exc
        self._logger.warning("Operator reset circuit(s): %s", backend_id or "all")
        return states

    def reset_metrics(self) -> None:
        """Clear the metrics window; rollout history is kept."""
        self._aggregator.reset()
        self._logger.warning("Operator reset the metrics window.")

    def export_metrics(self, fmt: str = "json") -> str:
        if not isinstance(fmt, str) or fmt.lower() not in EXPORT_FORMATS:
            raise OperatorCommandError(
                f"Unsupported export format {fmt!r}; expected one of {', '.join(EXPORT_FORMATS)}."
            )
        snapshot = self._aggregator.snapshot()
        dashboard = build_dashboard(
            snapshot,
            self._rollout.state(),
            self._alerts.open_alerts(),
            alert_history=self._alerts.history(),
            flags=self._flags.snapshot(),
            circuits=self._breakers.states() if self._breakers else None,
            tiers_enabled=self._pipeline.tier_states() if self._pipeline else None,
            thresholds=self._health_thresholds,
        )
        return export_metrics(dashboard, fmt)

    def health_report(self) -> str:
        status = self.get_status()
        snapshot = status.metrics_snapshot
        lines = [
            f"System health: {status.health.status} ({status.health.score}/100)",
            f"Rollout: {status.rollout_state.percentage}% [{status.rollout_state.status.value}]",
            f"Success rate: {snapshot.success_rate:.1%} over {snapshot.sample_size} samples",
            "Average quality: "
            + (f"{snapshot.average_quality:.2f}" if snapshot.average_quality is not None else "n/a"),
            f"Latency p95: {snapshot.latency.p95:.2f}s",
            f"Open alerts: {len(status.open_alerts)}",
        ]
        lines.extend(f"  - [{alert.level.value}] {alert.message}" for alert in status.open_alerts)
        lines.extend(f"Issue: {issue}" for issue in status.health.issues)
        if status.recent_events:
            lines.append("Recent events:")
            lines.extend(
                f"  - {event.name} {_format_fields(event.payload)}" for event in status.recent_events
            )
        return "\n".join(lines)

    @staticmethod
    def _coerce_percentage(value: object) -> float:
        if isinstance(value, bool):
            raise OperatorCommandError("Rollout percentage must be numeric, not a boolean.")
        if isinstance(value, (int, float)):
            numeric = float(value)
        elif isinstance(value, str):
            try:
                numeric = float(value.strip())
            except ValueError as exc:
                raise OperatorCommandError(f"Rollout percentage {value!r} is not numeric.") from exc
        else:
            raise OperatorCommandError(f"Rollout percentage {value!r} is not numeric.")
        if not math.isfinite(numeric):
            raise OperatorCommandError("Rollout percentage must be finite.")
        return numeric


def render_status(status: ConsoleStatus) -> Mapping[str, object]:
    """Flatten a console status into a loggable mapping."""
    snapshot = status.metrics_snapshot
    return {
        "rollout_percentage": status.rollout_state.percentage,
        "rollout_status": status.rollout_state.status.value,
        "success_rate": round(snapshot.success_rate, 4),
        "sample_size": snapshot.sample_size,
        "average_quality": snapshot.average_quality,
        "p95_latency_seconds": snapshot.latency.p95,
        "open_alerts": len(status.open_alerts),
        "health": status.health.status,
        "tiers": dict(status.tiers),
        "circuits": dict(status.circuits),
        "recent_events": [event.to_payload() for event in status.recent_events],
    }


def _format_fields(payload: Mapping[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in payload.items())
