"""Dashboard assembly, system health scoring, and metric export.

Updates:
    v0.1 - 2025-11-08 - Added dashboard sections and health scoring.
    v0.2 - 2025-11-08 - Added JSON and CSV metric exports.
"""

from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from config.settings import HealthThresholdConfig
from models.metrics import Alert, AlertLevel, LatencySummary, MetricsSnapshot
from models.rollout import RolloutState

EXPORT_FORMATS = ("json", "csv")


@dataclass(slots=True, frozen=True)
class SystemHealth:
    status: str
    score: int
    issues: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DashboardMetrics:
    """Full dashboard payload used for the JSON export."""

    generated_at: str
    overview: Dict[str, object]
    quality: Dict[str, object]
    performance: Dict[str, object]
    reliability: Dict[str, object]
    feature_flags: List[Dict[str, object]]
    rollout: Dict[str, object]
    alerts: Dict[str, object]
    trends: Dict[str, object]


def assess_system_health(
    snapshot: MetricsSnapshot,
    open_alerts: Sequence[Alert],
    thresholds: Optional[HealthThresholdConfig] = None,
) -> SystemHealth:
    """Start at 100 and subtract penalties for each breached health threshold."""
    cfg = thresholds or HealthThresholdConfig()
    score = 100
    issues: List[str] = []

    quality = snapshot.average_quality
    if quality is not None:
        if quality < cfg.quality_minimum:
            score -= 30
            issues.append(f"average quality {quality:.2f} below minimum {cfg.quality_minimum}")
        elif quality < cfg.quality_warning:
            score -= 15
            issues.append(f"average quality {quality:.2f} below warning {cfg.quality_warning}")

    if snapshot.total_attempts:
        backend_rate = snapshot.backend_success_rate
        if backend_rate < cfg.backend_success_minimum:
            score -= 25
            issues.append(
                f"backend success rate {backend_rate:.2%} below minimum "
                f"{cfg.backend_success_minimum:.0%}"
            )

    if snapshot.latency.sample_size and snapshot.latency.mean > cfg.max_processing_seconds:
        score -= 20
        issues.append(
            f"average processing time {snapshot.latency.mean:.1f}s above "
            f"{cfg.max_processing_seconds:.0f}s"
        )

    critical = sum(1 for alert in open_alerts if alert.level is AlertLevel.CRITICAL)
    if critical:
        score -= 10 * critical
        issues.append(f"{critical} critical alert(s) open")

    score = max(0, score)
    if score >= 80:
        status = "HEALTHY"
    elif score >= 60:
        status = "WARNING"
    else:
        status = "CRITICAL"
    return SystemHealth(status=status, score=score, issues=issues)


def _latency_dict(summary: LatencySummary) -> Dict[str, object]:
    return asdict(summary)


def _alert_dict(alert: Alert) -> Dict[str, object]:
    return {
        "alert_id": alert.alert_id,
        "level": alert.level.value,
        "metric": alert.metric,
        "message": alert.message,
        "value": alert.value,
        "threshold": alert.threshold,
        "created_at": alert.created_at.isoformat(),
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
    }


def build_dashboard(
    snapshot: MetricsSnapshot,
    rollout_state: RolloutState,
    open_alerts: Sequence[Alert],
    alert_history: Sequence[Alert] = (),
    flags: Sequence[Mapping[str, object]] = (),
    circuits: Optional[Mapping[str, str]] = None,
    tiers_enabled: Optional[Mapping[str, bool]] = None,
    thresholds: Optional[HealthThresholdConfig] = None,
) -> DashboardMetrics:
    health = assess_system_health(snapshot, open_alerts, thresholds)
    flag_rows: List[Dict[str, object]] = []
    for row in flags:
        merged = dict(row)
        usage = snapshot.flags.get(str(row.get("name")))
        if usage is not None:
            merged["metrics"] = {
                "total_requests": usage.total_requests,
                "enabled_requests": usage.enabled_requests,
                "successful_requests": usage.successful_requests,
                "average_quality": usage.average_quality,
                "average_processing_time": usage.average_processing_time,
                "error_rate": round(usage.error_rate, 4),
            }
        flag_rows.append(merged)

    return DashboardMetrics(
        generated_at=datetime.now(timezone.utc).isoformat(),
        overview={
            "total_generations": snapshot.total_generations,
            "generations_today": snapshot.generations_today,
            "total_attempts": snapshot.total_attempts,
            "average_quality": snapshot.average_quality,
            "success_rate": round(snapshot.success_rate, 4),
            "sample_size": snapshot.sample_size,
            "uptime_seconds": snapshot.uptime_seconds,
            "system_health": health.status,
            "health_score": health.score,
            "health_issues": list(health.issues),
        },
        quality={
            "average": snapshot.average_quality,
            "sample_size": snapshot.score_sample_size,
            "distribution": dict(snapshot.quality_distribution),
            "by_tier": {
                name: tier.average_score for name, tier in snapshot.tiers.items()
            },
        },
        performance={
            "latency": _latency_dict(snapshot.latency),
            "by_tier": {
                name: _latency_dict(tier.latency) for name, tier in snapshot.tiers.items()
            },
        },
        reliability={
            "cumulative_success_rate": round(snapshot.cumulative_success_rate, 4),
            "static_fallbacks": snapshot.static_fallbacks,
            "fallback_usages": snapshot.fallback_usages,
            "fatal_failures": snapshot.fatal_failures,
            "timeout_rate": round(snapshot.timeout_rate, 4),
            "backend_success_rate": round(snapshot.backend_success_rate, 4),
            "tiers": {
                name: {
                    "attempts": tier.attempts,
                    "accepted": tier.accepted,
                    "rejected": tier.rejected,
                    "exhausted": tier.exhausted,
                    "aborted": tier.aborted,
                    "backend_attempts": tier.backend_attempts,
                    "success_rate": round(tier.success_rate, 4),
                    "enabled": (tiers_enabled or {}).get(name, True),
                }
                for name, tier in snapshot.tiers.items()
            },
            "backends": {
                backend_id: {
                    "attempts": backend.attempts,
                    "successes": backend.successes,
                    "timeouts": backend.timeouts,
                    "errors": backend.errors,
                    "success_rate": round(backend.success_rate, 4),
                    "circuit": (circuits or {}).get(backend_id, "closed"),
                }
                for backend_id, backend in snapshot.backends.items()
            },
        },
        feature_flags=flag_rows,
        rollout={
            "percentage": rollout_state.percentage,
            "status": rollout_state.status.value,
            "history": [
                {
                    "timestamp": event.timestamp,
                    "recorded_at": event.recorded_at.isoformat(),
                    "action": event.action.value,
                    "from": event.old_percentage,
                    "to": event.new_percentage,
                    "reason": event.reason,
                    "trigger_value": event.trigger_value,
                    "sample_size": event.sample_size,
                }
                for event in rollout_state.history
            ],
        },
        alerts={
            "open": [_alert_dict(alert) for alert in open_alerts],
            "recent": [_alert_dict(alert) for alert in alert_history],
        },
        trends={
            "quality": snapshot.quality_trend.value,
            "latency": snapshot.latency_trend.value,
        },
    )


def export_metrics(dashboard: DashboardMetrics, fmt: str = "json") -> str:
    """Serialise the dashboard as full JSON or an overview-only CSV."""
    fmt = fmt.lower()
    if fmt == "json":
        return json.dumps(asdict(dashboard), indent=2, default=str)
    if fmt == "csv":
        overview = dashboard.overview
        average_quality = overview.get("average_quality")
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Metric", "Value"])
        writer.writerow(["Total Generations", overview.get("total_generations", 0)])
        writer.writerow(["Generations Today", overview.get("generations_today", 0)])
        writer.writerow(["Total Attempts", overview.get("total_attempts", 0)])
        writer.writerow(
            ["Average Quality", f"{average_quality:.2f}" if average_quality is not None else ""]
        )
        writer.writerow(["System Health", overview.get("system_health", "")])
        writer.writerow(["Uptime Seconds", overview.get("uptime_seconds", 0)])
        writer.writerow(["Success Rate", overview.get("success_rate", 0.0)])
        return buffer.getvalue()
    raise ValueError(f"Unsupported export format '{fmt}'; expected one of {EXPORT_FORMATS}.")
