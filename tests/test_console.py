"""Tests for the operator command surface.

Updates:
    v0.1 - 2025-11-08 - Covered validation, clamping, resets, and exports.
    v0.2 - 2025-11-09 - Covered recent control events and circuit resets.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Optional

import pytest

from conftest import FakeClock
from config.settings import AlertingConfig, CircuitBreakerConfig, RolloutConfig
from core.aggregator import TelemetryAggregator
from core.alerting import AlertManager
from core.circuit_breaker import CircuitBreakerRegistry
from core.console import OperatorConsole, render_status
from core.exceptions import OperatorCommandError
from core.feature_flags import FeatureFlagRegistry
from core.rollout import RolloutController
from models.generation import Artifact, GenerationResult, StrategyTier
from models.rollout import FeatureFlag, RolloutAction


def _console(clock: FakeClock, breakers: Optional[CircuitBreakerRegistry] = None) -> OperatorConsole:
    aggregator = TelemetryAggregator(clock=clock)
    rollout = RolloutController(RolloutConfig(initial_percentage=10), aggregator, clock=clock)
    flags = FeatureFlagRegistry(
        {"canary": FeatureFlag(name="canary", follows_rollout=True)},
        rollout_percentage=lambda: rollout.percentage,
    )
    return OperatorConsole(rollout, aggregator, AlertManager(AlertingConfig()), flags, breakers=breakers)


def _record(console: OperatorConsole) -> None:
    result = GenerationResult(
        request_id="r",
        strategy_tier=StrategyTier.BASELINE,
        artifact=Artifact(artifact_id="a", content="ok", tier=StrategyTier.BASELINE),
        quality_score=8.5,
    )
    console._aggregator.record(result, elapsed=1.5)


def test_set_rollout_percentage_clamps(clock: FakeClock) -> None:
    console = _console(clock)

    event = console.set_rollout_percentage(140, "full send")

    assert event.new_percentage == 100
    assert event.action is RolloutAction.MANUAL
    assert console.get_status().rollout_state.percentage == 100
    assert console.get_status().flags[0]["percentage"] == 100


def test_set_rollout_percentage_accepts_numeric_string(clock: FakeClock) -> None:
    console = _console(clock)

    event = console.set_rollout_percentage(" 35 ", "ticket 1234")

    assert event.new_percentage == 35


@pytest.mark.parametrize("value", ["abc", None, float("nan"), True, [50]])
def test_invalid_percentage_is_rejected_without_mutation(value: object, clock: FakeClock) -> None:
    console = _console(clock)

    with pytest.raises(OperatorCommandError):
        console.set_rollout_percentage(value, "bad input")

    state = console.get_status().rollout_state
    assert state.percentage == 10
    assert state.history == []


def test_empty_reason_is_rejected(clock: FakeClock) -> None:
    console = _console(clock)

    with pytest.raises(OperatorCommandError):
        console.set_rollout_percentage(50, "   ")
    assert console.get_status().rollout_state.percentage == 10


def test_feature_commands(clock: FakeClock) -> None:
    console = _console(clock)

    assert console.set_feature_enabled("canary", False).enabled is False
    with pytest.raises(OperatorCommandError):
        console.set_feature_enabled("canary", "yes")
    assert console.emergency_disable("canary").emergency_disabled is True
    assert console.emergency_enable("canary").emergency_disabled is False


def test_tier_toggle_requires_pipeline(clock: FakeClock) -> None:
    with pytest.raises(OperatorCommandError):
        _console(clock).set_tier_enabled("baseline", False)


def test_reset_metrics_keeps_rollout_history(clock: FakeClock) -> None:
    console = _console(clock)
    _record(console)
    console.set_rollout_percentage(40, "manual bump")

    console.reset_metrics()
    status = console.get_status()

    assert status.metrics_snapshot.total_generations == 0
    assert len(status.rollout_state.history) == 1


def test_export_json_contains_sections(clock: FakeClock) -> None:
    console = _console(clock)
    _record(console)

    payload = json.loads(console.export_metrics("json"))

    assert payload["overview"]["total_generations"] == 1
    assert payload["rollout"]["percentage"] == 10
    assert "distribution" in payload["quality"]
    assert payload["feature_flags"][0]["name"] == "canary"


def test_export_csv_overview(clock: FakeClock) -> None:
    console = _console(clock)
    _record(console)

    rows = list(csv.reader(io.StringIO(console.export_metrics("CSV"))))

    assert rows[0] == ["Metric", "Value"]
    metrics = dict(rows[1:])
    assert metrics["Total Generations"] == "1"
    assert metrics["Average Quality"] == "8.50"
    assert metrics["System Health"] == "HEALTHY"


def test_export_rejects_unknown_format(clock: FakeClock) -> None:
    with pytest.raises(OperatorCommandError):
        _console(clock).export_metrics("xml")


def test_render_status_and_health_report(clock: FakeClock) -> None:
    console = _console(clock)
    _record(console)

    rendered = render_status(console.get_status())
    report = console.health_report()

    assert rendered["rollout_percentage"] == 10
    assert rendered["health"] == "HEALTHY"
    assert "System health: HEALTHY" in report


def test_status_reports_recent_control_events(clock: FakeClock) -> None:
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock)
    console = _console(clock, breakers=breakers)

    console.set_rollout_percentage(30, "ticket 42")
    breakers.record("primary", False)
    status = console.get_status()

    assert [event.name for event in status.recent_events] == ["rollout.adjusted", "circuit.opened"]
    rendered = render_status(status)
    assert rendered["recent_events"][0]["event"] == "rollout.adjusted"
    assert rendered["recent_events"][0]["new_percentage"] == 30
    assert "circuit.opened backend=primary" in console.health_report()


def test_reset_circuits_closes_open_breaker(clock: FakeClock) -> None:
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock)
    console = _console(clock, breakers=breakers)
    breakers.record("primary", False)

    states = console.reset_circuits("primary")

    assert states == {"primary": "closed"}
    assert breakers.allow("primary") is True
    assert console.recent_events()[-1].name == "circuit.reset"


def test_reset_circuits_rejects_unknown_backend(clock: FakeClock) -> None:
    console = _console(clock, breakers=CircuitBreakerRegistry(clock=clock))

    with pytest.raises(OperatorCommandError):
        console.reset_circuits("ghost")
    with pytest.raises(OperatorCommandError):
        _console(clock).reset_circuits()
