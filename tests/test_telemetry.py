"""Tests for the control-event feed and metric helpers.

Updates: v0.1 - 2025-11-09 - Covered bounded history, category filters, and subscribers.
"""

from __future__ import annotations

import logging

import pytest

from core.telemetry import (
    GLOBAL_TELEMETRY_FEED,
    TelemetryFeed,
    emit_metric,
    log_span,
    publish_event,
    recent_events,
)


def test_feed_history_is_bounded() -> None:
    feed = TelemetryFeed(max_history=2)
    for index in range(5):
        feed.publish(publish_event("rollout.adjusted", step=index))

    assert [event.payload["step"] for event in feed.recent()] == [3, 4]


def test_recent_filters_by_name_or_category() -> None:
    publish_event("rollout.adjusted", new_percentage=20)
    publish_event("alert.created", metric="success_rate")
    publish_event("circuit.opened", backend="primary")

    assert [event.name for event in recent_events(["circuit", "alert.created"])] == [
        "alert.created",
        "circuit.opened",
    ]
    assert recent_events(limit=0) == []


def test_subscribers_receive_events_until_unsubscribed(caplog: pytest.LogCaptureFixture) -> None:
    feed = TelemetryFeed()
    seen = []
    unsubscribe = feed.subscribe(lambda event: seen.append(event.name))

    def _broken(_: object) -> None:
        raise RuntimeError("listener down")

    feed.subscribe(_broken)
    caplog.set_level(logging.ERROR, logger="agc.telemetry")
    feed.publish(publish_event("flag.updated", flag="canary"))
    unsubscribe()
    feed.publish(publish_event("flag.updated", flag="canary"))

    assert seen == ["flag.updated"]
    assert "Telemetry subscriber failed" in caplog.text
    assert len(feed.recent()) == 2


def test_metrics_and_spans_stay_out_of_event_feed(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="agc.metrics")

    emit_metric("agc.pipeline.accepted", 8.5, tier="baseline")
    with log_span("generation", request_id="r1"):
        pass

    assert GLOBAL_TELEMETRY_FEED.recent() == []
    assert "agc.pipeline.accepted=8.5" in caplog.text
    assert "generation.duration_seconds=" in caplog.text


def test_event_payload_flattens_fields() -> None:
    event = publish_event("circuit.opened", backend="primary", failures=3)

    record = event.to_payload()

    assert record["event"] == "circuit.opened"
    assert record["backend"] == "primary"
    assert record["failures"] == 3
    assert event.category == "circuit"
