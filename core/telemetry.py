"""Telemetry helpers: metric logging, timed spans, and the control-event feed.

Metrics and spans only go to the ``agc.metrics`` and ``agc.span`` loggers.
Control events (rollout adjustments, alert transitions, circuit changes, flag
updates) are kept in a bounded in-process feed read by the operator console.

Updates:
    v0.1 - 2025-11-07 - Provided logging wrappers for metrics and spans.
    v0.2 - 2025-11-08 - Added in-process telemetry feed for rollout and alert events.
    v0.3 - 2025-11-09 - Kept metrics out of the event feed; added category filters
        and subscribers for the operator console.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional

LOGGER = logging.getLogger("agc.telemetry")
_METRICS_LOGGER = logging.getLogger("agc.metrics")
_SPAN_LOGGER = logging.getLogger("agc.span")

CONTROL_CATEGORIES = ("rollout", "alert", "circuit", "flag")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class TelemetryEvent:
    """A named control event, e.g. ``rollout.adjusted`` or ``circuit.opened``."""

    name: str
    timestamp: datetime
    payload: Dict[str, object]

    @property
    def category(self) -> str:
        return self.name.split(".", 1)[0]

    def to_payload(self) -> Dict[str, object]:
        record: Dict[str, object] = dict(self.payload)
        record["event"] = self.name
        record["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return record


EventSubscriber = Callable[[TelemetryEvent], None]


class TelemetryFeed:
    """Bounded event history with synchronous subscribers."""

    def __init__(self, max_history: int = 256) -> None:
        self._history: Deque[TelemetryEvent] = deque(maxlen=max(1, max_history))
        self._subscribers: List[EventSubscriber] = []
        self._lock = Lock()

    def publish(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = tuple(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                LOGGER.exception("Telemetry subscriber failed on %s", event.name)

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register *subscriber*; the returned callable unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def recent(
        self,
        names: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> List[TelemetryEvent]:
        """Newest events, oldest first; *names* match full event names or categories."""
        if limit <= 0:
            return []
        with self._lock:
            events = list(self._history)
        if names is not None:
            wanted = set(names)
            events = [
                event for event in events if event.name in wanted or event.category in wanted
            ]
        return events[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


GLOBAL_TELEMETRY_FEED = TelemetryFeed()


def publish_event(name: str, **fields: object) -> TelemetryEvent:
    """Publish a control event into the global feed."""
    event = TelemetryEvent(name=name, timestamp=_utcnow(), payload=dict(fields))
    GLOBAL_TELEMETRY_FEED.publish(event)
    return event


def recent_events(names: Optional[Iterable[str]] = None, limit: int = 10) -> List[TelemetryEvent]:
    return GLOBAL_TELEMETRY_FEED.recent(names, limit)


def emit_metric(name: str, value: float = 1.0, **tags: object) -> None:
    """Log a metric sample on ``agc.metrics`` for external scraping."""
    _METRICS_LOGGER.debug(
        "%s=%s",
        name,
        value,
        extra={"metric_name": name, "metric_value": value, "metric_tags": tags},
    )


@contextmanager
def log_span(name: str, **fields: object) -> Iterator[None]:
    """Time a block and report its duration as ``<name>.duration_seconds``."""
    start = time.perf_counter()
    _SPAN_LOGGER.debug("span.start %s", name, extra={"span_name": name, "span_fields": fields})
    try:
        yield
    finally:
        emit_metric(f"{name}.duration_seconds", round(time.perf_counter() - start, 4), **fields)
