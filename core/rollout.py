"""Feedback-driven rollout controller for the canary traffic split.

The controller is the only writer of :class:`RolloutState`. Automatic
adjustments come from :meth:`RolloutController.tick`; manual overrides come
from :meth:`RolloutController.set_percentage`.

Updates:
    v0.1 - 2025-11-07 - Added threshold-driven increase/decrease with minimum samples.
    v0.2 - 2025-11-07 - Recorded every adjustment in the rollout history.
    v0.3 - 2025-11-08 - Added cancellable periodic loop with terminal statuses.
"""

from __future__ import annotations

import logging
import math
import time
from threading import RLock
from typing import Callable, List, Optional, Protocol, Tuple

from config.settings import RolloutConfig
from core.scheduler import PeriodicTask
from core.telemetry import publish_event
from models.metrics import MetricsSnapshot
from models.rollout import RolloutAction, RolloutEvent, RolloutState, RolloutStatus

LOGGER = logging.getLogger("agc.rollout")


class SnapshotSource(Protocol):
    def snapshot(self) -> MetricsSnapshot:
        ...


EventListener = Callable[[RolloutEvent], None]
StatusListener = Callable[[RolloutStatus, RolloutState], None]


def clamp_percentage(value: float) -> int:
    return int(min(100, max(0, round(value))))


class RolloutController:
    """Adjust the rollout percentage from the latest success-rate snapshot."""

    def __init__(
        self,
        config: RolloutConfig,
        metrics: SnapshotSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._metrics = metrics
        self._clock = clock
        self._lock = RLock()
        self._state = RolloutState(percentage=clamp_percentage(config.initial_percentage))
        self._task: Optional[PeriodicTask] = None
        self._event_listeners: List[EventListener] = []
        self._status_listeners: List[StatusListener] = []
        self._logger = LOGGER

    @property
    def config(self) -> RolloutConfig:
        return self._config

    @property
    def percentage(self) -> int:
        return self._state.percentage

    @property
    def status(self) -> RolloutStatus:
        return self._state.status

    def state(self) -> RolloutState:
        """Return a copy of the rollout state for readers."""
        with self._lock:
            return self._state.copy()

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def tick(self) -> Optional[RolloutEvent]:
        """Run one control step; returns the adjustment made, if any."""
        event: Optional[RolloutEvent] = None
        status_change: Optional[RolloutStatus] = None
        with self._lock:
            state = self._state
            if state.status.terminal:
                return None
            now = self._clock()
            if state.started_at is not None and now - state.started_at > self._config.max_duration_seconds:
                status_change = self._finish(RolloutStatus.TIMED_OUT)
            elif state.percentage >= self._config.target_percentage:
                status_change = self._finish(RolloutStatus.TARGET_REACHED)
            else:
                event = self._evaluate(self._metrics.snapshot(), now)
                if state.percentage >= self._config.target_percentage:
                    status_change = self._finish(RolloutStatus.TARGET_REACHED)
            snapshot = state.copy()

        self._notify(event, status_change, snapshot)
        return event

    def set_percentage(self, value: float, reason: str = "manual override") -> RolloutEvent:
        """Manually set the percentage, clamped to [0, 100]; always recorded."""
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValueError(f"Rollout percentage must be a finite number, got {value!r}.")
        with self._lock:
            event = self._apply(
                clamp_percentage(value),
                RolloutAction.MANUAL,
                reason,
                trigger_value=float(value),
                sample_size=None,
                now=self._clock(),
            )
            snapshot = self._state.copy()
        self._notify(event, None, snapshot)
        return event

    def start(self) -> None:
        """Start the periodic control loop."""
        with self._lock:
            if self._task is not None and self._task.running:
                return
            if self._state.status.terminal:
                self._logger.info(
                    "Rollout loop already finished with status %s; not restarting.",
                    self._state.status.value,
                )
                return
            self._state.status = RolloutStatus.RUNNING
            self._state.started_at = self._clock()
            self._task = PeriodicTask(
                self._config.tick_interval_seconds,
                self._loop_step,
                name="agc-rollout",
            )
        self._logger.info(
            "Rollout loop started at %s%% (target %s%%, floor %s%%).",
            self._state.percentage,
            self._config.target_percentage,
            self._config.floor,
        )
        self._task.start()

    def stop(self) -> None:
        status_change: Optional[RolloutStatus] = None
        with self._lock:
            task = self._task
            if self._state.status is RolloutStatus.RUNNING:
                status_change = self._finish(RolloutStatus.STOPPED)
            snapshot = self._state.copy()
        if task is not None:
            task.stop()
        self._notify(None, status_change, snapshot)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the loop terminates; ``True`` when it has."""
        task = self._task
        return True if task is None else task.join(timeout)

    def _loop_step(self) -> bool:
        self.tick()
        return not self._state.status.terminal

    def _evaluate(self, snapshot: MetricsSnapshot, now: float) -> Optional[RolloutEvent]:
        cfg = self._config
        state = self._state
        if (
            cfg.cooldown_seconds
            and state.last_adjusted_at is not None
            and now - state.last_adjusted_at < cfg.cooldown_seconds
        ):
            return None

        rate = snapshot.success_rate
        samples = snapshot.sample_size
        if (
            rate >= cfg.increase_threshold
            and state.percentage < cfg.target_percentage
            and samples >= cfg.min_sample_for_increase
        ):
            new_value = min(state.percentage + cfg.increase_step, cfg.target_percentage)
            reason = f"success rate {rate:.3f} >= {cfg.increase_threshold:.2f} over {samples} samples"
            return self._apply(new_value, RolloutAction.INCREASE, reason, rate, samples, now)

        if (
            rate < cfg.decrease_threshold
            and state.percentage > cfg.floor
            and samples >= cfg.min_sample_for_decrease
        ):
            new_value = max(state.percentage - cfg.decrease_step, cfg.floor)
            reason = f"success rate {rate:.3f} < {cfg.decrease_threshold:.2f} over {samples} samples"
            return self._apply(new_value, RolloutAction.DECREASE, reason, rate, samples, now)

        self._logger.debug(
            "Rollout unchanged at %s%% (success rate %.3f, samples %s).",
            state.percentage,
            rate,
            samples,
        )
        return None

    def _apply(
        self,
        new_value: int,
        action: RolloutAction,
        reason: str,
        trigger_value: Optional[float],
        sample_size: Optional[int],
        now: float,
    ) -> RolloutEvent:
        state = self._state
        event = RolloutEvent(
            timestamp=now,
            old_percentage=state.percentage,
            new_percentage=clamp_percentage(new_value),
            action=action,
            reason=reason,
            trigger_value=trigger_value,
            sample_size=sample_size,
        )
        state.percentage = event.new_percentage
        state.last_adjusted_at = now
        state.history.append(event)
        self._logger.info(
            "Rollout %s: %s%% -> %s%% (%s)",
            action.value,
            event.old_percentage,
            event.new_percentage,
            reason,
        )
        publish_event(
            "rollout.adjusted",
            action=action.value,
            old_percentage=event.old_percentage,
            new_percentage=event.new_percentage,
            reason=reason,
            trigger_value=trigger_value,
        )
        return event

    def _finish(self, status: RolloutStatus) -> RolloutStatus:
        self._state.status = status
        self._logger.info(
            "Rollout loop finished with status %s at %s%%.", status.value, self._state.percentage
        )
        publish_event("rollout.status", status=status.value, percentage=self._state.percentage)
        return status

    def _notify(
        self,
        event: Optional[RolloutEvent],
        status: Optional[RolloutStatus],
        snapshot: RolloutState,
    ) -> None:
        listeners: Tuple[EventListener, ...] = tuple(self._event_listeners)
        if event is not None:
            for listener in listeners:
                listener(event)
        if status is not None:
            for status_listener in tuple(self._status_listeners):
                status_listener(status, snapshot)
