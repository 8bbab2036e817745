"""Rollout state and feature flag models.

Updates:
    v0.1 - 2025-11-07 - Added rollout state, adjustment history, and terminal statuses.
    v0.2 - 2025-11-08 - Added feature flag model with dependency and tier gating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from models.generation import StrategyTier


def _utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RolloutAction(str, Enum):
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"
    MANUAL = "MANUAL"


class RolloutStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    TARGET_REACHED = "TARGET_REACHED"
    TIMED_OUT = "TIMED_OUT"
    STOPPED = "STOPPED"

    @property
    def terminal(self) -> bool:
        return self in (
            RolloutStatus.TARGET_REACHED,
            RolloutStatus.TIMED_OUT,
            RolloutStatus.STOPPED,
        )


@dataclass(slots=True, frozen=True)
class RolloutEvent:
    """Audit entry appended on every rollout percentage change."""

    timestamp: float
    old_percentage: int
    new_percentage: int
    action: RolloutAction
    reason: str
    trigger_value: Optional[float] = None
    sample_size: Optional[int] = None
    recorded_at: datetime = field(default_factory=_utcnow)

    @property
    def delta(self) -> int:
        return self.new_percentage - self.old_percentage


@dataclass(slots=True)
class RolloutState:
    """Mutable rollout state owned by the rollout controller."""

    percentage: int
    status: RolloutStatus = RolloutStatus.IDLE
    last_adjusted_at: Optional[float] = None
    started_at: Optional[float] = None
    history: List[RolloutEvent] = field(default_factory=list)

    def copy(self) -> "RolloutState":
        return RolloutState(
            percentage=self.percentage,
            status=self.status,
            last_adjusted_at=self.last_adjusted_at,
            started_at=self.started_at,
            history=list(self.history),
        )


@dataclass(slots=True, frozen=True)
class FeatureFlag:
    """Runtime feature flag; only ``enabled`` and ``emergency_disabled`` change."""

    name: str
    description: str = ""
    enabled: bool = True
    emergency_disabled: bool = False
    percentage: int = 100
    follows_rollout: bool = False
    dependencies: Tuple[str, ...] = ()
    gates_tier: Optional[StrategyTier] = None
