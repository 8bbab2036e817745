"""Feature flag registry with rollout-linked percentages and tier gating.

Updates:
    v0.1 - 2025-11-08 - Added startup-fixed flag set with dependency checks.
    v0.2 - 2025-11-08 - Added stable session bucketing and emergency overrides.
"""

from __future__ import annotations

import hashlib
import logging
import random
from dataclasses import replace
from threading import Lock
from typing import Callable, Dict, List, Mapping, Optional

from config.settings import FeatureFlagConfig
from core.exceptions import OperatorCommandError
from core.telemetry import publish_event
from models.generation import TIER_ORDER, StrategyTier
from models.rollout import FeatureFlag

LOGGER = logging.getLogger("agc.flags")


def session_bucket(flag_name: str, session_id: str) -> int:
    """Stable 0-99 bucket so a session keeps its flag decision across requests."""
    digest = hashlib.sha256(f"{flag_name}:{session_id}".encode("utf-8")).hexdigest()
    return int(digest, 16) % 100


class FeatureFlagRegistry:
    """Holds the flag set; runtime mutation goes through one locked entry point."""

    def __init__(
        self,
        flags: Mapping[str, FeatureFlag],
        rollout_percentage: Optional[Callable[[], int]] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._flags: Dict[str, FeatureFlag] = dict(flags)
        self._rollout_percentage = rollout_percentage
        self._rng = rng
        self._lock = Lock()
        self._logger = LOGGER

    @classmethod
    def from_config(
        cls,
        flag_configs: Mapping[str, FeatureFlagConfig],
        rollout_percentage: Optional[Callable[[], int]] = None,
        rng: Callable[[], float] = random.random,
        rollout_flag: Optional[str] = None,
    ) -> "FeatureFlagRegistry":
        flags = {
            name: FeatureFlag(
                name=name,
                description=flag_cfg.description,
                enabled=flag_cfg.enabled,
                emergency_disabled=flag_cfg.emergency_disabled,
                percentage=flag_cfg.percentage,
                follows_rollout=flag_cfg.percentage_source == "rollout" or name == rollout_flag,
                dependencies=tuple(flag_cfg.dependencies),
                gates_tier=flag_cfg.gates_tier,
            )
            for name, flag_cfg in flag_configs.items()
        }
        return cls(flags, rollout_percentage=rollout_percentage, rng=rng)

    def names(self) -> List[str]:
        return sorted(self._flags)

    def get(self, name: str) -> FeatureFlag:
        flag = self._flags.get(name)
        if flag is None:
            raise OperatorCommandError(f"Unknown feature flag '{name}'.")
        return flag

    def set_enabled(self, name: str, enabled: bool) -> FeatureFlag:
        return self._mutate(name, enabled=enabled)

    def emergency_disable(self, name: str) -> FeatureFlag:
        return self._mutate(name, emergency_disabled=True)

    def emergency_enable(self, name: str) -> FeatureFlag:
        return self._mutate(name, emergency_disabled=False)

    def effective_percentage(self, name: str) -> int:
        flag = self.get(name)
        if flag.emergency_disabled or not flag.enabled:
            return 0
        if flag.follows_rollout and self._rollout_percentage is not None:
            return max(0, min(100, int(self._rollout_percentage())))
        return flag.percentage

    def is_enabled(self, name: str, session_id: Optional[str] = None) -> bool:
        flag = self.get(name)
        if flag.emergency_disabled or not flag.enabled:
            return False
        for dependency in flag.dependencies:
            if not self.is_enabled(dependency, session_id):
                return False
        percentage = self.effective_percentage(name)
        if percentage >= 100:
            return True
        if percentage <= 0:
            return False
        if session_id:
            bucket = session_bucket(name, session_id)
        else:
            bucket = int(self._rng() * 100)
        return bucket < percentage

    def evaluate(self, session_id: Optional[str] = None) -> Dict[str, bool]:
        return {name: self.is_enabled(name, session_id) for name in self.names()}

    def tier_ceiling(self, decisions: Mapping[str, bool]) -> StrategyTier:
        """Richest tier allowed given which gating flags are off."""
        ceiling = StrategyTier.FULL_ENHANCEMENT
        for name, enabled in decisions.items():
            flag = self._flags.get(name)
            if flag is None or flag.gates_tier is None or enabled:
                continue
            below = TIER_ORDER[min(flag.gates_tier.rank + 1, len(TIER_ORDER) - 1)]
            if below.rank > ceiling.rank:
                ceiling = below
        return ceiling

    def snapshot(self) -> List[Dict[str, object]]:
        rows: List[Dict[str, object]] = []
        for name in self.names():
            flag = self._flags[name]
            rows.append(
                {
                    "name": name,
                    "description": flag.description,
                    "enabled": flag.enabled,
                    "emergency_disabled": flag.emergency_disabled,
                    "percentage": self.effective_percentage(name),
                    "follows_rollout": flag.follows_rollout,
                    "dependencies": list(flag.dependencies),
                    "gates_tier": flag.gates_tier.value if flag.gates_tier else None,
                }
            )
        return rows

    def _mutate(self, name: str, **changes: bool) -> FeatureFlag:
        with self._lock:
            current = self.get(name)
            updated = replace(current, **changes)
            self._flags[name] = updated
        self._logger.warning("Feature flag '%s' updated by operator: %s", name, changes)
        publish_event("flag.updated", flag=name, **changes)
        return updated
