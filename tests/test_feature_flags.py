"""Tests for the feature flag registry.

Updates: v0.1 - 2025-11-08 - Covered bucketing, dependencies, overrides, and tier gating.
"""

from __future__ import annotations

import pytest

from core.exceptions import OperatorCommandError
from core.feature_flags import FeatureFlagRegistry, session_bucket
from models.generation import StrategyTier
from models.rollout import FeatureFlag


def _registry(rollout: int = 50) -> FeatureFlagRegistry:
    flags = {
        "baseline_tier": FeatureFlag(name="baseline_tier", gates_tier=StrategyTier.BASELINE),
        "canary": FeatureFlag(
            name="canary",
            follows_rollout=True,
            dependencies=("baseline_tier",),
            gates_tier=StrategyTier.FULL_ENHANCEMENT,
        ),
    }
    return FeatureFlagRegistry(flags, rollout_percentage=lambda: rollout)


def test_session_bucket_is_stable_and_bounded() -> None:
    buckets = {session_bucket("canary", f"session-{index}") for index in range(500)}

    assert session_bucket("canary", "abc") == session_bucket("canary", "abc")
    assert min(buckets) >= 0 and max(buckets) <= 99
    assert len(buckets) > 50


def test_rollout_percentage_drives_flag() -> None:
    assert _registry(rollout=100).is_enabled("canary", "any-session") is True
    assert _registry(rollout=0).is_enabled("canary", "any-session") is False
    assert _registry(rollout=30).effective_percentage("canary") == 30


def test_session_decision_matches_bucket() -> None:
    registry = _registry(rollout=50)
    for index in range(50):
        session = f"user-{index}"
        expected = session_bucket("canary", session) < 50
        assert registry.is_enabled("canary", session) is expected


def test_dependency_off_disables_dependent() -> None:
    registry = _registry(rollout=100)
    registry.set_enabled("baseline_tier", False)

    assert registry.is_enabled("canary", "s1") is False


def test_emergency_disable_overrides_everything() -> None:
    registry = _registry(rollout=100)

    registry.emergency_disable("canary")
    assert registry.is_enabled("canary", "s1") is False
    assert registry.effective_percentage("canary") == 0

    registry.emergency_enable("canary")
    assert registry.is_enabled("canary", "s1") is True


def test_unknown_flag_is_operator_error() -> None:
    with pytest.raises(OperatorCommandError):
        _registry().set_enabled("missing", True)


def test_tier_ceiling_follows_gating_flags() -> None:
    registry = _registry()

    assert registry.tier_ceiling({"baseline_tier": True, "canary": True}) is StrategyTier.FULL_ENHANCEMENT
    assert registry.tier_ceiling({"baseline_tier": True, "canary": False}) is StrategyTier.BASELINE
    assert registry.tier_ceiling({"baseline_tier": False, "canary": False}) is StrategyTier.MINIMAL


def test_from_config_links_rollout_flag(make_config) -> None:
    config = make_config(
        feature_flags={"canary": {"percentage": 5, "gates_tier": "full_enhancement"}},
        rollout={"flag": "canary"},
    )

    registry = FeatureFlagRegistry.from_config(
        config.feature_flags, rollout_percentage=lambda: 70, rollout_flag=config.rollout.flag
    )

    assert registry.get("canary").follows_rollout is True
    assert registry.effective_percentage("canary") == 70
    assert registry.snapshot()[0]["gates_tier"] == "full_enhancement"
