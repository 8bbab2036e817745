"""Helpers for loading and validating controller configuration files.

Updates:
    v0.1 - 2025-11-06 - Added Pydantic-based loader for core configuration.
    v0.2 - 2025-11-07 - Added declarative backend chains and per-tier policies.
    v0.3 - 2025-11-07 - Added rollout, alerting, and health threshold schemas.
    v0.4 - 2025-11-07 - Added helpers for persisting updated application configuration.
    v0.5 - 2025-11-08 - Added feature flag schema with dependency validation.
    v0.6 - 2025-11-09 - Rejected backend tiers whose acceptance thresholds rise as tiers get poorer.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from core.exceptions import ConfigError
from models.generation import StrategyTier

CONFIG_FILE = Path(__file__).with_name("config.json")


class BackendConfig(BaseModel):
    """Configuration for a single generation backend."""

    provider: str = Field(..., description="LLM provider label, e.g. azure or ollama.")
    model: str = Field(..., description="Model identifier understood by LiteLLM.")
    temperature: float = Field(
        0.2,
        ge=0.0,
        le=2.0,
        description="Default sampling temperature for the backend.",
    )
    enabled: bool = True


class RetryPolicyConfig(BaseModel):
    """Exponential backoff policy applied to the primary backend of a tier."""

    max_retries: int = Field(3, ge=0)
    base_delay_seconds: float = Field(0.5, ge=0.0)
    max_delay_seconds: float = Field(10.0, ge=0.0)

    @model_validator(mode="after")
    def _ensure_delay_bounds(self) -> "RetryPolicyConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")
        return self


class TierConfig(BaseModel):
    """Backend chain and acceptance policy for one strategy tier."""

    enabled: bool = True
    backends: List[str] = Field(
        default_factory=list,
        description="Ordered backend ids; the first entry is the primary.",
    )
    acceptance_threshold: float = Field(7.0, ge=0.0, le=10.0)
    timeout_seconds: float = Field(30.0, gt=0.0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, gt=0)
    retry: Optional[RetryPolicyConfig] = None


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(5, ge=1)
    recovery_timeout_seconds: float = Field(60.0, gt=0.0)


class QualityConfig(BaseModel):
    """Generic rubric knobs for the default quality assessor."""

    min_words: int = Field(20, ge=0)
    short_penalty: float = Field(3.0, ge=0.0)
    missing_term_penalty: float = Field(1.5, ge=0.0)
    placeholder_penalty: float = Field(2.0, ge=0.0)
    repetition_penalty: float = Field(2.0, ge=0.0)
    repetition_ratio: float = Field(0.3, ge=0.0, le=1.0)
    placeholder_markers: List[str] = Field(
        default_factory=lambda: ["lorem ipsum", "[placeholder]", "{{", "TODO"]
    )


class TelemetryConfig(BaseModel):
    """Logging and telemetry configuration."""

    log_level: str = Field("INFO")
    latency_window: int = Field(1000, ge=1)
    score_window: int = Field(1000, ge=1)
    success_window: int = Field(100, ge=1)


class RolloutConfig(BaseModel):
    """Canary control loop parameters."""

    flag: Optional[str] = Field(
        default=None,
        description="Feature flag whose percentage follows the rollout state.",
    )
    initial_percentage: int = Field(10, ge=0, le=100)
    target_percentage: int = Field(100, ge=0, le=100)
    floor_percentage: Optional[int] = Field(
        default=None,
        ge=0,
        le=100,
        description="Lowest automatic percentage; defaults to initial_percentage.",
    )
    increase_threshold: float = Field(0.95, ge=0.0, le=1.0)
    decrease_threshold: float = Field(0.90, ge=0.0, le=1.0)
    increase_step: int = Field(10, ge=1, le=100)
    decrease_step: int = Field(10, ge=1, le=100)
    min_sample_for_increase: int = Field(10, ge=0)
    min_sample_for_decrease: int = Field(5, ge=0)
    tick_interval_seconds: float = Field(5.0, gt=0.0)
    cooldown_seconds: float = Field(0.0, ge=0.0)
    max_duration_seconds: float = Field(86400.0, gt=0.0)

    @model_validator(mode="after")
    def _ensure_bounds(self) -> "RolloutConfig":
        if self.floor_percentage is None:
            self.floor_percentage = min(self.initial_percentage, self.target_percentage)
        if self.floor_percentage > self.target_percentage:
            raise ValueError("floor_percentage must not exceed target_percentage.")
        if self.decrease_threshold > self.increase_threshold:
            raise ValueError("decrease_threshold must not exceed increase_threshold.")
        return self

    @property
    def floor(self) -> int:
        return int(self.floor_percentage or 0)


class AlertRuleConfig(BaseModel):
    """Warning/critical thresholds for one snapshot metric."""

    metric: Literal[
        "success_rate",
        "p95_latency_seconds",
        "backend_success_rate",
        "average_quality",
    ]
    direction: Literal["below", "above"] = "below"
    warning: float
    critical: float
    min_sample_size: int = Field(10, ge=0)

    @model_validator(mode="after")
    def _ensure_ordering(self) -> "AlertRuleConfig":
        if self.direction == "below" and self.critical > self.warning:
            raise ValueError(
                f"Alert rule '{self.metric}': critical must be <= warning for 'below' rules."
            )
        if self.direction == "above" and self.critical < self.warning:
            raise ValueError(
                f"Alert rule '{self.metric}': critical must be >= warning for 'above' rules."
            )
        return self


class AlertingConfig(BaseModel):
    debounce_snapshots: int = Field(3, ge=1)
    evaluation_interval_seconds: float = Field(30.0, gt=0.0)
    history_limit: int = Field(200, ge=1)
    rules: List[AlertRuleConfig] = Field(default_factory=list)


class HealthThresholdConfig(BaseModel):
    """Thresholds used to derive the overall system health score."""

    quality_minimum: float = Field(7.0, ge=0.0, le=10.0)
    quality_warning: float = Field(7.5, ge=0.0, le=10.0)
    max_processing_seconds: float = Field(60.0, gt=0.0)
    warning_processing_seconds: float = Field(45.0, gt=0.0)
    backend_success_minimum: float = Field(0.8, ge=0.0, le=1.0)
    backend_success_warning: float = Field(0.85, ge=0.0, le=1.0)


class FeatureFlagConfig(BaseModel):
    description: str = ""
    enabled: bool = True
    emergency_disabled: bool = False
    percentage: int = Field(100, ge=0, le=100)
    percentage_source: Literal["static", "rollout"] = "static"
    dependencies: List[str] = Field(default_factory=list)
    gates_tier: Optional[StrategyTier] = Field(
        default=None,
        description="Tier that is withheld from a request while the flag is off.",
    )


class WorkerPoolConfig(BaseModel):
    max_workers: int = Field(8, ge=1)
    invoker_workers: int = Field(16, ge=1, description="Call pool size per backend.")


class StoreConfig(BaseModel):
    """Redis-backed artifact store configuration."""

    enabled: bool = True
    host: str = Field("localhost")
    port: int = Field(6379, ge=0)
    db: int = Field(0, ge=0)
    ttl_seconds: int = Field(86400, ge=1)
    key_prefix: str = Field("agc:artifact:", min_length=1)


class QualityLogConfig(BaseModel):
    enabled: bool = True
    path: Optional[str] = None


class AppConfig(BaseModel):
    """Complete application configuration payload."""

    version: str
    backends: Dict[str, BackendConfig]
    tiers: Dict[StrategyTier, TierConfig]
    retry: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    health: HealthThresholdConfig = Field(default_factory=HealthThresholdConfig)
    feature_flags: Dict[str, FeatureFlagConfig] = Field(default_factory=dict)
    worker_pool: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    quality_log: QualityLogConfig = Field(default_factory=QualityLogConfig)

    @model_validator(mode="after")
    def _ensure_backend_chains(self) -> "AppConfig":
        for tier, tier_cfg in self.tiers.items():
            if tier is StrategyTier.STATIC_TEMPLATE:
                if not tier_cfg.enabled:
                    raise ValueError("The static_template tier cannot be disabled.")
                continue
            if not tier_cfg.backends:
                raise ValueError(f"Tier '{tier.value}' requires a non-empty backend chain.")
            unknown = [name for name in tier_cfg.backends if name not in self.backends]
            if unknown:
                raise ValueError(
                    f"Tier '{tier.value}' references unknown backends: {', '.join(unknown)}"
                )
            if len(set(tier_cfg.backends)) != len(tier_cfg.backends):
                raise ValueError(f"Tier '{tier.value}' lists a backend more than once.")
        return self

    @model_validator(mode="after")
    def _ensure_threshold_order(self) -> "AppConfig":
        # The static tier is accepted unconditionally, so only backend tiers are compared.
        ordered = sorted(
            (tier for tier in self.tiers if tier is not StrategyTier.STATIC_TEMPLATE),
            key=lambda tier: tier.rank,
        )
        for richer, poorer in zip(ordered, ordered[1:]):
            richer_threshold = self.tiers[richer].acceptance_threshold
            poorer_threshold = self.tiers[poorer].acceptance_threshold
            if poorer_threshold > richer_threshold:
                raise ValueError(
                    f"Tier '{poorer.value}' acceptance threshold {poorer_threshold} exceeds "
                    f"richer tier '{richer.value}' threshold {richer_threshold}."
                )
        return self

    @model_validator(mode="after")
    def _ensure_flag_graph(self) -> "AppConfig":
        for name, flag in self.feature_flags.items():
            for dependency in flag.dependencies:
                if dependency == name:
                    raise ValueError(f"Feature flag '{name}' depends on itself.")
                if dependency not in self.feature_flags:
                    raise ValueError(
                        f"Feature flag '{name}' depends on unknown flag '{dependency}'."
                    )
            if flag.gates_tier is StrategyTier.STATIC_TEMPLATE:
                raise ValueError(f"Feature flag '{name}' cannot gate the static_template tier.")

        visiting: set = set()
        visited: set = set()

        def _visit(flag_name: str) -> None:
            if flag_name in visited:
                return
            if flag_name in visiting:
                raise ValueError(f"Feature flag dependency cycle detected at '{flag_name}'.")
            visiting.add(flag_name)
            for dependency in self.feature_flags[flag_name].dependencies:
                _visit(dependency)
            visiting.discard(flag_name)
            visited.add(flag_name)

        for flag_name in self.feature_flags:
            _visit(flag_name)

        if self.rollout.flag is not None and self.rollout.flag not in self.feature_flags:
            raise ValueError(f"Rollout flag '{self.rollout.flag}' is not a configured feature flag.")
        return self


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Resolve the configuration path, defaulting to the packaged config file."""
    resolved = path or CONFIG_FILE
    if not resolved.exists():
        raise ConfigError(f"Configuration file not found at {resolved}")
    return resolved


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate the application configuration from JSON."""
    config_path = resolve_config_path(path)
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Unable to read configuration: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in configuration: {exc}") from exc

    try:
        return AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Configuration validation failed: {exc}") from exc


@lru_cache(maxsize=1)
def get_app_config(path: Optional[Path] = None) -> AppConfig:
    """Memoised accessor for the application configuration."""
    return load_app_config(path)


def save_app_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Persist the provided configuration to disk."""
    target_path = path or CONFIG_FILE
    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Unable to prepare configuration directory: {exc}") from exc

    payload = config.model_dump(mode="json")
    try:
        target_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True),
            encoding="utf-8",
        )
    except OSError as exc:
        raise ConfigError(f"Unable to write configuration: {exc}") from exc

    get_app_config.cache_clear()
