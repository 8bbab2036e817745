"""Generation-related data models shared by the pipeline and telemetry layers.

Updates:
    v0.1 - 2025-11-06 - Introduced request, attempt, and result models for the
        tiered generation pipeline.
    v0.2 - 2025-11-07 - Added per-tier outcome trail and quality log records.
    v0.3 - 2025-11-08 - Enforced score/artifact consistency on results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple
from uuid import uuid4


def _utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class StrategyTier(str, Enum):
    """Generation strategies ordered from richest to safest."""

    FULL_ENHANCEMENT = "full_enhancement"
    BASELINE = "baseline"
    MINIMAL = "minimal"
    STATIC_TEMPLATE = "static_template"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: object) -> "StrategyTier":
        """Resolve a tier from its value or member name, case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for tier in cls:
            if text in (tier.value, tier.name.lower()):
                return tier
        raise ValueError(f"Unknown strategy tier '{value}'.")


TIER_ORDER: Tuple[StrategyTier, ...] = (
    StrategyTier.FULL_ENHANCEMENT,
    StrategyTier.BASELINE,
    StrategyTier.MINIMAL,
    StrategyTier.STATIC_TEMPLATE,
)


class AttemptOutcome(str, Enum):
    """Outcome of a single backend invocation."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


class TierStatus(str, Enum):
    """Terminal status of one tier within a pipeline run."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    """Immutable caller request routed through the tiered pipeline.

    ``deadline_seconds`` is a relative budget measured from the moment the
    pipeline starts working on the request.
    """

    prompt: str
    context: Mapping[str, object] = field(default_factory=dict)
    session_id: Optional[str] = None
    artifact_id: str = field(default_factory=lambda: str(uuid4()))
    strategy_ceiling: StrategyTier = StrategyTier.FULL_ENHANCEMENT
    deadline_seconds: Optional[float] = None
    request_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))
        object.__setattr__(
            self, "strategy_ceiling", StrategyTier.parse(self.strategy_ceiling)
        )
        if self.deadline_seconds is not None and self.deadline_seconds < 0:
            raise ValueError("deadline_seconds must be non-negative.")


@dataclass(slots=True, frozen=True)
class SubRequest:
    """Tier-specific payload handed to a generation backend."""

    tier: StrategyTier
    system: str
    prompt: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    context: Mapping[str, object] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class GenerationAttempt:
    """One backend invocation with monotonic start/end timestamps."""

    backend_id: str
    outcome: AttemptOutcome
    started_at: float
    ended_at: float
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    @property
    def succeeded(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS


@dataclass(slots=True, frozen=True)
class Artifact:
    """Generated content handed to the quality assessor and artifact store."""

    artifact_id: str
    content: str
    tier: StrategyTier
    backend_id: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True, frozen=True)
class QualityAssessment:
    """Bounded score with the deficiencies that cost points."""

    score: float
    deficiencies: Tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class TierOutcome:
    """Audit trail entry for one tier tried during a pipeline run."""

    tier: StrategyTier
    status: TierStatus
    threshold: float
    attempts: Tuple[Tuple[str, AttemptOutcome], ...] = ()
    score: Optional[float] = None
    elapsed_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class GenerationResult:
    """Single result shape returned by the pipeline, tagged by ``strategy_tier``."""

    request_id: str
    strategy_tier: StrategyTier
    artifact: Optional[Artifact] = None
    quality_score: Optional[float] = None
    deficiencies: Tuple[str, ...] = ()
    total_attempts: int = 0
    elapsed_seconds: float = 0.0
    warnings: Tuple[str, ...] = ()
    tier_outcomes: Tuple[TierOutcome, ...] = ()
    skipped_tiers: Tuple[StrategyTier, ...] = ()
    used_fallback: bool = False

    def __post_init__(self) -> None:
        if self.artifact is None and self.quality_score is not None:
            raise ValueError("A result without an artifact cannot carry a quality score.")

    @property
    def succeeded(self) -> bool:
        """True when a backend-driven tier produced the accepted artifact."""
        return self.artifact is not None and self.strategy_tier is not StrategyTier.STATIC_TEMPLATE

    @property
    def backend_id(self) -> Optional[str]:
        return self.artifact.backend_id if self.artifact else None

    def iter_attempts(self) -> Tuple[Tuple[str, AttemptOutcome], ...]:
        """Flatten the per-tier ``(backend, outcome)`` pairs in execution order."""
        pairs: Tuple[Tuple[str, AttemptOutcome], ...] = ()
        for outcome in self.tier_outcomes:
            pairs += outcome.attempts
        return pairs


@dataclass(slots=True, frozen=True)
class QualityLog:
    """Durable, append-only record of one pipeline result."""

    request_id: str
    artifact_id: str
    strategy_tier: StrategyTier
    succeeded: bool
    quality_score: Optional[float]
    classification: Optional[str]
    total_attempts: int
    elapsed_seconds: float
    session_id: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    flags: Dict[str, bool] = field(default_factory=dict)
    log_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_result(
        cls,
        result: GenerationResult,
        request: GenerationRequest,
        classification: Optional[str] = None,
        flags: Optional[Mapping[str, bool]] = None,
    ) -> "QualityLog":
        return cls(
            request_id=request.request_id,
            artifact_id=request.artifact_id,
            strategy_tier=result.strategy_tier,
            succeeded=result.succeeded,
            quality_score=result.quality_score,
            classification=classification,
            total_attempts=result.total_attempts,
            elapsed_seconds=result.elapsed_seconds,
            session_id=request.session_id,
            warnings=result.warnings,
            flags=dict(flags or {}),
        )

    def to_payload(self) -> Dict[str, object]:
        """Return a JSON-friendly representation of the log entry."""
        return {
            "log_id": self.log_id,
            "request_id": self.request_id,
            "artifact_id": self.artifact_id,
            "session_id": self.session_id,
            "strategy_tier": self.strategy_tier.value,
            "succeeded": self.succeeded,
            "quality_score": self.quality_score,
            "classification": self.classification,
            "total_attempts": self.total_attempts,
            "elapsed_seconds": round(self.elapsed_seconds, 4),
            "warnings": list(self.warnings),
            "flags": dict(self.flags),
            "created_at": self.created_at.isoformat(),
        }
