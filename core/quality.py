"""Deterministic quality assessment for generated artifacts.

The rubric here is intentionally generic; domain-specific scoring plugs in by
implementing :class:`QualityAssessor`.

Updates:
    v0.1 - 2025-11-07 - Added rubric assessor with bounded scores and deficiency trail.
    v0.2 - 2025-11-08 - Added quality band classification for dashboards.
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Protocol, Tuple

from config.settings import QualityConfig
from core.prompt_engine import required_terms
from models.generation import Artifact, QualityAssessment

QUALITY_BANDS: Tuple[Tuple[str, float], ...] = (
    ("masterpiece", 9.0),
    ("cinematic", 8.0),
    ("excellent", 7.0),
    ("good", 5.0),
    ("basic", 3.0),
    ("poor", 0.0),
)


def classify_quality(score: Optional[float]) -> Optional[str]:
    """Map a 0-10 score onto its named quality band."""
    if score is None:
        return None
    for band, floor in QUALITY_BANDS:
        if score >= floor:
            return band
    return "poor"


class QualityAssessor(Protocol):
    def assess(self, artifact: Artifact, context: Mapping[str, object]) -> QualityAssessment:
        ...


class RubricQualityAssessor:
    """Pure penalty-based rubric; identical inputs always yield identical output."""

    def __init__(self, config: Optional[QualityConfig] = None) -> None:
        self._config = config or QualityConfig()

    def assess(self, artifact: Artifact, context: Mapping[str, object]) -> QualityAssessment:
        content = artifact.content.strip()
        if not content:
            return QualityAssessment(score=0.0, deficiencies=("artifact is empty",))

        cfg = self._config
        lowered = content.lower()
        score = 10.0
        deficiencies: List[str] = []

        words = content.split()
        min_words = self._min_words(context)
        if min_words and len(words) < min_words:
            shortfall = 1.0 - len(words) / min_words
            score -= max(0.01, cfg.short_penalty * shortfall)
            deficiencies.append(f"too short: {len(words)} words < {min_words}")

        missing = [term for term in required_terms(context) if term.lower() not in lowered]
        if missing:
            score -= min(5.0, cfg.missing_term_penalty * len(missing))
            deficiencies.append("missing required terms: " + ", ".join(missing))

        markers = [marker for marker in cfg.placeholder_markers if marker.lower() in lowered]
        if markers:
            score -= cfg.placeholder_penalty
            deficiencies.append("contains placeholder markers: " + ", ".join(markers))

        lines = [line.strip().lower() for line in content.splitlines() if line.strip()]
        if len(lines) >= 4:
            repeated = 1.0 - len(set(lines)) / len(lines)
            if repeated > cfg.repetition_ratio:
                score -= cfg.repetition_penalty
                deficiencies.append(f"repetitive content: {repeated:.0%} duplicate lines")

        score = round(min(10.0, max(0.0, score)), 2)
        if score < 10.0 and not deficiencies:
            deficiencies.append("below maximum score")
        return QualityAssessment(score=score, deficiencies=tuple(deficiencies))

    def _min_words(self, context: Mapping[str, object]) -> int:
        raw = context.get("min_words", self._config.min_words)
        try:
            return max(0, int(raw))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return self._config.min_words
