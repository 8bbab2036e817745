"""Tiered, quality-gated generation pipeline.

Tiers run strictly in order from the effective ceiling down to the static
template. A tier is accepted only when its artifact clears the tier's
acceptance threshold; every tier that does not is recorded as exactly one
warning on the final result.

Updates:
    v0.1 - 2025-11-06 - Added four-tier cascade with per-tier backend chains.
    v0.2 - 2025-11-07 - Gated acceptance on per-tier quality thresholds.
    v0.3 - 2025-11-08 - Short-circuited to the static template on deadline exhaustion.
    v0.4 - 2025-11-08 - Added operator tier toggles.
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from config.settings import AppConfig
from core.exceptions import OperatorCommandError, PipelineExhaustedError
from core.prompt_engine import SubRequestBuilder, render_static_template
from core.quality import QualityAssessor
from core.retry_executor import Deadline, ExecutionReport, RetryFallbackExecutor, RetryPolicy
from core.telemetry import emit_metric, log_span
from models.generation import (
    TIER_ORDER,
    Artifact,
    GenerationRequest,
    GenerationResult,
    StrategyTier,
    TierOutcome,
    TierStatus,
)

LOGGER = logging.getLogger("agc.pipeline")


class TieredGenerationPipeline:
    """Cascade through strategy tiers until one clears its quality gate."""

    def __init__(
        self,
        config: AppConfig,
        executor: RetryFallbackExecutor,
        assessor: QualityAssessor,
        builder: Optional[SubRequestBuilder] = None,
        static_renderer: Callable[[GenerationRequest], str] = render_static_template,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._executor = executor
        self._assessor = assessor
        self._builder = builder or SubRequestBuilder(config)
        self._static_renderer = static_renderer
        self._clock = clock
        self._logger = LOGGER
        self._lock = Lock()
        self._tier_enabled: Dict[StrategyTier, bool] = {
            tier: tier_cfg.enabled
            for tier, tier_cfg in config.tiers.items()
            if tier is not StrategyTier.STATIC_TEMPLATE
        }

    def set_tier_enabled(self, tier: StrategyTier, enabled: bool) -> None:
        """Enable or disable a backend tier; the static template is always on."""
        if tier is StrategyTier.STATIC_TEMPLATE:
            raise OperatorCommandError("The static_template tier cannot be disabled.")
        with self._lock:
            if tier not in self._tier_enabled:
                raise OperatorCommandError(f"Tier '{tier.value}' is not configured.")
            self._tier_enabled[tier] = enabled
        self._logger.info("Tier %s %s by operator.", tier.value, "enabled" if enabled else "disabled")

    def tier_states(self) -> Dict[str, bool]:
        with self._lock:
            states = {tier.value: enabled for tier, enabled in self._tier_enabled.items()}
        states[StrategyTier.STATIC_TEMPLATE.value] = True
        return states

    def generate(
        self,
        request: GenerationRequest,
        tier_ceiling: Optional[StrategyTier] = None,
    ) -> GenerationResult:
        """Return the first threshold-clearing tier's result, or the static template."""
        started = self._clock()
        deadline = (
            Deadline(request.deadline_seconds, self._clock)
            if request.deadline_seconds is not None
            else None
        )
        ceiling = request.strategy_ceiling
        if tier_ceiling is not None and tier_ceiling.rank > ceiling.rank:
            ceiling = tier_ceiling

        with self._lock:
            enabled = dict(self._tier_enabled)

        warnings: List[str] = []
        outcomes: List[TierOutcome] = []
        skipped: List[StrategyTier] = []
        total_attempts = 0
        aborted = False

        for tier in TIER_ORDER[:-1]:
            if aborted or tier.rank < ceiling.rank or not enabled.get(tier, False):
                skipped.append(tier)
                continue
            if deadline is not None and deadline.expired:
                warnings.append(f"tier {tier.value} aborted: deadline exhausted before start")
                outcomes.append(
                    TierOutcome(
                        tier=tier,
                        status=TierStatus.ABORTED,
                        threshold=self._config.tiers[tier].acceptance_threshold,
                    )
                )
                aborted = True
                continue

            tier_started = self._clock()
            with log_span("pipeline.tier", tier=tier.value, request_id=request.request_id):
                report, primary = self._run_tier(tier, request, deadline)
            total_attempts += len(report.attempts)
            tier_cfg = self._config.tiers[tier]
            pairs = tuple((attempt.backend_id, attempt.outcome) for attempt in report.attempts)
            success = report.success

            if success is None:
                status = TierStatus.ABORTED if report.deadline_exhausted else TierStatus.EXHAUSTED
                if report.deadline_exhausted:
                    aborted = True
                    warnings.append(
                        f"tier {tier.value} aborted: deadline exhausted after "
                        f"{len(report.attempts)} attempt(s)"
                    )
                else:
                    warnings.append(f"tier {tier.value} exhausted: {self._describe_failures(report)}")
                outcomes.append(
                    TierOutcome(
                        tier=tier,
                        status=status,
                        threshold=tier_cfg.acceptance_threshold,
                        attempts=pairs,
                        elapsed_seconds=self._clock() - tier_started,
                    )
                )
                continue

            artifact = Artifact(
                artifact_id=request.artifact_id,
                content=success.output or "",
                tier=tier,
                backend_id=success.backend_id,
                metadata={"request_id": request.request_id, "session_id": request.session_id},
            )
            assessment = self._assessor.assess(artifact, request.context)
            used_fallback = success.backend_id != primary

            if assessment.score >= tier_cfg.acceptance_threshold:
                outcomes.append(
                    TierOutcome(
                        tier=tier,
                        status=TierStatus.ACCEPTED,
                        threshold=tier_cfg.acceptance_threshold,
                        attempts=pairs,
                        score=assessment.score,
                        elapsed_seconds=self._clock() - tier_started,
                    )
                )
                if used_fallback:
                    warnings.append(
                        f"tier {tier.value} primary backend '{primary}' exhausted; "
                        f"served by fallback '{success.backend_id}'"
                    )
                return self._finish(
                    request,
                    tier,
                    artifact,
                    assessment.score,
                    assessment.deficiencies,
                    total_attempts,
                    started,
                    warnings,
                    outcomes,
                    skipped,
                    used_fallback,
                )

            warnings.append(
                f"tier {tier.value} rejected: score {assessment.score:.2f} < threshold "
                f"{tier_cfg.acceptance_threshold:.2f} ({'; '.join(assessment.deficiencies)})"
            )
            outcomes.append(
                TierOutcome(
                    tier=tier,
                    status=TierStatus.REJECTED,
                    threshold=tier_cfg.acceptance_threshold,
                    attempts=pairs,
                    score=assessment.score,
                    elapsed_seconds=self._clock() - tier_started,
                )
            )

        return self._run_static(
            request, total_attempts, started, warnings, outcomes, skipped
        )

    def _run_tier(
        self,
        tier: StrategyTier,
        request: GenerationRequest,
        deadline: Optional[Deadline],
    ) -> Tuple[ExecutionReport, str]:
        tier_cfg = self._config.tiers[tier]
        sub_request = self._builder.build(tier, request)
        policy = RetryPolicy.from_config(tier_cfg.retry or self._config.retry, tier_cfg.timeout_seconds)
        primary, *fallbacks = tier_cfg.backends
        report = self._executor.execute(primary, fallbacks, sub_request, policy, deadline)
        return report, primary

    def _run_static(
        self,
        request: GenerationRequest,
        total_attempts: int,
        started: float,
        warnings: List[str],
        outcomes: List[TierOutcome],
        skipped: List[StrategyTier],
    ) -> GenerationResult:
        tier = StrategyTier.STATIC_TEMPLATE
        tier_started = self._clock()
        try:
            content = self._static_renderer(request)
            artifact = Artifact(
                artifact_id=request.artifact_id,
                content=content,
                tier=tier,
                backend_id=None,
                metadata={"request_id": request.request_id, "template": "static"},
            )
        except Exception as exc:
            self._logger.critical(
                "Static template failed for request %s: %s", request.request_id, exc, exc_info=True
            )
            emit_metric("agc.pipeline.exhausted", 1.0)
            raise PipelineExhaustedError(
                f"Static template tier failed for request {request.request_id}: {exc}"
            ) from exc

        # Scored for telemetry only; the static tier is accepted unconditionally.
        assessment = self._assessor.assess(artifact, request.context)
        outcomes.append(
            TierOutcome(
                tier=tier,
                status=TierStatus.ACCEPTED,
                threshold=0.0,
                score=assessment.score,
                elapsed_seconds=self._clock() - tier_started,
            )
        )
        self._logger.warning(
            "Request %s served by static template after %s warning(s).",
            request.request_id,
            len(warnings),
        )
        return self._finish(
            request,
            tier,
            artifact,
            assessment.score,
            assessment.deficiencies,
            total_attempts,
            started,
            warnings,
            outcomes,
            skipped,
            False,
        )

    def _finish(
        self,
        request: GenerationRequest,
        tier: StrategyTier,
        artifact: Artifact,
        score: float,
        deficiencies: Tuple[str, ...],
        total_attempts: int,
        started: float,
        warnings: List[str],
        outcomes: List[TierOutcome],
        skipped: List[StrategyTier],
        used_fallback: bool,
    ) -> GenerationResult:
        elapsed = self._clock() - started
        self._logger.info(
            "Request %s accepted at tier %s (score=%.2f, attempts=%s, %.2fs)",
            request.request_id,
            tier.value,
            score,
            total_attempts,
            elapsed,
        )
        emit_metric("agc.pipeline.accepted", score, tier=tier.value)
        return GenerationResult(
            request_id=request.request_id,
            strategy_tier=tier,
            artifact=artifact,
            quality_score=score,
            deficiencies=deficiencies,
            total_attempts=total_attempts,
            elapsed_seconds=elapsed,
            warnings=tuple(warnings),
            tier_outcomes=tuple(outcomes),
            skipped_tiers=tuple(skipped),
            used_fallback=used_fallback,
        )

    @staticmethod
    def _describe_failures(report: ExecutionReport) -> str:
        parts = [
            f"{attempt.backend_id} {attempt.outcome.value}" + (f" ({attempt.error})" if attempt.error else "")
            for attempt in report.attempts
        ]
        parts.extend(f"{backend_id} circuit open" for backend_id in report.skipped_backends)
        return "; ".join(parts) or "no backend attempted"
