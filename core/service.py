"""Generation service wiring the pipeline, telemetry, and control loops.

Updates:
    v0.1 - 2025-11-07 - Added service facade persisting results and quality logs.
    v0.2 - 2025-11-08 - Served concurrent requests from a bounded worker pool.
    v0.3 - 2025-11-08 - Started rollout and alert loops from a single entry point.
    v0.4 - 2025-11-09 - Kept quality log write failures from failing accepted requests.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Mapping, Optional

from config.settings import AppConfig
from core.aggregator import TelemetryAggregator
from core.alerting import AlertEvaluation, AlertManager
from core.artifact_store import ArtifactStore, create_artifact_store
from core.backend_invoker import BackendInvoker, GenerationBackend, build_backends
from core.circuit_breaker import CircuitBreakerRegistry
from core.console import OperatorConsole
from core.exceptions import PipelineExhaustedError, StoreError
from core.feature_flags import FeatureFlagRegistry
from core.pipeline import TieredGenerationPipeline
from core.quality import QualityAssessor, RubricQualityAssessor, classify_quality
from core.quality_log import QualityLogWriter
from core.retry_executor import RetryFallbackExecutor
from core.rollout import RolloutController
from core.scheduler import PeriodicTask
from core.telemetry import log_span
from models.generation import GenerationRequest, GenerationResult, QualityLog

LOGGER = logging.getLogger("agc.service")


class GenerationService:
    """Drive requests through flags, the tiered pipeline, and telemetry."""

    def __init__(
        self,
        config: AppConfig,
        backends: Optional[Mapping[str, GenerationBackend]] = None,
        store: Optional[ArtifactStore] = None,
        quality_log: Optional[QualityLogWriter] = None,
        assessor: Optional[QualityAssessor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._clock = clock
        self._logger = LOGGER
        self.breakers = CircuitBreakerRegistry(config.circuit_breaker, clock)
        self._invoker = BackendInvoker(
            backends if backends is not None else build_backends(config),
            max_workers=config.worker_pool.invoker_workers,
            clock=clock,
        )
        executor = RetryFallbackExecutor(self._invoker, self.breakers, sleep=sleep, clock=clock)
        self.pipeline = TieredGenerationPipeline(
            config,
            executor,
            assessor or RubricQualityAssessor(config.quality),
            clock=clock,
        )
        self.aggregator = TelemetryAggregator(config.telemetry, clock=clock)
        self.rollout = RolloutController(config.rollout, self.aggregator, clock=clock)
        self.flags = FeatureFlagRegistry.from_config(
            config.feature_flags,
            rollout_percentage=lambda: self.rollout.percentage,
            rollout_flag=config.rollout.flag,
        )
        self.alerts = AlertManager(config.alerting)
        self.console = OperatorConsole(
            self.rollout,
            self.aggregator,
            self.alerts,
            self.flags,
            pipeline=self.pipeline,
            breakers=self.breakers,
            health_thresholds=config.health,
        )
        self._store = store if store is not None else create_artifact_store(config.store)
        if quality_log is None and config.quality_log.enabled:
            path = Path(config.quality_log.path) if config.quality_log.path else None
            quality_log = QualityLogWriter(path)
        self._quality_log = quality_log
        self._pool = ThreadPoolExecutor(
            max_workers=config.worker_pool.max_workers,
            thread_name_prefix="agc-generate",
        )
        self._alert_task: Optional[PeriodicTask] = None

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one request end to end; only a static-tier failure raises."""
        decisions = self.flags.evaluate(request.session_id)
        ceiling = self.flags.tier_ceiling(decisions)
        started = self._clock()
        with log_span("generation", request_id=request.request_id, ceiling=ceiling.value):
            try:
                result = self.pipeline.generate(request, ceiling)
            except PipelineExhaustedError:
                self.aggregator.record_failure(self._clock() - started)
                raise
        elapsed = self._clock() - started

        self.aggregator.record(result, elapsed, flags=decisions)
        if self._quality_log is not None:
            entry = QualityLog.from_result(
                result,
                request,
                classification=classify_quality(result.quality_score),
                flags=decisions,
            )
            try:
                self._quality_log.append(entry)
            except StoreError as exc:
                self._logger.error(
                    "Unable to write quality log for request %s: %s", request.request_id, exc
                )
        if result.artifact is not None:
            try:
                self._store.save(result.artifact)
            except StoreError as exc:
                self._logger.error(
                    "Unable to persist artifact %s: %s", result.artifact.artifact_id, exc
                )
        for warning in result.warnings:
            self._logger.info("Request %s: %s", request.request_id, warning)
        return result

    def submit(self, request: GenerationRequest) -> "Future[GenerationResult]":
        """Queue a request on the bounded worker pool."""
        return self._pool.submit(self.generate, request)

    def evaluate_alerts(self) -> AlertEvaluation:
        return self.alerts.evaluate(self.aggregator.snapshot())

    def start_monitoring(self) -> None:
        """Start the rollout control loop and periodic alert evaluation."""
        self.rollout.start()
        if self._alert_task is None or not self._alert_task.running:
            self._alert_task = PeriodicTask(
                self._config.alerting.evaluation_interval_seconds,
                self.evaluate_alerts,
                name="agc-alerts",
            )
            self._alert_task.start()
        self._logger.info("Monitoring loops started.")

    def stop_monitoring(self) -> None:
        self.rollout.stop()
        if self._alert_task is not None:
            self._alert_task.stop()
            self._alert_task = None

    def shutdown(self, wait: bool = True) -> None:
        self.stop_monitoring()
        self._pool.shutdown(wait=wait)
        self._invoker.shutdown(wait=False)
        self._logger.info("Generation service shut down.")

    def __enter__(self) -> "GenerationService":
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()
