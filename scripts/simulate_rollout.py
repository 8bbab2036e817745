"""Drive the controller with synthetic backends to rehearse a canary rollout.

Updates:
    v0.1 - 2025-11-08 - Added offline rollout rehearsal with seeded backend failure rates.
"""

from __future__ import annotations

import argparse
import logging
import random
from pathlib import Path
from typing import Dict

from config.settings import get_app_config, resolve_config_path
from core.artifact_store import InMemoryArtifactStore
from core.backend_invoker import CallableBackend, GenerationBackend
from core.exceptions import AGCError
from core.service import GenerationService
from models.generation import GenerationRequest, SubRequest
from models.rollout import RolloutState

LOGGER = logging.getLogger("agc.simulate")

SAMPLE_OUTPUT = (
    "Rollout rehearsal output describing the deployment plan, the verification "
    "steps, the rollback criteria, and the people on call for the change window."
)


class SimulatedClock:
    """Clock advanced by simulated backend latency and backoff sleeps."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _synthetic_backends(
    backend_ids: list[str], failure_rate: float, rng: random.Random, clock: SimulatedClock
) -> Dict[str, GenerationBackend]:
    def _make(backend_id: str) -> GenerationBackend:
        def _generate(sub_request: SubRequest) -> str:
            clock.now += rng.uniform(0.2, 1.5)
            if rng.random() < failure_rate:
                raise RuntimeError(f"{backend_id} synthetic failure")
            return f"{SAMPLE_OUTPUT} ({sub_request.tier.value} via {backend_id})"

        return CallableBackend(_generate)

    return {backend_id: _make(backend_id) for backend_id in backend_ids}


def simulate(
    config_path: Path | None = None,
    rounds: int = 10,
    batch_size: int = 20,
    failure_rate: float = 0.05,
    seed: int = 7,
) -> RolloutState:
    """Run *rounds* batches of requests, ticking the rollout after each batch."""
    config = get_app_config(config_path).model_copy(deep=True)
    config.quality_log.enabled = False
    rng = random.Random(seed)
    clock = SimulatedClock()
    backends = _synthetic_backends(list(config.backends), failure_rate, rng, clock)

    with GenerationService(
        config,
        backends=backends,
        store=InMemoryArtifactStore(),
        clock=clock,
        sleep=clock.sleep,
    ) as service:
        for round_number in range(1, rounds + 1):
            for index in range(batch_size):
                service.generate(
                    GenerationRequest(
                        prompt="Prepare the change summary.",
                        session_id=f"session-{round_number}-{index}",
                    )
                )
            clock.now += config.rollout.tick_interval_seconds
            service.rollout.tick()
            service.evaluate_alerts()
            snapshot = service.aggregator.snapshot()
            LOGGER.info(
                "Round %s: rollout %s%% [%s], success %.1f%%, alerts %s",
                round_number,
                service.rollout.percentage,
                service.rollout.status.value,
                snapshot.success_rate * 100,
                len(service.alerts.open_alerts()),
            )
            if service.rollout.status.terminal:
                break

        for event in service.rollout.state().history:
            LOGGER.info(
                "%s %s%% -> %s%%: %s",
                event.action.value,
                event.old_percentage,
                event.new_percentage,
                event.reason,
            )
        LOGGER.info("\n%s", service.console.health_report())
        return service.rollout.state()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rehearse a canary rollout against synthetic backends.")
    parser.add_argument("--config", type=Path, help="Optional path to config.json.")
    parser.add_argument("--rounds", type=int, default=10)
    parser.add_argument("--batch-size", type=int, default=20)
    parser.add_argument("--failure-rate", type=float, default=0.05)
    parser.add_argument("--seed", type=int, default=7)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    try:
        config_path = resolve_config_path(args.config) if args.config else None
        simulate(config_path, args.rounds, args.batch_size, args.failure_rate, args.seed)
    except AGCError as exc:
        LOGGER.error("Simulation failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
