"""Entry point for the adaptive generation controller.

Updates:
    v0.1 - 2025-11-06 - Added CLI bootstrap with configuration loading and logging setup.
    v0.2 - 2025-11-06 - Added startup health checks with warning surface.
    v0.3 - 2025-11-07 - Loaded environment variables from .env during startup.
    v0.4 - 2025-11-08 - Added status and metric export modes over the operator console.
    v0.5 - 2025-11-09 - Documented that status and export describe a freshly started controller.
"""

from __future__ import annotations

import argparse
import logging
import logging.config
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from config.settings import AppConfig, get_app_config, resolve_config_path
from core.console import render_status
from core.exceptions import AGCError, HealthCheckError, OperatorCommandError, PipelineExhaustedError
from core.health import run_startup_checks
from core.service import GenerationService
from models.generation import GenerationRequest, StrategyTier


def setup_logging(logging_config: Optional[Path] = None) -> None:
    """Configure Python logging using the provided configuration file."""
    config_path = logging_config or Path(__file__).parent / "config" / "logging.conf"
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO)
        logging.getLogger("agc").warning(
            "Logging configuration %s not found; using basicConfig.", config_path
        )
        return
    logging.config.fileConfig(config_path, disable_existing_loggers=False)


def run_cli(
    config: AppConfig,
    prompt: Optional[str] = None,
    session_id: Optional[str] = None,
    ceiling: Optional[str] = None,
    deadline: Optional[float] = None,
) -> int:
    """Generate one artifact and log the tier trail."""
    logger = logging.getLogger("agc.cli")
    prompt_text = prompt or "Write a short status update for the generation service."
    try:
        request = GenerationRequest(
            prompt=prompt_text,
            session_id=session_id,
            strategy_ceiling=StrategyTier.parse(ceiling) if ceiling else StrategyTier.FULL_ENHANCEMENT,
            deadline_seconds=deadline,
        )
    except ValueError as exc:
        logger.error("Invalid request: %s", exc)
        return 2

    with GenerationService(config) as service:
        try:
            result = service.generate(request)
        except PipelineExhaustedError as exc:
            logger.critical("Generation pipeline exhausted: %s", exc)
            return 1

    score = f"{result.quality_score:.2f}" if result.quality_score is not None else "n/a"
    logger.info(
        "Accepted tier %s (score=%s, attempts=%s, %.2fs)",
        result.strategy_tier.value,
        score,
        result.total_attempts,
        result.elapsed_seconds,
    )
    for warning in result.warnings:
        logger.warning("Tier warning: %s", warning)
    if result.skipped_tiers:
        logger.info("Skipped tiers: %s", ", ".join(tier.value for tier in result.skipped_tiers))
    if result.artifact is not None:
        logger.info("Artifact (%s):\n%s", result.artifact.artifact_id, result.artifact.content)
    return 0


def run_status(config: AppConfig) -> int:
    """Report the configured starting state; metrics live only inside a running process."""
    logger = logging.getLogger("agc.cli")
    with GenerationService(config) as service:
        logger.info("Controller status: %s", render_status(service.console.get_status()))
        logger.info("\n%s", service.console.health_report())
    return 0


def run_export(config: AppConfig, fmt: str, output: Optional[Path] = None) -> int:
    """Export the dashboard of a freshly started controller (empty metrics window)."""
    logger = logging.getLogger("agc.cli")
    with GenerationService(config) as service:
        try:
            payload = service.console.export_metrics(fmt)
        except OperatorCommandError as exc:
            logger.error("Export failed: %s", exc)
            return 2
    if output is None:
        print(payload)
    else:
        output.write_text(payload, encoding="utf-8")
        logger.info("Metrics exported to %s", output)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Parse CLI arguments and dispatch the selected mode."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Adaptive generation controller runner.")
    parser.add_argument(
        "--mode",
        choices=["generate", "status", "export"],
        default="generate",
        help=(
            "generate runs one request; status and export start a fresh controller, so they "
            "show the configured rollout, flags, and tiers with an empty metrics window."
        ),
    )
    parser.add_argument("--config", type=Path, help="Path to configuration file.")
    parser.add_argument("--logging-config", type=Path, help="Path to logging configuration.")
    parser.add_argument("--prompt", type=str, help="Prompt for generate mode.")
    parser.add_argument("--session", type=str, help="Session id used for flag bucketing.")
    parser.add_argument(
        "--ceiling",
        choices=[tier.value for tier in StrategyTier],
        help="Richest strategy tier the request may use.",
    )
    parser.add_argument("--deadline", type=float, help="Overall request budget in seconds.")
    parser.add_argument("--format", choices=["json", "csv"], default="json", help="Export format.")
    parser.add_argument("--output", type=Path, help="Write exported metrics to this file.")
    args = parser.parse_args(argv)

    try:
        config_path = resolve_config_path(args.config) if args.config else None
        config = get_app_config(config_path)
        setup_logging(args.logging_config)
        warnings = run_startup_checks(config)
        for warning in warnings:
            logging.getLogger("agc").warning("Startup check: %s", warning)
    except HealthCheckError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger("agc").error("Startup health check failed: %s", exc)
        return 1
    except AGCError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger("agc").error("Startup failed: %s", exc)
        return 1

    if args.mode == "status":
        return run_status(config)
    if args.mode == "export":
        return run_export(config, args.format, args.output)
    return run_cli(config, args.prompt, args.session, args.ceiling, args.deadline)


if __name__ == "__main__":
    raise SystemExit(main())
