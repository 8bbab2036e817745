"""Startup diagnostics for controller dependencies.

Updates:
    v0.1 - 2025-11-06 - Added runtime checks for Redis, litellm, and credential
        prerequisites with informative warnings.
    v0.2 - 2025-11-08 - Warned about tiers whose backend chains are fully disabled.
"""

from __future__ import annotations

import logging
import os
from importlib import metadata
from typing import Any, List, Tuple, cast

from config.settings import AppConfig
from core.exceptions import HealthCheckError
from models.generation import StrategyTier

LOGGER = logging.getLogger("agc.health")

MINIMUM_LITELLM_VERSION = (1, 40)


def run_startup_checks(config: AppConfig) -> List[str]:
    """Validate external dependencies; return warnings when falling back."""

    warnings: List[str] = []
    warnings.extend(_check_litellm())
    warnings.extend(_check_redis(config))
    warnings.extend(_check_credentials(config))
    warnings.extend(_check_tier_chains(config))
    return warnings


def _check_litellm() -> List[str]:
    try:
        import litellm  # noqa: F401
    except ImportError:
        raise HealthCheckError("litellm is required for backend calls but is missing.")

    try:
        installed = metadata.version("litellm")
    except metadata.PackageNotFoundError:
        return []

    if _parse_version(installed) < MINIMUM_LITELLM_VERSION:
        expected = ".".join(str(part) for part in MINIMUM_LITELLM_VERSION)
        return [f"litellm version {installed} detected; {expected} or newer expected."]
    return []


def _parse_version(value: str) -> Tuple[int, ...]:
    parts: List[int] = []
    for token in value.split(".")[:2]:
        digits = "".join(char for char in token if char.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def _check_redis(config: AppConfig) -> List[str]:
    store_cfg = config.store
    if not store_cfg.enabled:
        return []

    import redis as redis_module

    client = cast(Any, redis_module).Redis(
        host=store_cfg.host,
        port=store_cfg.port,
        db=store_cfg.db,
        socket_timeout=1,
    )
    try:
        client.ping()
    except Exception as exc:  # pragma: no cover - runtime dependent
        LOGGER.warning(
            "Redis connectivity check failed (%s); using in-memory artifact store.", exc
        )
        return [
            "redis unavailable; artifacts will be kept in memory.",
        ]
    return []


def _check_credentials(config: AppConfig) -> List[str]:
    warnings: List[str] = []
    azure_backends = [
        name
        for name, backend in config.backends.items()
        if backend.enabled and backend.provider.lower() == "azure"
    ]
    if azure_backends:
        missing = [
            var
            for var in ("AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT")
            if not os.getenv(var)
        ]
        if missing:
            warnings.append(
                "Azure OpenAI credentials missing for "
                + ", ".join(azure_backends)
                + ": "
                + ", ".join(missing)
            )
    return warnings


def _check_tier_chains(config: AppConfig) -> List[str]:
    warnings: List[str] = []
    for tier, tier_cfg in config.tiers.items():
        if tier is StrategyTier.STATIC_TEMPLATE or not tier_cfg.enabled:
            continue
        if not any(config.backends[name].enabled for name in tier_cfg.backends):
            warnings.append(
                f"tier {tier.value} has no enabled backends; it will always fall through."
            )
    return warnings
