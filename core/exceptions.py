"""Custom exception hierarchy for the adaptive generation controller.

This module centralises the error types emitted across subsystems so that
fatal conditions stay explicit while transient backend failures remain plain
attempt outcomes.

Updates:
    v0.1 - 2025-11-06 - Defined AGC error hierarchy for configuration,
        pipeline, and operator concerns.
    v0.2 - 2025-11-08 - Added backend and store errors for provider adapters.
"""

from __future__ import annotations


class AGCError(Exception):
    """Base class for all controller-specific errors."""


class ConfigError(AGCError):
    """Raised when application configuration is missing or invalid."""


class BackendError(AGCError):
    """Raised by backend adapters when a provider call cannot be issued."""


class PipelineExhaustedError(AGCError):
    """Raised when the static template tier fails and no artifact can be produced."""


class OperatorCommandError(AGCError):
    """Raised when an operator command is invalid; no state is mutated."""


class StoreError(AGCError):
    """Raised when artifact persistence fails without a usable fallback."""


class HealthCheckError(AGCError):
    """Raised when a startup dependency check fails fatally."""
