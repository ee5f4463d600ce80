"""Exception types for the rollout controller.

Configuration problems are rejected before a rollout shifts any traffic.
Provider-side failures are caught by the analysis runner and recorded as
Error measurements; they never escape an analysis run.
"""
from typing import Any, Dict, Optional


class ControllerError(Exception):
    """Base exception for all controller errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(ControllerError):
    """Malformed template, bad step list or unresolvable reference."""
    pass


class ProviderError(ControllerError):
    """Metrics backend unreachable or returned a malformed response."""
    pass


class CredentialError(ProviderError):
    """A secret reference could not be resolved."""
    pass


class MetricTimeout(ControllerError):
    """A provider invocation produced no verdict within its timeout."""
    pass


class RolloutNotFound(ControllerError):
    """No rollout is registered under the requested id."""
    pass


class InvalidTransition(ControllerError):
    """A status change or control signal is not allowed from the current state."""
    pass
