"""Error taxonomy.

Per-target errors (``TargetError`` subclasses) are captured into a
``TargetResult`` by the executor and never escape the run coordinator.
Notification errors never affect a run's status.
"""

from __future__ import annotations

import builtins


class OverseerError(Exception):
    """Base error for overseer."""


class ConfigurationError(OverseerError):
    """Invalid configuration, rejected at load time."""


class InvalidExpression(ConfigurationError):
    """Malformed cron expression."""


class UnknownJobType(ConfigurationError):
    """Job type identifier not present in the registry."""


class TargetError(OverseerError):
    """Base for per-target execution failures."""

    status = "failed"


class ConnectionError(TargetError, builtins.ConnectionError):
    """Target could not be reached at all."""

    status = "connection_error"


class ExecutionError(TargetError):
    """Command ran but failed."""

    status = "failed"


class TimeoutError(TargetError, builtins.TimeoutError):
    """Command exceeded its deadline and was killed."""

    status = "timed_out"


class CancellationError(TargetError):
    """Run was cancelled while the command was in flight."""

    status = "cancelled"


class TemplateRenderError(OverseerError):
    """Notification template could not be rendered."""


class ChannelDeliveryError(OverseerError):
    """A channel failed to deliver a notification."""
