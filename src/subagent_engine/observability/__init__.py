"""Logging setup for the engine."""

from subagent_engine.observability.logging import (
    REDACTED_VALUE,
    bind_scope,
    configure_logging,
    redact_event,
    redact_value,
)

__all__ = [
    "REDACTED_VALUE",
    "bind_scope",
    "configure_logging",
    "redact_event",
    "redact_value",
]
