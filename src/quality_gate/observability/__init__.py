"""Logging and correlation helpers."""

from quality_gate.observability.logging import (
    RunLog,
    configure_structlog,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "RunLog",
    "configure_structlog",
    "correlation_scope",
    "setup_logging",
    "shutdown_logging",
]
