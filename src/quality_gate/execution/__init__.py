"""Command execution backends."""

from quality_gate.execution.executor import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    OutputSink,
    OutputStream,
)

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "OutputSink",
    "OutputStream",
]
