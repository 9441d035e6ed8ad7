"""Error taxonomy for pipeline validation and stage execution.

Only :class:`ValidationError` escapes :class:`~quality_gate.pipeline.runner.PipelineRunner`.
Every other error is captured into the affected stage's ``ExecutionResult``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable error labels recorded on execution results and in reports."""

    LAUNCH_ERROR = "launch_error"
    EXECUTION_TIMEOUT = "execution_timeout"
    PROVISIONING_ERROR = "provisioning_error"
    STAGE_FAILURE = "stage_failure"
    DEPENDENCY_FAILED = "dependency_failed"
    HALTED = "halted"
    CANCELLED = "cancelled"


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind | None = None


class ValidationError(PipelineError, ValueError):
    """Malformed pipeline graph; fatal before any stage runs."""


class DuplicateStageError(ValidationError):
    """Two stages share one name."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(sorted(set(names)))
        super().__init__(f"duplicate stage name(s): {', '.join(self.names)}")


class UnknownDependencyError(ValidationError):
    """A ``depends_on`` entry references a stage that does not exist."""

    def __init__(self, missing: Iterable[tuple[str, str]]) -> None:
        self.missing: tuple[tuple[str, str], ...] = tuple(sorted(set(missing)))
        preview = ", ".join(f"{stage} -> {dependency}" for stage, dependency in self.missing)
        super().__init__(f"unknown dependencies: {preview}")


class CyclicDependencyError(ValidationError):
    """The dependency relation contains at least one cycle."""

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        if not self.cycles:
            message = "pipeline graph contains at least one cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in self.cycles[:3])
            suffix = "..." if len(self.cycles) > 3 else ""
            message = f"pipeline graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class LaunchError(PipelineError):
    """The executable could not be found or started."""

    kind = ErrorKind.LAUNCH_ERROR

    def __init__(self, argv: Sequence[str], reason: str) -> None:
        self.argv = tuple(argv)
        self.reason = reason
        super().__init__(f"failed to launch {self.argv[0] if self.argv else '<empty>'}: {reason}")


class ExecutionTimeout(PipelineError):
    """A command exceeded its allotted time and was terminated."""

    kind = ErrorKind.EXECUTION_TIMEOUT

    def __init__(
        self,
        argv: Sequence[str],
        timeout_seconds: float,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.argv = tuple(argv)
        self.timeout_seconds = timeout_seconds
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"command timed out after {timeout_seconds:.3f}s: {' '.join(self.argv)}"
        )


class ProvisioningError(PipelineError):
    """A tool requirement could not be satisfied."""

    kind = ErrorKind.PROVISIONING_ERROR

    def __init__(self, component_name: str, reason: str) -> None:
        self.component_name = component_name
        self.reason = reason
        super().__init__(f"provisioning {component_name!r} failed: {reason}")


class StageFailure(PipelineError):
    """A command launched successfully but exited with a failing status."""

    kind = ErrorKind.STAGE_FAILURE

    def __init__(self, stage_name: str, argv: Sequence[str], exit_code: int) -> None:
        self.stage_name = stage_name
        self.argv = tuple(argv)
        self.exit_code = exit_code
        super().__init__(
            f"stage {stage_name!r} command exited with {exit_code}: {' '.join(self.argv)}"
        )


__all__ = [
    "CyclicDependencyError",
    "DuplicateStageError",
    "ErrorKind",
    "ExecutionTimeout",
    "LaunchError",
    "PipelineError",
    "ProvisioningError",
    "StageFailure",
    "UnknownDependencyError",
    "ValidationError",
]
