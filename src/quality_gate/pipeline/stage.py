"""
Stage model and per-stage execution.

A stage wraps one or more argv vectors that run in order with a shared working
directory and environment. Before the first command starts, every declared tool
requirement is ensured through the provisioner. The outcome is always an
immutable :class:`ExecutionResult`; executor and provisioning errors are
captured into it rather than propagated, so only task cancellation escapes
:meth:`Stage.run`.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping, Sequence, Set
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from quality_gate.errors import (
    ErrorKind,
    ExecutionTimeout,
    LaunchError,
    ProvisioningError,
    StageFailure,
)
from quality_gate.execution.executor import CommandSpec

if TYPE_CHECKING:
    from quality_gate.execution.executor import CommandExecutor, CommandResult
    from quality_gate.pipeline.provisioner import EnvironmentProvisioner

_DEFAULT_SUCCESS_EXIT_CODES: Final[tuple[int, ...]] = (0,)

logger = logging.getLogger(__name__)


class StageStatus(StrEnum):
    """Lifecycle status of a stage within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Immutable outcome of one stage."""

    stage_name: str
    status: StageStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int = 0
    error_kind: ErrorKind | None = None
    message: str | None = None
    allow_failure: bool = False
    job: str | None = None

    def __post_init__(self) -> None:
        if not self.stage_name:
            raise ValueError("ExecutionResult.stage_name must be non-empty")
        object.__setattr__(self, "status", StageStatus(self.status))
        if self.error_kind is not None:
            object.__setattr__(self, "error_kind", ErrorKind(self.error_kind))
        if self.duration_ms < 0:
            raise ValueError("ExecutionResult.duration_ms must be >= 0")

    @property
    def blocking_failure(self) -> bool:
        return self.status is StageStatus.FAILED and not self.allow_failure

    @property
    def satisfies_dependents(self) -> bool:
        """Whether downstream stages may run after this result."""
        if self.status is StageStatus.SUCCEEDED:
            return True
        return self.status is StageStatus.FAILED and self.allow_failure

    @classmethod
    def skipped(
        cls,
        stage: Stage,
        kind: ErrorKind,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        start_time: datetime | None = None,
    ) -> ExecutionResult:
        end_time = datetime.now(tz=UTC) if start_time is not None else None
        duration_ms = 0
        if start_time is not None and end_time is not None:
            duration_ms = max(0, int((end_time - start_time).total_seconds() * 1000))
        return cls(
            stage_name=stage.name,
            status=StageStatus.SKIPPED,
            stdout=stdout,
            stderr=stderr,
            start_time=start_time,
            end_time=end_time,
            duration_ms=duration_ms,
            error_kind=kind,
            message=message,
            allow_failure=stage.allow_failure,
            job=stage.job,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage_name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error_kind": None if self.error_kind is None else self.error_kind.value,
            "message": self.message,
            "allow_failure": self.allow_failure,
            "job": self.job,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass(frozen=True, slots=True)
class Stage:
    """A named unit of verification work with dependencies."""

    name: str
    command: tuple[str, ...]
    commands: tuple[tuple[str, ...], ...] = ()
    working_directory: str | None = None
    environment_overrides: Mapping[str, str] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    allow_failure: bool = False
    requires: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    success_exit_codes: tuple[int, ...] = _DEFAULT_SUCCESS_EXIT_CODES
    job: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Stage.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "command", _as_argv(self.command, f"Stage[{self.name}].command"))
        object.__setattr__(
            self,
            "commands",
            tuple(
                _as_argv(argv, f"Stage[{self.name}].commands[{index}]")
                for index, argv in enumerate(self.commands)
            ),
        )
        if self.working_directory is not None:
            object.__setattr__(self, "working_directory", str(self.working_directory))
        object.__setattr__(
            self,
            "environment_overrides",
            {str(key): str(value) for key, value in sorted(self.environment_overrides.items())},
        )
        if isinstance(self.depends_on, str):
            raise ValueError(f"Stage[{self.name}].depends_on must be a collection of names")
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        if isinstance(self.requires, str):
            raise ValueError(f"Stage[{self.name}].requires must be a collection of names")
        object.__setattr__(self, "requires", tuple(dict.fromkeys(self.requires)))
        if self.timeout_seconds is not None:
            if (
                isinstance(self.timeout_seconds, bool)
                or not isinstance(self.timeout_seconds, (int, float))
                or not math.isfinite(self.timeout_seconds)
                or self.timeout_seconds <= 0
            ):
                raise ValueError(f"Stage[{self.name}].timeout_seconds must be a number > 0")
            object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))
        codes = tuple(self.success_exit_codes)
        if not codes or any(isinstance(code, bool) or not isinstance(code, int) for code in codes):
            raise ValueError(f"Stage[{self.name}].success_exit_codes must be non-empty integers")
        object.__setattr__(self, "success_exit_codes", codes)

    @property
    def argvs(self) -> tuple[tuple[str, ...], ...]:
        """Every argv vector this stage runs, in order."""
        return (self.command, *self.commands)

    def is_ready(self, completed: Set[str]) -> bool:
        return self.depends_on <= completed

    async def run(
        self,
        executor: CommandExecutor,
        provisioner: EnvironmentProvisioner | None = None,
        *,
        default_timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        start_time = datetime.now(tz=UTC)
        started = time.perf_counter()
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def finish(
            status: StageStatus,
            *,
            exit_code: int | None = None,
            kind: ErrorKind | None = None,
            message: str | None = None,
        ) -> ExecutionResult:
            return ExecutionResult(
                stage_name=self.name,
                status=status,
                exit_code=exit_code,
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                start_time=start_time,
                end_time=datetime.now(tz=UTC),
                duration_ms=max(0, int((time.perf_counter() - started) * 1000)),
                error_kind=kind,
                message=message,
                allow_failure=self.allow_failure,
                job=self.job,
            )

        if self.requires:
            if provisioner is None:
                error = ProvisioningError(self.requires[0], "no provisioner configured")
                return finish(StageStatus.FAILED, kind=error.kind, message=str(error))
            try:
                await provisioner.ensure_all(self.requires)
            except ProvisioningError as exc:
                logger.warning("stage %s: %s", self.name, exc)
                return finish(StageStatus.FAILED, kind=exc.kind, message=str(exc))

        result: CommandResult | None = None
        for argv in self.argvs:
            spec = CommandSpec(
                argv=argv,
                cwd=self.working_directory,
                env=self.environment_overrides,
                timeout_seconds=self.timeout_seconds or default_timeout_seconds,
            )
            try:
                result = await executor.run(spec)
            except LaunchError as exc:
                return finish(StageStatus.FAILED, kind=exc.kind, message=str(exc))
            except ExecutionTimeout as exc:
                stdout_parts.append(exc.stdout)
                stderr_parts.append(exc.stderr)
                return finish(StageStatus.FAILED, kind=exc.kind, message=str(exc))

            stdout_parts.append(result.stdout)
            stderr_parts.append(result.stderr)
            if not result.is_success(self.success_exit_codes):
                failure = StageFailure(self.name, argv, result.exit_code)
                return finish(
                    StageStatus.FAILED,
                    exit_code=result.exit_code,
                    kind=failure.kind,
                    message=str(failure),
                )

        assert result is not None
        return finish(StageStatus.SUCCEEDED, exit_code=result.exit_code)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "commands": [list(argv) for argv in self.argvs],
            "working_directory": self.working_directory,
            "environment_overrides": dict(self.environment_overrides),
            "depends_on": sorted(self.depends_on),
            "allow_failure": self.allow_failure,
            "requires": list(self.requires),
            "timeout_seconds": self.timeout_seconds,
            "success_exit_codes": list(self.success_exit_codes),
            "job": self.job,
        }


def _as_argv(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValueError(f"{path}: expected a sequence of strings")
    argv = tuple(value)
    if not argv:
        raise ValueError(f"{path}: must not be empty")
    for index, item in enumerate(argv):
        if not isinstance(item, str):
            raise ValueError(f"{path}[{index}]: expected string")
    return argv


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = ["ExecutionResult", "Stage", "StageStatus"]
