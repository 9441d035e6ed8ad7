"""Shared fixtures: a scripted in-memory command executor."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest

from quality_gate.errors import ExecutionTimeout, LaunchError
from quality_gate.execution.executor import CommandResult, CommandSpec


@dataclass(frozen=True, slots=True)
class Scripted:
    """Canned behaviour for one command line."""

    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    delay: float = 0.0
    launch_error: bool = False
    timeout: bool = False


class ScriptedExecutor:
    """Executor double keyed by the space-joined argv."""

    def __init__(self, script: Mapping[str, Scripted] | None = None) -> None:
        self.script = dict(script or {})
        self.calls: list[CommandSpec] = []
        self.cancelled: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def commands(self) -> list[str]:
        return [" ".join(spec.argv) for spec in self.calls]

    async def run(self, spec: CommandSpec) -> CommandResult:
        key = " ".join(spec.argv)
        self.calls.append(spec)
        behaviour = self.script.get(key, Scripted())
        started_at = datetime.now(tz=UTC)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if behaviour.delay:
                await asyncio.sleep(behaviour.delay)
            else:
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.cancelled.append(key)
            raise
        finally:
            self.in_flight -= 1

        if behaviour.launch_error:
            raise LaunchError(spec.argv, "No such file or directory")
        if behaviour.timeout:
            raise ExecutionTimeout(
                spec.argv,
                spec.timeout_seconds or 1.0,
                stdout=behaviour.stdout,
                stderr=behaviour.stderr,
            )
        return CommandResult(
            argv=spec.argv,
            exit_code=behaviour.exit_code,
            stdout=behaviour.stdout,
            stderr=behaviour.stderr,
            started_at=started_at,
            finished_at=datetime.now(tz=UTC),
            duration_ms=int(behaviour.delay * 1000),
        )


@pytest.fixture
def make_executor() -> Callable[..., ScriptedExecutor]:
    def factory(script: Mapping[str, Scripted] | None = None) -> ScriptedExecutor:
        return ScriptedExecutor(script)

    return factory


@pytest.fixture
def scripted() -> type[Scripted]:
    return Scripted
