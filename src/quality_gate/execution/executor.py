"""
Command execution for pipeline stages and tool provisioning.

A :class:`CommandExecutor` runs one argv vector with a working directory and an
environment, captures stdout/stderr separately and always enforces a timeout.
A non-zero exit is a normal :class:`CommandResult`; only a missing executable
(:class:`LaunchError`) or an elapsed timeout (:class:`ExecutionTimeout`) raise.
Each command runs in its own session. Whatever is still alive in that session
when the command exits, times out or is cancelled gets terminated, so stages
never leak background processes.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Literal, Protocol, runtime_checkable

import psutil

from quality_gate.constants import DEFAULT_MAX_OUTPUT_CHARS, DEFAULT_STAGE_TIMEOUT_SECONDS
from quality_gate.errors import ExecutionTimeout, LaunchError

OutputStream = Literal["stdout", "stderr"]
OutputSink = Callable[[OutputStream, str], None]

_MAX_ENV_ENTRIES: Final[int] = 512
_TERMINATE_GRACE_SECONDS: Final[float] = 2.0
_STREAM_LIMIT: Final[int] = 16 * 1024 * 1024
_POSIX: Final[bool] = sys.platform != "win32"
# Passed through even when the parent environment is not inherited.
_BASE_ENV_KEYS: Final[tuple[str, ...]] = ("PATH", "HOME", "LANG", "TMPDIR", "SYSTEMROOT")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    inherit_env: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.argv, (str, bytes)) or not isinstance(self.argv, Sequence):
            raise ValueError("CommandSpec.argv: expected a sequence of strings")
        argv = tuple(self.argv)
        if not argv:
            raise ValueError("CommandSpec.argv: must not be empty")
        for index, item in enumerate(argv):
            if not isinstance(item, str):
                raise ValueError(f"CommandSpec.argv[{index}]: expected string")
        if not argv[0].strip():
            raise ValueError("CommandSpec.argv[0]: must not be blank")
        self.argv = argv

        if self.cwd is not None:
            self.cwd = str(self.cwd)
        if len(self.env) > _MAX_ENV_ENTRIES:
            raise ValueError(f"CommandSpec.env: contains too many entries (>{_MAX_ENV_ENTRIES})")
        env: dict[str, str] = {}
        for key, value in self.env.items():
            if not isinstance(key, str) or not key or "=" in key:
                raise ValueError(f"CommandSpec.env: invalid variable name {key!r}")
            if not isinstance(value, str):
                raise ValueError(f"CommandSpec.env.{key}: expected string")
            env[key] = value
        self.env = {key: env[key] for key in sorted(env)}

        if self.timeout_seconds is not None:
            self.timeout_seconds = _as_positive_float(
                self.timeout_seconds, "CommandSpec.timeout_seconds"
            )

    def resolved_timeout(self, default_timeout_seconds: float) -> float:
        if self.timeout_seconds is not None:
            return self.timeout_seconds
        return default_timeout_seconds

    def build_env(self, *, inherit: bool | None = None) -> dict[str, str]:
        inherit_env = self.inherit_env if inherit is None else inherit and self.inherit_env
        if inherit_env:
            env = dict(os.environ)
        else:
            env = {key: os.environ[key] for key in _BASE_ENV_KEYS if key in os.environ}
        env.update(self.env)
        return env

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a command that launched and exited on its own."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int

    def is_success(self, success_exit_codes: Sequence[int] = (0,)) -> bool:
        return self.exit_code in success_exit_codes


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Async local subprocess executor with streaming capture and timeouts."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
        output_sink: OutputSink | None = None,
        inherit_env: bool = True,
    ) -> None:
        self._default_timeout_seconds = _as_positive_float(
            default_timeout_seconds, "LocalSubprocessExecutor.default_timeout_seconds"
        )
        if max_output_chars is not None and max_output_chars <= 0:
            raise ValueError("LocalSubprocessExecutor.max_output_chars must be > 0")
        self._max_output_chars = max_output_chars
        self._output_sink = output_sink
        self._inherit_env = inherit_env

    @property
    def default_timeout_seconds(self) -> float:
        return self._default_timeout_seconds

    async def run(self, spec: CommandSpec) -> CommandResult:
        timeout = spec.resolved_timeout(self._default_timeout_seconds)
        cwd = spec.cwd
        if cwd is not None and not Path(cwd).is_dir():
            raise LaunchError(spec.argv, f"working directory does not exist: {cwd}")

        started_at = datetime.now(tz=UTC)
        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=cwd,
                env=spec.build_env(inherit=self._inherit_env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            raise LaunchError(spec.argv, exc.strerror or str(exc)) from exc

        logger.debug("spawned pid=%s: %s", process.pid, spec.display())
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        assert process.stdout is not None
        assert process.stderr is not None
        readers = asyncio.gather(
            self._pump(process.stdout, "stdout", stdout_chunks),
            self._pump(process.stderr, "stderr", stderr_chunks),
        )

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError as exc:
            await _terminate_tree(process)
            await _drain(readers)
            raise ExecutionTimeout(
                spec.argv,
                timeout,
                stdout=self._finalize(stdout_chunks),
                stderr=self._finalize(stderr_chunks),
            ) from exc
        except asyncio.CancelledError:
            await _terminate_tree(process)
            await _drain(readers)
            raise

        finished_at = datetime.now(tz=UTC)
        # A command may exit while children it spawned still hold the pipes.
        await _terminate_tree(process)
        await _drain(readers)
        exit_code = process.returncode
        assert exit_code is not None
        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._finalize(stdout_chunks),
            stderr=self._finalize(stderr_chunks),
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_elapsed_ms(started_ns),
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        name: OutputStream,
        chunks: list[str],
    ) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = _normalize_output_text(raw)
            chunks.append(line)
            if self._output_sink is not None:
                self._output_sink(name, line.rstrip("\n"))

    def _finalize(self, chunks: list[str]) -> str:
        return _truncate_text("".join(chunks), self._max_output_chars)


async def _drain(readers: asyncio.Future[list[None]]) -> None:
    # Pipes close once the session is gone; bound the wait in case a process
    # that left the session still holds them open.
    try:
        await asyncio.wait_for(asyncio.shield(readers), timeout=_TERMINATE_GRACE_SECONDS)
    except (TimeoutError, asyncio.CancelledError):
        readers.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await readers


async def _terminate_tree(process: asyncio.subprocess.Process) -> None:
    """Terminate ``process`` and everything left in its session, escalating to SIGKILL."""

    victims: list[psutil.Process] = []
    if process.returncode is None:
        with suppress(psutil.NoSuchProcess):
            root = psutil.Process(process.pid)
            victims = [*root.children(recursive=True), root]
    if _POSIX:
        # Orphans are reparented once the leader exits; the session id still finds them.
        known = {victim.pid for victim in victims}
        victims.extend(
            member for member in _session_members(process.pid) if member.pid not in known
        )

    if victims:
        logger.debug("terminating %d process(es) from pid=%s", len(victims), process.pid)
        for victim in victims:
            with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                victim.terminate()
        _, alive = await asyncio.to_thread(
            psutil.wait_procs, victims, _TERMINATE_GRACE_SECONDS
        )
        for victim in alive:
            with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                victim.kill()

    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()


def _session_members(session_id: int) -> list[psutil.Process]:
    members: list[psutil.Process] = []
    for candidate in psutil.process_iter():
        with suppress(OSError, psutil.Error):
            if os.getsid(candidate.pid) == session_id:
                members.append(candidate)
    return members


def _as_positive_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path}: expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0.0:
        raise ValueError(f"{path}: must be a finite number > 0")
    return parsed


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "OutputSink",
    "OutputStream",
]
