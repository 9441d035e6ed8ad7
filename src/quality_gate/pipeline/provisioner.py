"""
Tool provisioning for pipeline stages.

Each :class:`ToolRequirement` is satisfied at most once per provisioner: the
check command runs first, the install command only when the check fails, and a
second check confirms the install worked. Outcomes (success and failure) are
cached per requirement name. Concurrent callers asking for the same requirement
share one in-flight attempt; the in-flight table and the outcome cache are the
only mutable state and both sit behind a single ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import shlex
import tomllib
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from quality_gate.constants import DEFAULT_PROVISION_TIMEOUT_SECONDS
from quality_gate.execution.executor import CommandSpec
from quality_gate.observability.logging import correlation_scope
from quality_gate.errors import ExecutionTimeout, LaunchError, ProvisioningError

if TYPE_CHECKING:
    from quality_gate.execution.executor import CommandExecutor, CommandResult

logger = logging.getLogger(__name__)


class ToolRegistryError(ValueError):
    """Raised when a tool registry payload is invalid."""


@dataclass(frozen=True, slots=True)
class ToolRequirement:
    """A toolchain component a stage needs before it can run."""

    component_name: str
    install_command: tuple[str, ...] | None = None
    check_command: tuple[str, ...] | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "component_name",
            _normalize_text(self.component_name, "ToolRequirement.component_name"),
        )
        if self.install_command is not None:
            object.__setattr__(
                self,
                "install_command",
                _as_argv(self.install_command, f"tools.{self.component_name}.install"),
            )
        if self.check_command is not None:
            object.__setattr__(
                self,
                "check_command",
                _as_argv(self.check_command, f"tools.{self.component_name}.check"),
            )
        if self.install_command is None and self.check_command is None:
            raise ToolRegistryError(
                f"tools.{self.component_name}: needs a check command, an install command or both"
            )
        if self.timeout_seconds is not None:
            if (
                isinstance(self.timeout_seconds, bool)
                or not isinstance(self.timeout_seconds, (int, float))
                or not math.isfinite(self.timeout_seconds)
                or self.timeout_seconds <= 0
            ):
                raise ToolRegistryError(
                    f"tools.{self.component_name}.timeout_seconds must be a number > 0"
                )
            object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))


class EnvironmentProvisioner:
    """Ensure tool requirements exactly once, sharing concurrent attempts."""

    def __init__(
        self,
        executor: CommandExecutor,
        requirements: Iterable[ToolRequirement] = (),
        *,
        default_timeout_seconds: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
    ) -> None:
        self._executor = executor
        self._registry: dict[str, ToolRequirement] = {}
        for requirement in requirements:
            self.register(requirement)
        self._default_timeout_seconds = default_timeout_seconds
        self._lock = asyncio.Lock()
        self._in_flight: dict[str, asyncio.Task[ProvisioningError | None]] = {}
        self._outcomes: dict[str, ProvisioningError | None] = {}
        self._check_calls: Counter[str] = Counter()
        self._install_calls: Counter[str] = Counter()

    @property
    def registry(self) -> Mapping[str, ToolRequirement]:
        return dict(self._registry)

    @property
    def check_calls(self) -> Mapping[str, int]:
        return dict(self._check_calls)

    @property
    def install_calls(self) -> Mapping[str, int]:
        return dict(self._install_calls)

    def register(self, requirement: ToolRequirement) -> None:
        existing = self._registry.get(requirement.component_name)
        if existing is not None and existing != requirement:
            raise ToolRegistryError(
                f"conflicting definitions for tool {requirement.component_name!r}"
            )
        self._registry[requirement.component_name] = requirement

    def is_satisfied(self, name: str) -> bool:
        return name in self._outcomes and self._outcomes[name] is None

    async def ensure(self, requirement: ToolRequirement) -> None:
        """Make ``requirement`` available or raise :class:`ProvisioningError`."""
        name = requirement.component_name
        async with self._lock:
            if name in self._outcomes:
                error = self._outcomes[name]
                if error is not None:
                    raise error
                return
            task = self._in_flight.get(name)
            if task is None:
                task = asyncio.create_task(
                    self._provision(requirement), name=f"provision:{name}"
                )
                self._in_flight[name] = task

        # The attempt is shared, so one caller being cancelled must not cancel it.
        error = await asyncio.shield(task)
        if error is not None:
            raise error

    async def ensure_all(self, names: Sequence[str]) -> None:
        """Ensure registered requirements by name, in order."""
        for name in names:
            requirement = self._registry.get(name)
            if requirement is None:
                raise ProvisioningError(name, "requirement is not defined")
            await self.ensure(requirement)

    async def cancel_pending(self) -> None:
        """Cancel in-flight attempts and wait for their processes to be reaped."""
        async with self._lock:
            tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _provision(self, requirement: ToolRequirement) -> ProvisioningError | None:
        name = requirement.component_name
        try:
            with correlation_scope(requirement=name):
                error = await self._attempt(requirement)
        except BaseException:
            async with self._lock:
                self._in_flight.pop(name, None)
            raise
        async with self._lock:
            self._outcomes[name] = error
            self._in_flight.pop(name, None)
        return error

    async def _attempt(self, requirement: ToolRequirement) -> ProvisioningError | None:
        name = requirement.component_name
        if requirement.check_command is not None and await self._check(requirement):
            logger.info("requirement %s already satisfied", name)
            return None

        if requirement.install_command is None:
            logger.error("requirement %s unavailable and has no install command", name)
            return ProvisioningError(name, "check failed and no install command is defined")

        logger.info("installing requirement %s", name)
        self._install_calls[name] += 1
        try:
            result = await self._run(requirement, requirement.install_command)
        except (LaunchError, ExecutionTimeout) as exc:
            logger.error("install of %s failed: %s", name, exc)
            return ProvisioningError(name, f"install command failed: {exc}")
        if not result.is_success():
            detail = _tail(result.stderr) or _tail(result.stdout)
            logger.error("install of %s exited with %s", name, result.exit_code)
            reason = f"install command exited with {result.exit_code}"
            return ProvisioningError(name, f"{reason}: {detail}" if detail else reason)

        if requirement.check_command is not None and not await self._check(requirement):
            logger.error("requirement %s still unavailable after install", name)
            return ProvisioningError(name, "check command still fails after install")

        logger.info("requirement %s installed", name)
        return None

    async def _check(self, requirement: ToolRequirement) -> bool:
        assert requirement.check_command is not None
        self._check_calls[requirement.component_name] += 1
        try:
            result = await self._run(requirement, requirement.check_command)
        except (LaunchError, ExecutionTimeout) as exc:
            logger.info("check for %s did not pass: %s", requirement.component_name, exc)
            return False
        return result.is_success()

    async def _run(self, requirement: ToolRequirement, argv: tuple[str, ...]) -> CommandResult:
        spec = CommandSpec(
            argv=argv,
            timeout_seconds=requirement.timeout_seconds or self._default_timeout_seconds,
        )
        return await self._executor.run(spec)


def load_tool_registry(source: Path | str | Mapping[str, object]) -> dict[str, ToolRequirement]:
    """Load ``[tools.<name>]`` tables from a TOML file or an already parsed mapping."""

    if isinstance(source, Mapping):
        raw_tools: object = source
    else:
        registry_path = Path(source)
        if not registry_path.exists():
            raise ToolRegistryError(f"tool registry file not found: {registry_path!s}")
        try:
            with registry_path.open("rb") as handle:
                payload = tomllib.load(handle)
        except OSError as exc:
            raise ToolRegistryError(
                f"unable to read tool registry {registry_path!s}: {exc}"
            ) from exc
        except tomllib.TOMLDecodeError as exc:
            raise ToolRegistryError(f"invalid TOML in {registry_path!s}: {exc}") from exc
        raw_tools = payload.get("tools", {})

    if not isinstance(raw_tools, Mapping):
        raise ToolRegistryError("tools must be a table of [tools.<name>] entries")

    entries: dict[str, ToolRequirement] = {}
    for raw_name, raw_entry in raw_tools.items():
        if not isinstance(raw_name, str):
            raise ToolRegistryError("tool names must be strings")
        if not isinstance(raw_entry, Mapping):
            raise ToolRegistryError(f"tools.{raw_name} must be a table")
        unknown = sorted(set(raw_entry) - {"check", "install", "timeout_seconds"})
        if unknown:
            raise ToolRegistryError(f"tools.{raw_name}: unknown key(s) {', '.join(unknown)}")
        try:
            entries[raw_name] = ToolRequirement(
                component_name=raw_name,
                install_command=_optional_command(raw_entry.get("install")),
                check_command=_optional_command(raw_entry.get("check")),
                timeout_seconds=raw_entry.get("timeout_seconds"),
            )
        except ValueError as exc:
            if isinstance(exc, ToolRegistryError):
                raise
            raise ToolRegistryError(str(exc)) from exc
    return entries


def _optional_command(value: object) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return tuple(shlex.split(value))
    if isinstance(value, Sequence):
        return tuple(value)
    raise ToolRegistryError(f"command must be a string or a list of strings, got {value!r}")


def _as_argv(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ToolRegistryError(f"{path}: expected a sequence of strings")
    argv = tuple(value)
    if not argv or not all(isinstance(item, str) and item for item in argv):
        raise ToolRegistryError(f"{path}: must be a non-empty list of non-empty strings")
    return argv


def _normalize_text(value: str, field_name: str, *, max_len: int = 128) -> str:
    if not isinstance(value, str):
        raise ToolRegistryError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ToolRegistryError(f"{field_name} must not be empty")
    if len(normalized) > max_len:
        raise ToolRegistryError(f"{field_name} must be <= {max_len} characters")
    if any(char.isspace() for char in normalized):
        raise ToolRegistryError(f"{field_name} must not contain whitespace")
    return normalized


def _tail(text: str, *, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


__all__ = [
    "EnvironmentProvisioner",
    "ToolRegistryError",
    "ToolRequirement",
    "load_tool_registry",
]
