"""
Pipeline definition files.

A definition is a TOML (``tomllib``) or YAML (``PyYAML``) document::

    [pipeline]
    name = "rusted_dice"
    topology = "sequential"          # graph | sequential | isolated
    env = { CARGO_TERM_COLOR = "always" }

    [tools.clippy]
    check = ["cargo", "clippy", "--version"]
    install = ["rustup", "component", "add", "clippy"]

    [[stages]]
    name = "lint"
    command = ["cargo", "clippy", "--all-targets", "--", "-D", "warnings"]
    requires = ["clippy"]

Hosted-CI style definitions use ``[[jobs]]`` with ``steps`` instead of
``[[stages]]``. Relative ``cwd`` values resolve against the definition file's
directory. Environment layers merge as pipeline < job < stage.
"""

from __future__ import annotations

import shlex
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import yaml

from quality_gate.errors import ValidationError
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.provisioner import (
    EnvironmentProvisioner,
    ToolRegistryError,
    ToolRequirement,
    load_tool_registry,
)
from quality_gate.pipeline.stage import Stage
from quality_gate.pipeline.topology import Job, Topology, isolated_jobs, sequential

if TYPE_CHECKING:
    from quality_gate.execution.executor import CommandExecutor

_ROOT_KEYS: Final[frozenset[str]] = frozenset({"pipeline", "tools", "stages", "jobs"})
_PIPELINE_KEYS: Final[frozenset[str]] = frozenset({"name", "topology", "env"})
_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "command",
        "commands",
        "cwd",
        "env",
        "depends_on",
        "allow_failure",
        "requires",
        "timeout_seconds",
        "success_exit_codes",
    }
)
_JOB_KEYS: Final[frozenset[str]] = frozenset({"name", "env", "cwd", "needs", "steps"})
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yml", ".yaml"})


class DefinitionError(ValueError):
    """A definition file could not be read or is malformed."""

    def __init__(self, message: str, *, source: Path | str | None = None) -> None:
        self.source = None if source is None else str(source)
        super().__init__(message if source is None else f"{source}: {message}")


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Parsed definition: the stage graph plus the tool registry it refers to."""

    name: str
    topology: Topology
    graph: PipelineGraph
    requirements: Mapping[str, ToolRequirement] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    source: Path | None = None
    skipped_steps: tuple[str, ...] = ()
    root: Path | None = None

    def provisioner(self, executor: CommandExecutor, **kwargs: Any) -> EnvironmentProvisioner:
        return EnvironmentProvisioner(executor, self.requirements.values(), **kwargs)


def load_definition(path: Path | str) -> PipelineDefinition:
    """Read and parse a TOML or YAML definition file."""

    source = Path(path).expanduser().resolve()
    if not source.is_file():
        raise DefinitionError("definition file not found", source=source)
    try:
        if source.suffix.lower() in _YAML_SUFFIXES:
            with source.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle)
        else:
            with source.open("rb") as handle:
                payload = tomllib.load(handle)
    except OSError as exc:
        raise DefinitionError(f"unable to read definition: {exc}", source=source) from exc
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise DefinitionError(f"invalid definition syntax: {exc}", source=source) from exc

    return parse_definition(payload, base_dir=source.parent, source=source)


def parse_definition(
    payload: object,
    *,
    base_dir: Path | None = None,
    source: Path | None = None,
) -> PipelineDefinition:
    """Build a :class:`PipelineDefinition` from an already parsed document."""

    try:
        return _parse(payload, base_dir=base_dir, source=source)
    except ValidationError:
        raise
    except DefinitionError as exc:
        if exc.source is None and source is not None:
            raise DefinitionError(str(exc), source=source) from exc
        raise
    except (ToolRegistryError, ValueError) as exc:
        raise DefinitionError(str(exc), source=source) from exc


def _parse(payload: object, *, base_dir: Path | None, source: Path | None) -> PipelineDefinition:
    root = _as_mapping(payload, "<root>")
    _reject_unknown(root, _ROOT_KEYS, "")

    pipeline = _as_mapping(root.get("pipeline", {}), "pipeline")
    _reject_unknown(pipeline, _PIPELINE_KEYS, "pipeline")
    default_name = source.stem if source is not None else "pipeline"
    name = _as_text(pipeline.get("name", default_name), "pipeline.name")
    env = _as_env(pipeline.get("env", {}), "pipeline.env")

    requirements = load_tool_registry(_as_mapping(root.get("tools", {}), "tools"))

    has_stages = "stages" in root
    has_jobs = "jobs" in root
    if has_stages and has_jobs:
        raise DefinitionError("use either [[stages]] or [[jobs]], not both", source=source)
    if not has_stages and not has_jobs:
        raise DefinitionError("definition declares no stages or jobs", source=source)

    default_topology = Topology.ISOLATED if has_jobs else Topology.GRAPH
    raw_topology = _as_text(pipeline.get("topology", default_topology.value), "pipeline.topology")
    try:
        topology = Topology(raw_topology)
    except ValueError:
        expected = ", ".join(item.value for item in Topology)
        raise DefinitionError(
            f"pipeline.topology: invalid value {raw_topology!r}; expected one of: {expected}",
            source=source,
        ) from None
    if has_jobs and topology is not Topology.ISOLATED:
        raise DefinitionError("[[jobs]] requires the isolated topology", source=source)
    if has_stages and topology is Topology.ISOLATED:
        raise DefinitionError("the isolated topology requires [[jobs]]", source=source)

    if has_jobs:
        jobs = [
            _parse_job(raw, f"jobs[{index}]", env=env, base_dir=base_dir)
            for index, raw in enumerate(_as_list(root["jobs"], "jobs"))
        ]
        graph = isolated_jobs(jobs)
    else:
        stages = [
            _parse_stage(raw, f"stages[{index}]", env=env, base_dir=base_dir)
            for index, raw in enumerate(_as_list(root["stages"], "stages"))
        ]
        if topology is Topology.SEQUENTIAL:
            declared = [stage.name for stage in stages if stage.depends_on]
            if declared:
                raise DefinitionError(
                    f"depends_on is implied by the sequential topology: {', '.join(declared)}",
                    source=source,
                )
            graph = sequential(stages)
        else:
            graph = PipelineGraph(stages)

    undefined = sorted(
        {
            f"{stage.name} -> {requirement}"
            for stage in graph
            for requirement in stage.requires
            if requirement not in requirements
        }
    )
    if undefined:
        raise DefinitionError(
            f"stages require undefined tools: {', '.join(undefined)}", source=source
        )

    return PipelineDefinition(
        name=name,
        topology=topology,
        graph=graph,
        requirements=requirements,
        env=env,
        source=source,
        root=base_dir,
    )


def _parse_stage(
    raw: object,
    path: str,
    *,
    env: Mapping[str, str],
    base_dir: Path | None,
    cwd: str | None = None,
    allow_depends_on: bool = True,
) -> Stage:
    table = _as_mapping(raw, path)
    allowed = _STAGE_KEYS if allow_depends_on else _STAGE_KEYS - {"depends_on"}
    _reject_unknown(table, allowed, path)

    raw_commands = _as_list(table.get("commands", []), f"{path}.commands")
    commands = [
        _as_command(item, f"{path}.commands[{index}]") for index, item in enumerate(raw_commands)
    ]
    if "command" in table:
        commands.insert(0, _as_command(table["command"], f"{path}.command"))
    if not commands:
        raise DefinitionError(f"{path}: needs command or commands")

    stage_env = dict(env)
    stage_env.update(_as_env(table.get("env", {}), f"{path}.env"))
    raw_cwd = table.get("cwd", cwd)
    working_directory = None
    if raw_cwd is not None:
        working_directory = _resolve_cwd(_as_text(raw_cwd, f"{path}.cwd"), base_dir)

    raw_codes = table.get("success_exit_codes", [0])
    return Stage(
        name=_as_text(table.get("name"), f"{path}.name"),
        command=commands[0],
        commands=tuple(commands[1:]),
        working_directory=working_directory,
        environment_overrides=stage_env,
        depends_on=frozenset(_as_names(table.get("depends_on", []), f"{path}.depends_on")),
        allow_failure=_as_bool(table.get("allow_failure", False), f"{path}.allow_failure"),
        requires=tuple(_as_names(table.get("requires", []), f"{path}.requires")),
        timeout_seconds=table.get("timeout_seconds"),
        success_exit_codes=tuple(_as_list(raw_codes, f"{path}.success_exit_codes")),
    )


def _parse_job(
    raw: object,
    path: str,
    *,
    env: Mapping[str, str],
    base_dir: Path | None,
) -> Job:
    table = _as_mapping(raw, path)
    _reject_unknown(table, _JOB_KEYS, path)
    job_env = dict(env)
    job_env.update(_as_env(table.get("env", {}), f"{path}.env"))
    job_cwd = table.get("cwd")
    steps = tuple(
        _parse_stage(
            step,
            f"{path}.steps[{index}]",
            env=job_env,
            base_dir=base_dir,
            cwd=None if job_cwd is None else _as_text(job_cwd, f"{path}.cwd"),
            allow_depends_on=False,
        )
        for index, step in enumerate(_as_list(table.get("steps", []), f"{path}.steps"))
    )
    return Job(
        name=_as_text(table.get("name"), f"{path}.name"),
        steps=steps,
        needs=tuple(_as_names(table.get("needs", []), f"{path}.needs")),
    )


def _resolve_cwd(raw: str, base_dir: Path | None) -> str:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute() and base_dir is not None:
        candidate = base_dir / candidate
    return str(candidate)


def _as_mapping(value: object, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise DefinitionError(f"{path}: expected a table, got {type(value).__name__}")
    return value


def _as_list(value: object, path: str) -> Sequence[Any]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise DefinitionError(f"{path}: expected a list, got {type(value).__name__}")
    return value


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise DefinitionError(f"{path}: expected a non-empty string")
    return value.strip()


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise DefinitionError(f"{path}: expected a boolean, got {type(value).__name__}")
    return value


def _as_names(value: object, path: str) -> list[str]:
    return [_as_text(item, f"{path}[{index}]") for index, item in enumerate(_as_list(value, path))]


def _as_command(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, str):
        argv = tuple(shlex.split(value))
    else:
        items = _as_list(value, path)
        argv = tuple(_as_text(item, f"{path}[{index}]") for index, item in enumerate(items))
    if not argv:
        raise DefinitionError(f"{path}: command must not be empty")
    return argv


def _as_env(value: object, path: str) -> dict[str, str]:
    table = _as_mapping(value, path)
    env: dict[str, str] = {}
    for key, item in table.items():
        if not isinstance(key, str) or not key or "=" in key:
            raise DefinitionError(f"{path}: invalid variable name {key!r}")
        if isinstance(item, bool):
            env[key] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            env[key] = str(item)
        else:
            raise DefinitionError(f"{path}.{key}: expected a scalar value")
    return env


def _reject_unknown(table: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(str(key) for key in table if key not in allowed)
    if unknown:
        prefix = f"{path}: " if path else ""
        raise DefinitionError(f"{prefix}unknown key(s) {', '.join(unknown)}")


__all__ = [
    "DefinitionError",
    "PipelineDefinition",
    "load_definition",
    "parse_definition",
]
