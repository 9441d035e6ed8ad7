"""
Hosted-CI workflow import.

Reads a GitHub Actions style workflow (``jobs.<id>.steps[*].run``) and turns it
into an isolated-topology definition: one chain of stages per job, ``needs``
honoured, workflow < job < step ``env`` merged. ``uses:`` steps (checkout,
upload actions) have no local equivalent and are recorded as skipped.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml

from quality_gate.errors import ValidationError
from quality_gate.pipeline.definition import DefinitionError, PipelineDefinition
from quality_gate.pipeline.stage import Stage
from quality_gate.pipeline.topology import Job, Topology, isolated_jobs, qualify

_SHELLS: Final[Mapping[str, tuple[str, ...]]] = {
    "": ("bash", "-e", "-c"),
    "bash": ("bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"),
    "sh": ("sh", "-e", "-c"),
}
_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9._]+")


def load_workflow(path: Path | str) -> PipelineDefinition:
    """Load a workflow YAML file as an isolated-jobs definition."""

    source = Path(path).expanduser().resolve()
    if not source.is_file():
        raise DefinitionError("workflow file not found", source=source)
    try:
        with source.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise DefinitionError(f"unable to read workflow: {exc}", source=source) from exc
    except yaml.YAMLError as exc:
        raise DefinitionError(f"invalid workflow YAML: {exc}", source=source) from exc

    try:
        return parse_workflow(payload, base_dir=_workspace_root(source), source=source)
    except ValidationError:
        raise
    except DefinitionError as exc:
        if exc.source is None:
            raise DefinitionError(str(exc), source=source) from exc
        raise
    except ValueError as exc:
        raise DefinitionError(str(exc), source=source) from exc


def parse_workflow(
    payload: object,
    *,
    base_dir: Path | None = None,
    source: Path | None = None,
) -> PipelineDefinition:
    if not isinstance(payload, Mapping):
        raise DefinitionError("workflow: expected a mapping at the top level")
    raw_jobs = payload.get("jobs")
    if not isinstance(raw_jobs, Mapping) or not raw_jobs:
        raise DefinitionError("workflow: 'jobs' must be a non-empty mapping")

    workflow_env = _env(payload.get("env"), "env")
    default_name = source.stem if source is not None else "workflow"
    name = str(payload.get("name") or default_name)

    jobs: list[Job] = []
    skipped: list[str] = []
    for job_id, raw_job in raw_jobs.items():
        job = _job(str(job_id), raw_job, workflow_env, base_dir=base_dir, skipped=skipped)
        if job is not None:
            jobs.append(job)

    if not jobs:
        raise DefinitionError("workflow: no job has a runnable 'run' step")

    # Jobs with nothing runnable locally are dropped, so are references to them.
    kept = {job.name for job in jobs}
    declared = {str(job_id) for job_id in raw_jobs}
    jobs = [
        Job(
            name=job.name,
            steps=job.steps,
            needs=tuple(need for need in job.needs if need in kept or need not in declared),
        )
        for job in jobs
    ]

    return PipelineDefinition(
        name=name,
        topology=Topology.ISOLATED,
        graph=isolated_jobs(jobs),
        env=workflow_env,
        source=source,
        skipped_steps=tuple(skipped),
        root=base_dir,
    )


def _job(
    job_id: str,
    raw: object,
    workflow_env: Mapping[str, str],
    *,
    base_dir: Path | None,
    skipped: list[str],
) -> Job | None:
    path = f"jobs.{job_id}"
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"{path}: expected a mapping")

    env = dict(workflow_env)
    env.update(_env(raw.get("env"), f"{path}.env"))
    defaults = raw.get("defaults") or {}
    run_defaults = defaults.get("run", {}) if isinstance(defaults, Mapping) else {}
    job_cwd = run_defaults.get("working-directory")
    job_shell = run_defaults.get("shell")
    timeout = _timeout(raw.get("timeout-minutes"), f"{path}.timeout-minutes")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list):
        raise DefinitionError(f"{path}.steps: expected a list")

    steps: list[Stage] = []
    used: set[str] = set()
    for index, raw_step in enumerate(raw_steps, start=1):
        step_path = f"{path}.steps[{index - 1}]"
        if not isinstance(raw_step, Mapping):
            raise DefinitionError(f"{step_path}: expected a mapping")
        step_name = _unique(_step_name(raw_step, index), used)
        if "run" not in raw_step:
            label = raw_step.get("uses", "step without run")
            skipped.append(f"{qualify(job_id, step_name)}: {label}")
            continue

        script = raw_step["run"]
        if not isinstance(script, str) or not script.strip():
            raise DefinitionError(f"{step_path}.run: expected a non-empty script")
        step_env = dict(env)
        step_env.update(_env(raw_step.get("env"), f"{step_path}.env"))
        cwd = raw_step.get("working-directory", job_cwd)
        shell = raw_step.get("shell", job_shell) or ""
        if shell not in _SHELLS:
            raise DefinitionError(f"{step_path}.shell: unsupported shell {shell!r}")
        step_timeout = _timeout(raw_step.get("timeout-minutes"), f"{step_path}.timeout-minutes")

        steps.append(
            Stage(
                name=step_name,
                command=(*_SHELLS[shell], script),
                working_directory=_cwd(cwd, base_dir),
                environment_overrides=step_env,
                allow_failure=bool(raw_step.get("continue-on-error", False)),
                timeout_seconds=step_timeout if step_timeout is not None else timeout,
            )
        )

    if not steps:
        return None

    needs = raw.get("needs", [])
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list):
        raise DefinitionError(f"{path}.needs: expected a string or a list")
    return Job(name=job_id, steps=tuple(steps), needs=tuple(str(need) for need in needs))


def _step_name(raw_step: Mapping[str, Any], index: int) -> str:
    label = raw_step.get("id") or raw_step.get("name")
    if isinstance(label, str):
        slug = _NAME_UNSAFE.sub("-", label.strip().lower()).strip("-")
        if slug:
            return slug
    return f"step-{index}"


def _unique(name: str, used: set[str]) -> str:
    candidate = name
    suffix = 2
    while candidate in used:
        candidate = f"{name}-{suffix}"
        suffix += 1
    used.add(candidate)
    return candidate


def _env(value: object, path: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DefinitionError(f"{path}: expected a mapping")
    env: dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            env[str(key)] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            env[str(key)] = str(item)
        else:
            raise DefinitionError(f"{path}.{key}: expected a scalar value")
    return env


def _timeout(value: object, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise DefinitionError(f"{path}: expected a positive number of minutes")
    return float(value) * 60.0


def _cwd(value: object, base_dir: Path | None) -> str | None:
    if value is None:
        return None if base_dir is None else str(base_dir)
    if not isinstance(value, str) or not value.strip():
        raise DefinitionError("working-directory: expected a non-empty string")
    candidate = Path(value).expanduser()
    if not candidate.is_absolute() and base_dir is not None:
        candidate = base_dir / candidate
    return str(candidate)


def _workspace_root(source: Path) -> Path:
    # Hosted runners start every step at the repository root.
    parent = source.parent
    if parent.name == "workflows" and parent.parent.name == ".github":
        return parent.parent.parent
    return parent


__all__ = ["load_workflow", "parse_workflow"]
