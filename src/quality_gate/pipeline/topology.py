"""
Topology builders.

A local bootstrap script and a hosted CI workflow are two shapes of the same
graph: :func:`sequential` chains every stage onto the previous one, and
:func:`isolated_jobs` chains steps within each job while keeping jobs
independent of each other (unless a job lists ``needs``).
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from quality_gate.errors import UnknownDependencyError, ValidationError
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.stage import Stage

JOB_SEPARATOR: Final[str] = "/"


class Topology(StrEnum):
    """How stage edges are derived for a definition."""

    GRAPH = "graph"
    SEQUENTIAL = "sequential"
    ISOLATED = "isolated"


@dataclass(frozen=True, slots=True)
class Job:
    """A named chain of steps that runs independently of other jobs."""

    name: str
    steps: tuple[Stage, ...]
    needs: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name or JOB_SEPARATOR in self.name:
            raise ValueError(f"Job.name must be non-empty and must not contain {JOB_SEPARATOR!r}")
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ValueError(f"Job[{self.name}] must have at least one step")
        object.__setattr__(self, "needs", tuple(self.needs))


def sequential(stages: Iterable[Stage]) -> PipelineGraph:
    """Chain ``stages`` in order: each depends on exactly the one before it."""
    chained: list[Stage] = []
    previous: Stage | None = None
    for stage in stages:
        depends_on = frozenset() if previous is None else frozenset({previous.name})
        current = dataclasses.replace(stage, depends_on=depends_on)
        chained.append(current)
        previous = current
    return PipelineGraph(chained).validate()


def isolated_jobs(jobs: Sequence[Job]) -> PipelineGraph:
    """One chain per job, stage names qualified as ``job/step``."""
    last_stage: dict[str, str] = {}
    stages: list[Stage] = []
    known_jobs = {job.name for job in jobs}

    for job in jobs:
        unknown = [(job.name, name) for name in job.needs if name not in known_jobs]
        if unknown:
            raise UnknownDependencyError(unknown)

    for job in _jobs_in_dependency_order(jobs):
        previous: str | None = None
        for step in job.steps:
            name = qualify(job.name, step.name)
            if previous is None:
                depends_on = frozenset(last_stage[need] for need in job.needs)
            else:
                depends_on = frozenset({previous})
            stages.append(dataclasses.replace(step, name=name, depends_on=depends_on, job=job.name))
            previous = name
        assert previous is not None
        last_stage[job.name] = previous

    # Keep declaration order for deterministic ready sets.
    order = {job.name: index for index, job in enumerate(jobs)}
    stages.sort(key=lambda stage: order[stage.job or ""])
    return PipelineGraph(stages).validate()


def qualify(job_name: str, step_name: str) -> str:
    return f"{job_name}{JOB_SEPARATOR}{step_name}"


def _jobs_in_dependency_order(jobs: Sequence[Job]) -> list[Job]:
    by_name = {job.name: job for job in jobs}
    ordered: list[Job] = []
    placed: set[str] = set()
    visiting: set[str] = set()

    def place(job: Job) -> None:
        if job.name in placed:
            return
        if job.name in visiting:
            raise ValidationError(f"job {job.name!r} is part of a needs cycle")
        visiting.add(job.name)
        for need in job.needs:
            place(by_name[need])
        visiting.discard(job.name)
        placed.add(job.name)
        ordered.append(job)

    for job in jobs:
        place(job)
    return ordered


__all__ = ["JOB_SEPARATOR", "Job", "Topology", "isolated_jobs", "qualify", "sequential"]
