"""Render a pipeline graph as a container build file.

Each stage becomes one ``RUN`` layer in topological order, so the image build
stops at the first failing stage. A container build has no partial-failure
tolerance: ``allow_failure`` stages are rendered as ordinary layers.

Tool requirements are rendered as ``check || (install && check)`` layers just
before the first stage that needs them. Stage working directories are
rewritten from the host project root to the image ``WORKDIR``.
"""

from __future__ import annotations

import json
import logging
import shlex
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Final

from quality_gate.pipeline.definition import DefinitionError
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.provisioner import ToolRequirement
from quality_gate.pipeline.stage import Stage

DEFAULT_BASE_IMAGE: Final[str] = "rust:latest"
DEFAULT_WORKDIR: Final[str] = "/workspace"

logger = logging.getLogger(__name__)


def render_containerfile(
    graph: PipelineGraph,
    *,
    base_image: str = DEFAULT_BASE_IMAGE,
    workdir: str = DEFAULT_WORKDIR,
    env: Mapping[str, str] | None = None,
    requirements: Mapping[str, ToolRequirement] | None = None,
    project_root: Path | str | None = None,
) -> str:
    """Return the container build file text for ``graph``.

    ``project_root`` is the host directory copied into ``workdir``; absolute
    stage directories must live under it. Without ``requirements`` no tool
    layers are emitted.
    """

    graph.validate()
    base_env = dict(env or {})
    root = Path(project_root).expanduser().resolve() if project_root is not None else None
    lines = [f"FROM {base_image}", f"WORKDIR {workdir}", "COPY . ."]
    for key, value in sorted(base_env.items()):
        lines.append(f"ENV {key}={json.dumps(value)}")

    provisioned: set[str] = set()
    for ready_set in graph.topological_order():
        for stage in ready_set:
            if requirements is not None:
                for name in stage.requires:
                    if name in provisioned:
                        continue
                    requirement = requirements.get(name)
                    if requirement is None:
                        raise DefinitionError(
                            f"stage {stage.name!r} requires undefined tool {name!r}"
                        )
                    provisioned.add(name)
                    lines.append("")
                    lines.append(f"# tool: {name}")
                    lines.append(f"RUN {_provision_line(requirement)}")

            if stage.allow_failure:
                logger.warning(
                    "stage %s allows failure locally but fails the container build", stage.name
                )
            lines.append("")
            lines.append(f"# {stage.name}")
            cwd = _image_cwd(stage, root, workdir)
            lines.append(f"RUN {_run_line(stage, base_env, cwd)}")
    return "\n".join(lines) + "\n"


def _provision_line(requirement: ToolRequirement) -> str:
    check = requirement.check_command
    install = requirement.install_command
    if check is None:
        assert install is not None
        return shlex.join(install)
    if install is None:
        return shlex.join(check)
    return f"{shlex.join(check)} || ( {shlex.join(install)} && {shlex.join(check)} )"


def _image_cwd(stage: Stage, root: Path | None, workdir: str) -> str | None:
    raw = stage.working_directory
    if raw is None:
        return None
    path = Path(raw)
    if not path.is_absolute():
        relative = PurePosixPath(path.as_posix())
    elif root is None:
        raise DefinitionError(
            f"stage {stage.name!r}: absolute working directory {raw} needs a project root"
        )
    else:
        try:
            relative = PurePosixPath(path.resolve().relative_to(root).as_posix())
        except ValueError:
            raise DefinitionError(
                f"stage {stage.name!r}: working directory {raw} is outside {root}"
            ) from None
    if relative == PurePosixPath("."):
        return None
    return str(PurePosixPath(workdir) / relative)


def _run_line(stage: Stage, base_env: Mapping[str, str], cwd: str | None) -> str:
    script = " && ".join(shlex.join(argv) for argv in stage.argvs)
    overrides = {
        key: value
        for key, value in stage.environment_overrides.items()
        if base_env.get(key) != value
    }
    if overrides:
        assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in overrides.items())
        script = f"export {assignments} && {script}"
    if cwd is not None:
        script = f"cd {shlex.quote(cwd)} && {script}"
    if len(stage.argvs) > 1 or overrides or cwd is not None:
        script = f"( {script} )"
    return script


__all__ = ["DEFAULT_BASE_IMAGE", "DEFAULT_WORKDIR", "render_containerfile"]
