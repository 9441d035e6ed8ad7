"""
Built-in pipeline presets.

``rust`` is the local quality gate for a cargo crate: provision the nightly
toolchain and cargo plugins, then build, format, lint, document, doc-test,
measure coverage and run mutation testing, one stage after another.
``rust-ci`` is the hosted variant: independent jobs for build, coverage, clippy
and doc tests, so one failing job does not hide the others.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Final

from quality_gate.pipeline.definition import DefinitionError, PipelineDefinition
from quality_gate.pipeline.provisioner import ToolRequirement
from quality_gate.pipeline.stage import Stage
from quality_gate.pipeline.topology import Job, Topology, isolated_jobs, sequential

RUST_ENV: Final[Mapping[str, str]] = MappingProxyType({"CARGO_TERM_COLOR": "always"})


def rust_requirements() -> dict[str, ToolRequirement]:
    requirements = (
        ToolRequirement(
            "nightly",
            check_command=("rustup", "run", "nightly", "rustc", "--version"),
            install_command=("rustup", "default", "nightly"),
        ),
        ToolRequirement(
            "llvm-tools",
            install_command=(
                "rustup",
                "toolchain",
                "install",
                "nightly",
                "--component",
                "llvm-tools-preview",
            ),
        ),
        ToolRequirement(
            "rustfmt",
            check_command=("cargo", "fmt", "--version"),
            install_command=("rustup", "component", "add", "rustfmt"),
        ),
        ToolRequirement(
            "clippy",
            check_command=("cargo", "clippy", "--version"),
            install_command=("rustup", "component", "add", "clippy"),
        ),
        ToolRequirement(
            "cargo-llvm-cov",
            check_command=("cargo", "llvm-cov", "--version"),
            install_command=("cargo", "install", "cargo-llvm-cov"),
        ),
        ToolRequirement(
            "cargo-mutants",
            check_command=("cargo", "mutants", "--version"),
            install_command=("cargo", "install", "cargo-mutants"),
        ),
    )
    return {requirement.component_name: requirement for requirement in requirements}


def rust_quality_gate(project_dir: Path | str = ".") -> PipelineDefinition:
    """Sequential local gate for the crate in ``project_dir``."""

    cwd = str(Path(project_dir).expanduser().resolve())
    env = dict(RUST_ENV)

    def stage(name: str, *argvs: tuple[str, ...], requires: tuple[str, ...] = ()) -> Stage:
        return Stage(
            name=name,
            command=argvs[0],
            commands=argvs[1:],
            working_directory=cwd,
            environment_overrides=env,
            requires=requires,
        )

    stages = [
        stage("build", ("cargo", "build"), requires=("nightly",)),
        stage("fmt", ("cargo", "fmt"), requires=("rustfmt",)),
        stage(
            "clippy",
            ("cargo", "clippy", "--all-targets", "--all-features", "--", "-D", "warnings"),
            requires=("clippy",),
        ),
        stage("docs", ("rustdoc", "src/lib.rs"), requires=("nightly",)),
        stage("doctest", ("cargo", "test", "--doc", "."), requires=("nightly",)),
        stage(
            "coverage",
            ("cargo", "llvm-cov", "--html"),
            ("cargo", "llvm-cov", "--no-run"),
            requires=("cargo-llvm-cov",),
        ),
        stage(
            "mutants",
            ("cargo", "mutants", "--", "--all-targets", "--all-features"),
            requires=("cargo-mutants",),
        ),
    ]
    return PipelineDefinition(
        name="rust-quality-gate",
        topology=Topology.SEQUENTIAL,
        graph=sequential(stages),
        requirements=rust_requirements(),
        env=env,
        root=Path(cwd),
    )


def rust_ci_workflow(project_dir: Path | str = ".") -> PipelineDefinition:
    """Hosted-CI shaped gate: one isolated job per concern."""

    cwd = str(Path(project_dir).expanduser().resolve())
    env = dict(RUST_ENV)

    def step(name: str, argv: tuple[str, ...], requires: tuple[str, ...] = ()) -> Stage:
        return Stage(
            name=name,
            command=argv,
            working_directory=cwd,
            environment_overrides=env,
            requires=requires,
        )

    jobs = [
        Job(
            "build",
            (
                step("build", ("cargo", "build", "--verbose")),
                step("test", ("cargo", "test", "--verbose")),
            ),
        ),
        Job(
            "coverage",
            (
                step(
                    "coverage",
                    (
                        "cargo",
                        "llvm-cov",
                        "--all-features",
                        "--workspace",
                        "--lcov",
                        "--output-path",
                        "lcov.info",
                    ),
                    requires=("llvm-tools", "cargo-llvm-cov"),
                ),
            ),
        ),
        Job(
            "clippy",
            (step("clippy", ("cargo", "clippy", "--all-features"), requires=("clippy",)),),
        ),
        Job(
            "doc_tests",
            (step("doctest", ("cargo", "test", "--doc", "."), requires=("nightly",)),),
        ),
    ]
    return PipelineDefinition(
        name="rust-ci",
        topology=Topology.ISOLATED,
        graph=isolated_jobs(jobs),
        requirements=rust_requirements(),
        env=env,
        root=Path(cwd),
    )


PresetFactory = Callable[[Path | str], PipelineDefinition]

PRESETS: Final[Mapping[str, PresetFactory]] = MappingProxyType(
    {
        "rust": rust_quality_gate,
        "rust-ci": rust_ci_workflow,
    }
)


def load_preset(name: str, project_dir: Path | str = ".") -> PipelineDefinition:
    factory = PRESETS.get(name)
    if factory is None:
        known = ", ".join(sorted(PRESETS))
        raise DefinitionError(f"unknown preset {name!r}; expected one of: {known}")
    return factory(project_dir)


__all__ = [
    "PRESETS",
    "RUST_ENV",
    "PresetFactory",
    "load_preset",
    "rust_ci_workflow",
    "rust_quality_gate",
    "rust_requirements",
]
