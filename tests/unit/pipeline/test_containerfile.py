"""Unit tests for container build file rendering."""

from __future__ import annotations

from pathlib import Path

import pytest

from quality_gate.errors import CyclicDependencyError
from quality_gate.pipeline.containerfile import render_containerfile
from quality_gate.pipeline.definition import DefinitionError
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.presets import rust_quality_gate
from quality_gate.pipeline.provisioner import ToolRequirement
from quality_gate.pipeline.stage import Stage
from quality_gate.pipeline.topology import sequential

pytestmark = pytest.mark.unit


def test_header_and_one_run_layer_per_stage() -> None:
    graph = sequential(
        [
            Stage(name="build", command=("cargo", "build")),
            Stage(name="clippy", command=("cargo", "clippy", "--", "-D", "warnings")),
        ]
    )

    text = render_containerfile(graph, base_image="rust:1.79", env={"CARGO_TERM_COLOR": "always"})

    assert text == (
        "FROM rust:1.79\n"
        "WORKDIR /workspace\n"
        "COPY . .\n"
        'ENV CARGO_TERM_COLOR="always"\n'
        "\n"
        "# build\n"
        "RUN cargo build\n"
        "\n"
        "# clippy\n"
        "RUN cargo clippy -- -D warnings\n"
    )


def test_working_directory_is_mapped_under_the_image_workdir(tmp_path: Path) -> None:
    stage = Stage(
        name="coverage",
        command=("cargo", "llvm-cov", "--html"),
        commands=(("cargo", "llvm-cov", "--no-run"),),
        working_directory=str(tmp_path / "my crate"),
        environment_overrides={"CARGO_TERM_COLOR": "always", "RUSTFLAGS": "-C debuginfo=2"},
    )

    text = render_containerfile(
        PipelineGraph([stage]), env={"CARGO_TERM_COLOR": "always"}, project_root=tmp_path
    )

    assert str(tmp_path) not in text
    assert text.splitlines()[-1] == (
        "RUN ( cd '/workspace/my crate' && export RUSTFLAGS='-C debuginfo=2' && "
        "cargo llvm-cov --html && cargo llvm-cov --no-run )"
    )


def test_project_root_working_directory_needs_no_cd(tmp_path: Path) -> None:
    stage = Stage(name="build", command=("cargo", "build"), working_directory=str(tmp_path))

    text = render_containerfile(PipelineGraph([stage]), project_root=tmp_path)

    assert text.splitlines()[-1] == "RUN cargo build"


def test_relative_working_directory_is_joined_to_the_workdir() -> None:
    stage = Stage(name="docs", command=("cargo", "doc"), working_directory="crates/core")

    text = render_containerfile(PipelineGraph([stage]), workdir="/src")

    assert text.splitlines()[-1] == "RUN ( cd /src/crates/core && cargo doc )"


def test_working_directory_outside_the_project_root_is_rejected(tmp_path: Path) -> None:
    project = tmp_path / "project"
    stage = Stage(name="build", command=("cargo", "build"), working_directory=str(tmp_path))

    with pytest.raises(DefinitionError, match="outside"):
        render_containerfile(PipelineGraph([stage]), project_root=project)
    with pytest.raises(DefinitionError, match="needs a project root"):
        render_containerfile(PipelineGraph([stage]))


def test_allow_failure_stage_fails_the_image_build() -> None:
    graph = PipelineGraph([Stage(name="mutants", command=("cargo", "mutants"), allow_failure=True)])

    text = render_containerfile(graph, workdir="/src")

    assert "WORKDIR /src\n" in text
    assert text.splitlines()[-1] == "RUN cargo mutants"
    assert "|| true" not in text


def test_tool_layers_precede_their_first_use() -> None:
    requirements = {
        "clippy": ToolRequirement(
            "clippy",
            check_command=("cargo", "clippy", "--version"),
            install_command=("rustup", "component", "add", "clippy"),
        ),
        "llvm-tools": ToolRequirement(
            "llvm-tools", install_command=("rustup", "component", "add", "llvm-tools-preview")
        ),
    }
    graph = sequential(
        [
            Stage(name="build", command=("cargo", "build")),
            Stage(name="clippy", command=("cargo", "clippy"), requires=("clippy",)),
            Stage(name="lint-again", command=("cargo", "clippy"), requires=("clippy",)),
            Stage(name="coverage", command=("cargo", "llvm-cov"), requires=("llvm-tools",)),
        ]
    )

    lines = [
        line
        for line in render_containerfile(graph, requirements=requirements).splitlines()
        if line.startswith("RUN ")
    ]

    assert lines == [
        "RUN cargo build",
        "RUN cargo clippy --version || ( rustup component add clippy && cargo clippy --version )",
        "RUN cargo clippy",
        "RUN cargo clippy",
        "RUN rustup component add llvm-tools-preview",
        "RUN cargo llvm-cov",
    ]


def test_undefined_tool_is_rejected() -> None:
    graph = PipelineGraph([Stage(name="fmt", command=("cargo", "fmt"), requires=("rustfmt",))])

    with pytest.raises(DefinitionError, match="undefined tool 'rustfmt'"):
        render_containerfile(graph, requirements={})


def test_rust_preset_renders_a_buildable_file(tmp_path: Path) -> None:
    definition = rust_quality_gate(tmp_path / "rusted_dice")

    text = render_containerfile(
        definition.graph,
        env=definition.env,
        requirements=definition.requirements,
        project_root=definition.root,
    )

    assert str(tmp_path) not in text
    lines = text.splitlines()
    tool_comments = [line for line in lines if line.startswith("# tool: ")]
    assert tool_comments == [
        "# tool: nightly",
        "# tool: rustfmt",
        "# tool: clippy",
        "# tool: cargo-llvm-cov",
        "# tool: cargo-mutants",
    ]
    assert lines.index("# tool: cargo-mutants") < lines.index("# mutants")
    assert "RUN cargo install cargo-mutants" not in lines
    assert (
        "RUN cargo mutants --version || ( cargo install cargo-mutants && cargo mutants --version )"
        in lines
    )
    assert "RUN cargo build" in lines


def test_invalid_graph_is_rejected() -> None:
    graph = PipelineGraph(
        [
            Stage(name="a", command=("true",), depends_on=frozenset({"b"})),
            Stage(name="b", command=("true",), depends_on=frozenset({"a"})),
        ]
    )

    with pytest.raises(CyclicDependencyError):
        render_containerfile(graph)
