"""
Unit tests for hosted-CI workflow import.

The main fixture mirrors a typical Rust build-and-test workflow: four
independent jobs, checkout and upload actions, and a workflow-level env.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from quality_gate.pipeline.definition import DefinitionError
from quality_gate.pipeline.topology import Topology
from quality_gate.pipeline.workflow import load_workflow, parse_workflow

pytestmark = pytest.mark.unit

RUST_WORKFLOW = """
name: Rust_Build_And_Test

on:
  push:
    branches: [ "main" ]

env:
  CARGO_TERM_COLOR: always

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
    - uses: actions/checkout@v3
    - name: Build
      run: cargo build --verbose
    - name: Run tests
      run: cargo test --verbose

  coverage:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v3
      - name: Install cargo-llvm-cov
        run: cargo install cargo-llvm-cov
      - name: Generate code coverage
        run: cargo llvm-cov --all-features --workspace --lcov --output-path lcov.info
      - name: Upload coverage to Codecov
        uses: codecov/codecov-action@v3

  clippy:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v3
      - name: Run Clippy
        run: cargo clippy --all-features

  doc_tests:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v3
      - name: Run test --doc
        run: cargo test --doc .
"""


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    workflows = tmp_path / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "rust_build_and_test.yml").write_text(RUST_WORKFLOW, encoding="utf-8")
    return tmp_path


def test_rust_workflow_becomes_isolated_jobs(repo: Path) -> None:
    definition = load_workflow(repo / ".github" / "workflows" / "rust_build_and_test.yml")

    assert definition.name == "Rust_Build_And_Test"
    assert definition.topology is Topology.ISOLATED
    assert definition.env == {"CARGO_TERM_COLOR": "always"}
    assert definition.graph.ready_sets() == (
        (
            "build/build",
            "coverage/install-cargo-llvm-cov",
            "clippy/run-clippy",
            "doc_tests/run-test-doc",
        ),
        ("build/run-tests", "coverage/generate-code-coverage"),
    )


def test_run_steps_execute_through_bash_at_the_repository_root(repo: Path) -> None:
    definition = load_workflow(repo / ".github" / "workflows" / "rust_build_and_test.yml")

    build = definition.graph.stage("build/build")
    assert build.command == ("bash", "-e", "-c", "cargo build --verbose")
    assert build.working_directory == str(repo.resolve())
    assert build.environment_overrides == {"CARGO_TERM_COLOR": "always"}
    assert build.job == "build"


def test_uses_steps_are_recorded_as_skipped(repo: Path) -> None:
    definition = load_workflow(repo / ".github" / "workflows" / "rust_build_and_test.yml")

    assert definition.skipped_steps == (
        "build/step-1: actions/checkout@v3",
        "coverage/step-1: actions/checkout@v3",
        "coverage/upload-coverage-to-codecov: codecov/codecov-action@v3",
        "clippy/step-1: actions/checkout@v3",
        "doc_tests/step-1: actions/checkout@v3",
    )


def test_step_options_are_honoured() -> None:
    definition = parse_workflow(
        {
            "env": {"A": "workflow", "B": "workflow"},
            "jobs": {
                "lint": {
                    "env": {"B": "job"},
                    "timeout-minutes": 10,
                    "defaults": {"run": {"working-directory": "crate", "shell": "bash"}},
                    "steps": [
                        {
                            "id": "fmt",
                            "run": "cargo fmt --check",
                            "env": {"C": True},
                            "continue-on-error": True,
                        },
                        {
                            "name": "Docs",
                            "run": "cargo doc",
                            "shell": "sh",
                            "working-directory": "/abs",
                            "timeout-minutes": 1,
                        },
                        {"name": "Docs", "run": "cargo doc --no-deps"},
                    ],
                }
            },
        },
        base_dir=Path("/repo"),
    )

    fmt = definition.graph.stage("lint/fmt")
    assert fmt.command[:-1] == ("bash", "--noprofile", "--norc", "-eo", "pipefail", "-c")
    assert fmt.environment_overrides == {"A": "workflow", "B": "job", "C": "true"}
    assert fmt.working_directory == str(Path("/repo/crate"))
    assert fmt.allow_failure
    assert fmt.timeout_seconds == 600.0

    docs = definition.graph.stage("lint/docs")
    assert docs.command == ("sh", "-e", "-c", "cargo doc")
    assert docs.working_directory == "/abs"
    assert docs.timeout_seconds == 60.0

    assert "lint/docs-2" in definition.graph


def test_needs_on_dropped_jobs_are_removed() -> None:
    definition = parse_workflow(
        {
            "jobs": {
                "checkout-only": {"steps": [{"uses": "actions/checkout@v3"}]},
                "build": {"steps": [{"run": "cargo build"}]},
                "test": {"needs": ["build", "checkout-only"], "steps": [{"run": "cargo test"}]},
                "publish": {"needs": "test", "steps": [{"run": "cargo publish --dry-run"}]},
            }
        }
    )

    assert definition.graph.dependencies("test/step-1") == ("build/step-1",)
    assert definition.graph.dependencies("publish/step-1") == ("test/step-1",)
    assert "checkout-only/step-1" not in definition.graph
    assert definition.skipped_steps == ("checkout-only/step-1: actions/checkout@v3",)


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        (["not", "a", "mapping"], "top level"),
        ({"jobs": {}}, "non-empty mapping"),
        ({"jobs": {"a": {"steps": [{"uses": "x"}]}}}, "no job has a runnable"),
        ({"jobs": {"a": {"steps": "cargo build"}}}, r"jobs\.a\.steps: expected a list"),
        ({"jobs": {"a": {"steps": [{"run": ""}]}}}, "non-empty script"),
        ({"jobs": {"a": {"steps": [{"run": "x", "shell": "pwsh"}]}}}, "unsupported shell"),
        ({"jobs": {"a": {"timeout-minutes": 0, "steps": [{"run": "x"}]}}}, "positive number"),
        ({"jobs": {"a": {"steps": [{"run": "x", "env": {"K": ["v"]}}]}}}, "scalar"),
        ({"jobs": {"a": {"needs": {"b": 1}, "steps": [{"run": "x"}]}}}, "string or a list"),
    ],
)
def test_malformed_workflows(payload: object, message: str) -> None:
    with pytest.raises(DefinitionError, match=message):
        parse_workflow(payload)


def test_load_workflow_outside_github_uses_the_file_directory(tmp_path: Path) -> None:
    path = tmp_path / "ci.yml"
    path.write_text("jobs:\n  build:\n    steps:\n      - run: cargo build\n", encoding="utf-8")

    definition = load_workflow(path)

    assert definition.name == "ci"
    assert definition.graph.stage("build/step-1").working_directory == str(tmp_path.resolve())


def test_load_workflow_reports_yaml_errors(tmp_path: Path) -> None:
    path = tmp_path / "broken.yml"
    path.write_text("jobs: [unclosed\n", encoding="utf-8")

    with pytest.raises(DefinitionError, match="invalid workflow YAML"):
        load_workflow(path)
