"""
CLI subprocess contracts for ``python -m quality_gate``.

Each test runs the real entrypoint in a scratch project and checks the exit
code contract (0 ok, 1 failed, 2 validation, 3 config/definition), the
rendered summary and the JSON run report written to disk.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
PYTHON = json.dumps(sys.executable)


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("QGATE_")}
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    env["NO_COLOR"] = "1"
    return subprocess.run(
        [sys.executable, "-m", "quality_gate", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
        timeout=120,
    )


def _write(path: Path, contents: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents.strip() + "\n", encoding="utf-8")
    return path


def _stage(name: str, code: str, extra: str = "") -> str:
    return (
        f"[[stages]]\n"
        f'name = "{name}"\n'
        f"command = [{PYTHON}, \"-c\", {json.dumps(code)}]\n"
        f"{extra}\n"
    )


def _pipeline(tmp_path: Path, *stages: str, topology: str = "sequential") -> Path:
    header = f'[pipeline]\nname = "demo"\ntopology = "{topology}"\n\n'
    return _write(tmp_path / "pipeline.toml", header + "\n".join(stages))


def _report(tmp_path: Path) -> dict[str, object]:
    return json.loads((tmp_path / ".qgate" / "report.json").read_text(encoding="utf-8"))


def test_run_passing_pipeline_writes_report_and_log(tmp_path: Path) -> None:
    _pipeline(
        tmp_path,
        _stage("build", "print('Compiling demo')"),
        _stage("test", "print('test result: ok')"),
    )

    completed = _run_cli(tmp_path, "run")

    assert completed.returncode == 0, completed.stderr
    assert "Verdict: success" in completed.stdout
    report = _report(tmp_path)
    assert report["verdict"] == "success"
    assert report["state"] == "completed"
    results = report["results"]
    assert isinstance(results, list)
    assert [item["stage"] for item in results] == ["build", "test"]
    assert results[0]["stdout"] == "Compiling demo\n"
    logs = list((tmp_path / ".qgate" / "logs").glob("*/run.jsonl"))
    assert len(logs) == 1
    events = [json.loads(line)["message"] for line in logs[0].read_text().splitlines()]
    assert "stage_finished" in events


def test_run_failing_stage_halts_with_exit_one(tmp_path: Path) -> None:
    _pipeline(
        tmp_path,
        _stage("build", "pass"),
        _stage("clippy", "import sys; sys.exit(101)"),
        _stage("test", "pass"),
    )

    completed = _run_cli(tmp_path, "run")

    assert completed.returncode == 1
    assert "Verdict: failure" in completed.stdout
    assert "Halt reason: stage 'clippy' failed" in completed.stdout
    report = _report(tmp_path)
    statuses = {item["stage"]: item["status"] for item in report["results"]}  # type: ignore[union-attr]
    assert statuses == {"build": "succeeded", "clippy": "failed", "test": "skipped"}


def test_allowed_failure_is_partial_unless_strict(tmp_path: Path) -> None:
    _pipeline(
        tmp_path,
        _stage("build", "pass"),
        _stage("docs", "import sys; sys.exit(1)", "allow_failure = true"),
    )

    lenient = _run_cli(tmp_path, "run")
    strict = _run_cli(tmp_path, "run", "--strict")

    assert lenient.returncode == 0
    assert "Verdict: partial_failure" in lenient.stdout
    assert strict.returncode == 1


def test_json_output_and_custom_report_path(tmp_path: Path) -> None:
    _pipeline(tmp_path, _stage("build", "print('hidden from json')"))

    completed = _run_cli(tmp_path, "run", "--json", "--report", "out/run.json")

    assert completed.returncode == 0
    payload = json.loads(completed.stdout)
    assert payload["verdict"] == "success"
    assert "stdout" not in payload["results"][0]
    assert (tmp_path / "out" / "run.json").is_file()


def test_cycle_is_a_validation_error(tmp_path: Path) -> None:
    _pipeline(
        tmp_path,
        _stage("a", "pass", 'depends_on = ["b"]'),
        _stage("b", "pass", 'depends_on = ["a"]'),
        topology="graph",
    )

    completed = _run_cli(tmp_path, "run")

    assert completed.returncode == 2
    assert "cycle" in completed.stderr
    assert not (tmp_path / ".qgate" / "report.json").exists()


def test_unknown_only_stage_is_a_validation_error(tmp_path: Path) -> None:
    _pipeline(tmp_path, _stage("build", "pass"))

    completed = _run_cli(tmp_path, "run", "--only", "deploy")

    assert completed.returncode == 2
    assert "deploy" in completed.stderr


def test_malformed_definition_is_a_definition_error(tmp_path: Path) -> None:
    _write(tmp_path / "pipeline.toml", '[[stages]]\nname = "build"\n')

    completed = _run_cli(tmp_path, "validate")

    assert completed.returncode == 3
    assert "needs command or commands" in completed.stderr


def test_invalid_config_is_a_config_error(tmp_path: Path) -> None:
    _pipeline(tmp_path, _stage("build", "pass"))
    _write(tmp_path / "qgate.toml", "[runner]\nmax_concurrency = 0\n")

    completed = _run_cli(tmp_path, "run")

    assert completed.returncode == 3
    assert "runner.max_concurrency" in completed.stderr


def test_validate_lists_ready_sets(tmp_path: Path) -> None:
    _pipeline(tmp_path, _stage("build", "pass"), _stage("test", "pass"))

    completed = _run_cli(tmp_path, "validate")

    assert completed.returncode == 0
    assert "1. build" in completed.stdout
    assert "2. test" in completed.stdout
    assert "definition is valid" in completed.stdout


def test_plan_rust_preset(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "plan", "--preset", "rust", "--project-dir", str(tmp_path))

    assert completed.returncode == 0
    assert "Pipeline: rust-quality-gate" in completed.stdout
    assert "7. mutants" in completed.stdout


def test_containerfile_for_rust_ci_preset(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "containerfile", "--preset", "rust-ci")

    assert completed.returncode == 0
    lines = completed.stdout.splitlines()
    assert lines[0] == "FROM rust:latest"
    assert "# clippy/clippy" in lines
    assert any(line.startswith("RUN ") and "cargo clippy --all-features" in line for line in lines)


def test_import_workflow_lists_skipped_steps(tmp_path: Path) -> None:
    _write(
        tmp_path / ".github" / "workflows" / "ci.yml",
        """
name: CI
jobs:
  build:
    steps:
      - uses: actions/checkout@v3
      - name: Build
        run: cargo build --verbose
""",
    )

    completed = _run_cli(tmp_path, "import-workflow", ".github/workflows/ci.yml")

    assert completed.returncode == 0
    assert "Pipeline: CI" in completed.stdout
    assert "build/step-1: actions/checkout@v3" in completed.stdout


def test_config_dumps_the_effective_profile(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "config", "--profile", "ci")

    assert completed.returncode == 0
    first_line, _, dumped = completed.stdout.partition("\n")
    assert first_line == "Active profile: ci"
    assert json.loads(dumped)["runner"]["max_concurrency"] == 1


def test_missing_subcommand_is_a_usage_error(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path)

    assert completed.returncode == 2
