"""
Integration tests for the local subprocess executor.

These spawn real interpreter processes, so they exercise pipes, exit codes,
timeouts and process-tree termination end to end.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import psutil
import pytest

from quality_gate.errors import ExecutionTimeout, LaunchError
from quality_gate.execution.executor import CommandSpec, LocalSubprocessExecutor

pytestmark = pytest.mark.integration


def _python(code: str, **kwargs: object) -> CommandSpec:
    return CommandSpec(argv=(sys.executable, "-c", code), **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_captures_stdout_stderr_and_exit_code() -> None:
    executor = LocalSubprocessExecutor()

    result = await executor.run(
        _python(
            "import sys; print('compiled'); "
            "print('warning: unused', file=sys.stderr); sys.exit(3)"
        )
    )

    assert result.exit_code == 3
    assert result.stdout == "compiled\n"
    assert result.stderr == "warning: unused\n"
    assert not result.is_success()
    assert result.is_success((0, 3))
    assert result.duration_ms >= 0


@pytest.mark.asyncio
async def test_cwd_and_env_overrides_are_applied(tmp_path: Path) -> None:
    executor = LocalSubprocessExecutor()

    result = await executor.run(
        _python(
            "import os; print(os.getcwd()); print(os.environ['CARGO_TERM_COLOR'])",
            cwd=str(tmp_path),
            env={"CARGO_TERM_COLOR": "always"},
        )
    )

    cwd_line, color_line = result.stdout.splitlines()
    assert Path(cwd_line).resolve() == tmp_path.resolve()
    assert color_line == "always"


@pytest.mark.asyncio
async def test_non_inherited_environment_keeps_only_base_keys(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("QGATE_TEST_LEAK", "1")
    executor = LocalSubprocessExecutor(inherit_env=False)

    result = await executor.run(
        _python(
            "import os; "
            "print(os.environ.get('QGATE_TEST_LEAK', '-')); print(os.environ['EXTRA'])",
            env={"EXTRA": "yes"},
        )
    )

    assert result.stdout.splitlines() == ["-", "yes"]


@pytest.mark.asyncio
async def test_output_sink_receives_lines_as_they_arrive() -> None:
    seen: list[tuple[str, str]] = []
    executor = LocalSubprocessExecutor(output_sink=lambda stream, line: seen.append((stream, line)))

    await executor.run(_python("import sys; print('one'); print('two', file=sys.stderr)"))

    assert ("stdout", "one") in seen
    assert ("stderr", "two") in seen


@pytest.mark.asyncio
async def test_output_is_truncated() -> None:
    executor = LocalSubprocessExecutor(max_output_chars=10)

    result = await executor.run(_python("print('x' * 50)"))

    assert result.stdout.startswith("x" * 10)
    assert result.stdout.endswith("[truncated 41 chars]")


@pytest.mark.asyncio
async def test_missing_executable_is_a_launch_error() -> None:
    executor = LocalSubprocessExecutor()

    with pytest.raises(LaunchError) as excinfo:
        await executor.run(CommandSpec(argv=("qgate-definitely-not-installed",)))

    assert excinfo.value.argv == ("qgate-definitely-not-installed",)


@pytest.mark.asyncio
async def test_missing_working_directory_is_a_launch_error(tmp_path: Path) -> None:
    executor = LocalSubprocessExecutor()

    with pytest.raises(LaunchError, match="working directory does not exist"):
        await executor.run(_python("pass", cwd=str(tmp_path / "absent")))


@pytest.mark.asyncio
async def test_timeout_terminates_the_process_tree(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    code = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        f"open({str(pid_file)!r}, 'w').write(str(child.pid))\n"
        "print('started', flush=True)\n"
        "time.sleep(60)\n"
    )
    executor = LocalSubprocessExecutor()

    with pytest.raises(ExecutionTimeout) as excinfo:
        await executor.run(_python(code, timeout_seconds=3.0))

    assert excinfo.value.stdout == "started\n"
    child_pid = int(pid_file.read_text(encoding="utf-8"))
    assert not _is_running(child_pid)


@pytest.mark.asyncio
async def test_background_child_does_not_turn_a_clean_exit_into_a_timeout(
    tmp_path: Path,
) -> None:
    pid_file = tmp_path / "daemon.pid"
    code = (
        "import subprocess, sys\n"
        "daemon = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        f"open({str(pid_file)!r}, 'w').write(str(daemon.pid))\n"
        "print('done', flush=True)\n"
    )
    executor = LocalSubprocessExecutor()

    result = await executor.run(_python(code, timeout_seconds=10.0))

    assert result.exit_code == 0
    assert result.stdout == "done\n"
    assert result.duration_ms < 10_000
    daemon_pid = int(pid_file.read_text(encoding="utf-8"))
    assert not _is_running(daemon_pid)


@pytest.mark.asyncio
async def test_cancellation_terminates_the_process() -> None:
    started: list[str] = []
    executor = LocalSubprocessExecutor(output_sink=lambda _stream, line: started.append(line))

    task = asyncio.create_task(
        executor.run(_python("import os, time; print(os.getpid(), flush=True); time.sleep(60)"))
    )
    for _ in range(200):
        if started:
            break
        await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert started
    assert not _is_running(int(started[0]))


def test_spec_validation() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        CommandSpec(argv=())
    with pytest.raises(ValueError, match="invalid variable name"):
        CommandSpec(argv=("true",), env={"A=B": "1"})
    with pytest.raises(ValueError, match="timeout_seconds"):
        CommandSpec(argv=("true",), timeout_seconds=0)


def _is_running(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
