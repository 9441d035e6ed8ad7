"""
Unit tests for tool provisioning.

``ensure`` must be idempotent, concurrent callers must share one attempt, and
failed outcomes are cached just like successes.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from quality_gate.errors import ProvisioningError
from quality_gate.pipeline.provisioner import (
    EnvironmentProvisioner,
    ToolRegistryError,
    ToolRequirement,
    load_tool_registry,
)

pytestmark = pytest.mark.unit

CLIPPY = ToolRequirement(
    "clippy",
    check_command=("cargo", "clippy", "--version"),
    install_command=("rustup", "component", "add", "clippy"),
)


@pytest.mark.asyncio
async def test_satisfied_check_skips_install(make_executor: Any) -> None:
    executor = make_executor()
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    await provisioner.ensure(CLIPPY)
    await provisioner.ensure(CLIPPY)

    assert executor.commands == ["cargo clippy --version"]
    assert provisioner.is_satisfied("clippy")
    assert provisioner.install_calls == {}


@pytest.mark.asyncio
async def test_failed_check_installs_then_rechecks(make_executor: Any, scripted: Any) -> None:
    executor = make_executor({"cargo clippy --version": scripted(exit_code=101)})
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    with pytest.raises(ProvisioningError, match="still fails after install"):
        await provisioner.ensure(CLIPPY)

    assert provisioner.check_calls == {"clippy": 2}
    assert provisioner.install_calls == {"clippy": 1}


@pytest.mark.asyncio
async def test_failure_is_cached(make_executor: Any, scripted: Any) -> None:
    executor = make_executor(
        {
            "cargo clippy --version": scripted(exit_code=1),
            "rustup component add clippy": scripted(exit_code=1, stderr="offline"),
        }
    )
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    for _ in range(3):
        with pytest.raises(ProvisioningError, match="offline"):
            await provisioner.ensure(CLIPPY)

    assert provisioner.install_calls == {"clippy": 1}
    assert not provisioner.is_satisfied("clippy")


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_attempt(make_executor: Any, scripted: Any) -> None:
    executor = make_executor({"cargo clippy --version": scripted(delay=0.05)})
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    await asyncio.gather(*(provisioner.ensure(CLIPPY) for _ in range(8)))

    assert executor.commands == ["cargo clippy --version"]
    assert provisioner.check_calls == {"clippy": 1}


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_attempt(
    make_executor: Any, scripted: Any
) -> None:
    executor = make_executor({"cargo clippy --version": scripted(delay=0.05)})
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    first = asyncio.create_task(provisioner.ensure(CLIPPY))
    second = asyncio.create_task(provisioner.ensure(CLIPPY))
    await asyncio.sleep(0.01)
    first.cancel()

    await second
    with pytest.raises(asyncio.CancelledError):
        await first
    assert provisioner.is_satisfied("clippy")
    assert executor.cancelled == []


@pytest.mark.asyncio
async def test_cancel_pending_stops_in_flight_attempts(make_executor: Any, scripted: Any) -> None:
    executor = make_executor({"cargo clippy --version": scripted(delay=5.0)})
    provisioner = EnvironmentProvisioner(executor, [CLIPPY])

    waiter = asyncio.create_task(provisioner.ensure(CLIPPY))
    await asyncio.sleep(0.01)
    await provisioner.cancel_pending()

    assert executor.cancelled == ["cargo clippy --version"]
    assert not provisioner.is_satisfied("clippy")
    with pytest.raises(asyncio.CancelledError):
        await waiter


@pytest.mark.asyncio
async def test_install_only_requirement_runs_install_once(make_executor: Any) -> None:
    executor = make_executor()
    nightly = ToolRequirement("llvm-tools", install_command=("rustup", "toolchain", "install"))
    provisioner = EnvironmentProvisioner(executor, [nightly])

    await provisioner.ensure_all(["llvm-tools", "llvm-tools"])

    assert executor.commands == ["rustup toolchain install"]


@pytest.mark.asyncio
async def test_check_only_requirement_fails_without_install(
    make_executor: Any, scripted: Any
) -> None:
    executor = make_executor({"rustdoc --version": scripted(launch_error=True)})
    rustdoc = ToolRequirement("rustdoc", check_command=("rustdoc", "--version"))
    provisioner = EnvironmentProvisioner(executor, [rustdoc])

    with pytest.raises(ProvisioningError, match="no install command"):
        await provisioner.ensure(rustdoc)


@pytest.mark.asyncio
async def test_ensure_all_rejects_unknown_names(make_executor: Any) -> None:
    provisioner = EnvironmentProvisioner(make_executor(), [CLIPPY])

    with pytest.raises(ProvisioningError, match="not defined"):
        await provisioner.ensure_all(["miri"])


def test_requirement_needs_a_command() -> None:
    with pytest.raises(ToolRegistryError, match="needs a check command"):
        ToolRequirement("clippy")


def test_conflicting_registration_is_rejected(make_executor: Any) -> None:
    provisioner = EnvironmentProvisioner(make_executor(), [CLIPPY])

    with pytest.raises(ToolRegistryError, match="conflicting"):
        provisioner.register(ToolRequirement("clippy", install_command=("true",)))


def test_load_tool_registry_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "tools.toml"
    path.write_text(
        """
[tools.rustfmt]
check = "cargo fmt --version"
install = ["rustup", "component", "add", "rustfmt"]
timeout_seconds = 120
""".strip(),
        encoding="utf-8",
    )

    registry = load_tool_registry(path)

    rustfmt = registry["rustfmt"]
    assert rustfmt.check_command == ("cargo", "fmt", "--version")
    assert rustfmt.install_command == ("rustup", "component", "add", "rustfmt")
    assert rustfmt.timeout_seconds == 120.0


def test_load_tool_registry_rejects_unknown_keys() -> None:
    with pytest.raises(ToolRegistryError, match=r"unknown key\(s\) verify"):
        load_tool_registry({"rustfmt": {"check": "cargo fmt", "verify": "x"}})
