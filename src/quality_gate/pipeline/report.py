"""Run report: per-stage results, final state and the overall verdict."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from quality_gate.constants import REPORT_SCHEMA_VERSION
from quality_gate.pipeline.stage import ExecutionResult, StageStatus
from quality_gate.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Iterable


class RunState(StrEnum):
    """Runner state machine positions."""

    INITIALIZING = "initializing"
    EXECUTING = "executing"
    HALTED = "halted"
    COMPLETED = "completed"


class RunVerdict(StrEnum):
    """Consolidated outcome of one run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


_TERMINAL_STATES = frozenset({RunState.HALTED, RunState.COMPLETED})


@dataclass(slots=True)
class RunReport:
    """Results in completion order plus the run-level outcome."""

    pipeline_name: str
    run_id: str
    results: list[ExecutionResult] = field(default_factory=list)
    state: RunState = RunState.INITIALIZING
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    finished_at: datetime | None = None
    halt_reason: str | None = None
    _seen: set[str] = field(default_factory=set, init=False, repr=False)

    def append(self, result: ExecutionResult) -> None:
        if self.finalized:
            raise RuntimeError("cannot append to a finalized run report")
        if result.status not in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED):
            raise ValueError(f"result for {result.stage_name!r} is not final: {result.status}")
        if result.stage_name in self._seen:
            raise ValueError(f"duplicate result for stage {result.stage_name!r}")
        self._seen.add(result.stage_name)
        self.results.append(result)

    def extend(self, results: Iterable[ExecutionResult]) -> None:
        for result in results:
            self.append(result)

    def has_result(self, stage_name: str) -> bool:
        return stage_name in self._seen

    def finalize(self, state: RunState, *, halt_reason: str | None = None) -> RunReport:
        if state not in _TERMINAL_STATES:
            raise ValueError(f"cannot finalize a run in state {state}")
        if self.finalized:
            raise RuntimeError("run report is already finalized")
        self.state = state
        self.halt_reason = halt_reason
        self.finished_at = datetime.now(tz=UTC)
        return self

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    @property
    def verdict(self) -> RunVerdict:
        if self.state is RunState.HALTED:
            return RunVerdict.FAILURE
        if any(result.blocking_failure for result in self.results):
            return RunVerdict.FAILURE
        # Under the isolated policy dependents of a failed stage are skipped
        # without the run halting; that is still a failed run.
        if any(
            result.status is StageStatus.SKIPPED and not result.allow_failure
            for result in self.results
        ):
            return RunVerdict.FAILURE
        if any(result.status is StageStatus.FAILED for result in self.results):
            return RunVerdict.PARTIAL_FAILURE
        return RunVerdict.SUCCESS

    def exit_code(self, *, strict: bool = False) -> int:
        verdict = self.verdict
        if verdict is RunVerdict.SUCCESS:
            return 0
        if verdict is RunVerdict.PARTIAL_FAILURE and not strict:
            return 0
        return 1

    def result_for(self, stage_name: str) -> ExecutionResult:
        for result in self.results:
            if result.stage_name == stage_name:
                return result
        raise KeyError(f"no result for stage {stage_name!r}")

    def counts(self) -> dict[str, int]:
        tally = {
            status.value: 0
            for status in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)
        }
        for result in self.results:
            tally[result.status.value] += 1
        return tally

    def to_dict(self, *, include_output: bool = True) -> dict[str, object]:
        results: list[dict[str, object]] = []
        for result in self.results:
            payload = result.to_dict()
            if not include_output:
                payload.pop("stdout", None)
                payload.pop("stderr", None)
            results.append(payload)
        return {
            "schema_version": REPORT_SCHEMA_VERSION,
            "pipeline": self.pipeline_name,
            "run_id": self.run_id,
            "state": self.state.value,
            "verdict": self.verdict.value,
            "halt_reason": self.halt_reason,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "counts": self.counts(),
            "results": results,
        }

    def to_json(self, *, include_output: bool = True) -> str:
        return json.dumps(
            self.to_dict(include_output=include_output),
            indent=2,
            sort_keys=False,
            ensure_ascii=False,
        )

    def write(self, path: Path | str) -> Path:
        target = Path(path)
        atomic_write(target, self.to_json() + "\n")
        return target


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = ["RunReport", "RunState", "RunVerdict"]
