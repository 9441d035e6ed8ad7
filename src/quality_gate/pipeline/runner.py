"""
Pipeline runner.

The runner walks a validated :class:`PipelineGraph` one ready set at a time,
runs each set's stages concurrently (bounded by ``max_concurrency``) and
records every outcome in a :class:`RunReport`, in completion order.

States: ``initializing -> executing -> halted | completed``.

- ``fail_fast``: the first blocking failure halts the run. Stages still running
  in the same ready set are cancelled (their process trees are terminated) and,
  like every stage that never started, reported as ``skipped``.
- ``isolated``: a blocking failure only skips the failed stage's transitive
  dependents. Independent stages and jobs keep running and the run completes.

Only :class:`~quality_gate.errors.ValidationError` escapes :meth:`run`.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import aclosing
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from quality_gate.errors import ErrorKind, ValidationError
from quality_gate.observability.logging import correlation_scope
from quality_gate.pipeline.report import RunReport, RunState
from quality_gate.pipeline.stage import ExecutionResult
from quality_gate.utils.concurrency import CancellationToken, WorkerPool

if TYPE_CHECKING:
    from quality_gate.execution.executor import CommandExecutor
    from quality_gate.pipeline.graph import PipelineGraph
    from quality_gate.pipeline.provisioner import EnvironmentProvisioner
    from quality_gate.pipeline.stage import Stage


class FailurePolicy(StrEnum):
    """How a blocking stage failure affects the rest of the run."""

    FAIL_FAST = "fail_fast"
    ISOLATED = "isolated"


class PipelineRunner:
    """Execute a pipeline graph with fail-fast or isolated failure handling."""

    def __init__(
        self,
        executor: CommandExecutor,
        provisioner: EnvironmentProvisioner | None = None,
        *,
        max_concurrency: int = 1,
        failure_policy: FailurePolicy | str = FailurePolicy.FAIL_FAST,
        default_timeout_seconds: float | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
            raise ValueError("max_concurrency must be an integer")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._executor = executor
        self._provisioner = provisioner
        self._max_concurrency = max_concurrency
        self._failure_policy = FailurePolicy(failure_policy)
        self._default_timeout_seconds = default_timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._state = RunState.INITIALIZING
        self._peak_concurrency = 0

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def peak_concurrency(self) -> int:
        """Highest number of stages observed running at once in the last run."""
        return self._peak_concurrency

    async def run(
        self,
        graph: PipelineGraph,
        *,
        pipeline_name: str = "pipeline",
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunReport:
        resolved_run_id = run_id or uuid.uuid4().hex
        with correlation_scope(run_id=resolved_run_id):
            self._transition(RunState.INITIALIZING, pipeline=pipeline_name)
            try:
                graph.validate()
            except ValidationError as exc:
                self._transition(RunState.HALTED, halt_reason=str(exc))
                raise

            report = RunReport(pipeline_name=pipeline_name, run_id=resolved_run_id)
            token = cancel_token or CancellationToken()
            self._peak_concurrency = 0
            self._transition(RunState.EXECUTING, stages=len(graph))
            try:
                halt_reason = await self._execute(graph, report, token)
            finally:
                if self._provisioner is not None:
                    await self._provisioner.cancel_pending()

            final_state = RunState.HALTED if halt_reason is not None else RunState.COMPLETED
            report.finalize(final_state, halt_reason=halt_reason)
            self._transition(
                final_state,
                verdict=report.verdict.value,
                halt_reason=halt_reason,
                counts=report.counts(),
            )
            return report

    async def _execute(
        self,
        graph: PipelineGraph,
        report: RunReport,
        token: CancellationToken,
    ) -> str | None:
        blocked: dict[str, str] = {}
        halt_reason: str | None = None
        layers = graph.topological_order()

        for layer in layers:
            runnable: list[Stage] = []
            for stage in layer:
                failed_dependency = next(
                    (name for name in sorted(stage.depends_on) if name in blocked), None
                )
                if failed_dependency is None:
                    runnable.append(stage)
                    continue
                blocked[stage.name] = failed_dependency
                self._record_skip(
                    report,
                    stage,
                    ErrorKind.DEPENDENCY_FAILED,
                    f"dependency {failed_dependency!r} did not succeed",
                )

            halt_reason = await self._run_layer(runnable, report, token, blocked)
            if halt_reason is not None:
                break

        if halt_reason is not None:
            kind = ErrorKind.CANCELLED if token.is_cancelled else ErrorKind.HALTED
            for layer in layers:
                for stage in layer:
                    self._record_skip(report, stage, kind, halt_reason)
        return halt_reason

    async def _run_layer(
        self,
        stages: list[Stage],
        report: RunReport,
        token: CancellationToken,
        blocked: dict[str, str],
    ) -> str | None:
        if not stages:
            return None
        if token.is_cancelled:
            reason = _cancel_reason(token)
            for stage in stages:
                self._record_skip(report, stage, ErrorKind.CANCELLED, reason)
            return reason

        started: dict[str, datetime] = {}
        halt_reason: str | None = None
        pool: WorkerPool[ExecutionResult] = WorkerPool(
            max_concurrency=min(self._max_concurrency, len(stages)),
            cancel_token=token,
        )
        coroutines = [self._run_stage(stage, started) for stage in stages]
        try:
            async with aclosing(pool.run(coroutines)) as results:
                async for result in results:
                    self._peak_concurrency = max(self._peak_concurrency, pool.semaphore.peak)
                    report.append(result)
                    if not result.blocking_failure:
                        continue
                    blocked[result.stage_name] = result.stage_name
                    if self._failure_policy is FailurePolicy.FAIL_FAST:
                        halt_reason = f"stage {result.stage_name!r} failed"
                        break
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            halt_reason = _cancel_reason(token)
        self._peak_concurrency = max(self._peak_concurrency, pool.semaphore.peak)

        if halt_reason is None:
            return None
        kind = ErrorKind.CANCELLED if token.is_cancelled else ErrorKind.HALTED
        for stage in stages:
            if report.has_result(stage.name):
                continue
            start_time = started.get(stage.name)
            message = halt_reason
            if start_time is not None:
                message = f"cancelled while running: {halt_reason}"
            self._record_skip(report, stage, kind, message, start_time=start_time)
        return halt_reason

    async def _run_stage(self, stage: Stage, started: dict[str, datetime]) -> ExecutionResult:
        with correlation_scope(stage=stage.name):
            started[stage.name] = datetime.now(tz=UTC)
            self._logger.info("stage_started", stage=stage.name, job=stage.job)
            result = await stage.run(
                self._executor,
                self._provisioner,
                default_timeout_seconds=self._default_timeout_seconds,
            )
            self._logger.info(
                "stage_finished",
                stage=stage.name,
                status=result.status.value,
                exit_code=result.exit_code,
                error_kind=None if result.error_kind is None else result.error_kind.value,
                duration_ms=result.duration_ms,
                allow_failure=result.allow_failure,
            )
            return result

    def _record_skip(
        self,
        report: RunReport,
        stage: Stage,
        kind: ErrorKind,
        message: str,
        *,
        start_time: datetime | None = None,
    ) -> None:
        if report.has_result(stage.name):
            return
        report.append(ExecutionResult.skipped(stage, kind, message, start_time=start_time))
        self._logger.info("stage_skipped", stage=stage.name, error_kind=kind.value, reason=message)

    def _transition(self, state: RunState, **fields: object) -> None:
        previous = self._state
        self._state = state
        self._logger.info(
            "pipeline_state_changed",
            previous_state=previous.value,
            state=state.value,
            policy=self._failure_policy.value,
            **fields,
        )


def _cancel_reason(token: CancellationToken) -> str:
    return token.reason or "run cancelled"


__all__ = ["FailurePolicy", "PipelineRunner"]
