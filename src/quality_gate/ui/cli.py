"""Command-line interface router for ``qgate``."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import uuid
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from quality_gate.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from quality_gate.execution import LocalSubprocessExecutor, OutputStream
from quality_gate.observability import setup_logging, shutdown_logging
from quality_gate.observability.logging import get_correlation_context
from quality_gate.pipeline.containerfile import DEFAULT_BASE_IMAGE, render_containerfile
from quality_gate.pipeline.definition import PipelineDefinition, load_definition
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.presets import PRESETS, load_preset
from quality_gate.pipeline.report import RunReport
from quality_gate.pipeline.runner import FailurePolicy, PipelineRunner
from quality_gate.pipeline.topology import Topology
from quality_gate.pipeline.workflow import load_workflow
from quality_gate.ui.render import CLIRenderer, create_renderer
from quality_gate.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="qgate",
        description=(
            "qgate: run a quality-gate pipeline of build, lint and test stages.\n\n"
            "Common workflows:\n"
            "  qgate run                         Run ./pipeline.toml\n"
            "  qgate run --preset rust           Run the built-in Rust gate\n"
            "  qgate plan pipeline.toml          Show ready sets without running\n"
            "  qgate import-workflow ci.yml      Inspect a hosted-CI workflow\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to qgate TOML config (default: ./qgate.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    source = argparse.ArgumentParser(add_help=False)
    source.add_argument(
        "definition",
        nargs="?",
        default=None,
        help="Pipeline definition file (default: paths.pipeline from config).",
    )
    source.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        default=None,
        help="Use a built-in pipeline instead of a definition file.",
    )
    source.add_argument(
        "--project-dir",
        default=".",
        help="Project directory for --preset pipelines (default: current directory).",
    )

    execution = argparse.ArgumentParser(add_help=False)
    execution.add_argument("--report", default=None, help="Write the JSON run report here.")
    execution.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Maximum stages running at once (default: runner.max_concurrency).",
    )
    execution.add_argument(
        "--policy",
        choices=[policy.value for policy in FailurePolicy],
        default=None,
        help="Failure policy (default: isolated for job workflows, else runner.failure_policy).",
    )
    execution.add_argument(
        "--strict",
        action="store_true",
        default=None,
        help="Treat partial_failure as a failing exit code.",
    )
    execution.add_argument(
        "--only",
        nargs="+",
        default=None,
        metavar="STAGE",
        help="Run only these stages and what they depend on.",
    )
    execution.add_argument("--json", action="store_true", help="Emit the run report as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common, source, execution],
        help="Run a pipeline and write the run report",
        description=(
            "Validate and execute a pipeline definition.\n\n"
            "Examples:\n"
            "  qgate run\n"
            "  qgate run pipeline.yaml --max-concurrency 4\n"
            "  qgate run --preset rust --project-dir rusted_dice --strict\n"
            "  qgate run --only clippy\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.set_defaults(handler=_cmd_run)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common, source],
        help="Load and validate a pipeline without running it",
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common, source],
        help="Show ready sets and the dependency table",
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    # containerfile -------------------------------------------------------
    containerfile_parser = subparsers.add_parser(
        "containerfile",
        parents=[common, source],
        help="Render the pipeline as a container build file",
    )
    containerfile_parser.add_argument(
        "--base-image",
        default=DEFAULT_BASE_IMAGE,
        help=f"Base image for the FROM line (default: {DEFAULT_BASE_IMAGE}).",
    )
    containerfile_parser.add_argument(
        "--output", default=None, help="Write to this file instead of stdout."
    )
    containerfile_parser.set_defaults(handler=_cmd_containerfile)

    # import-workflow -----------------------------------------------------
    workflow_parser = subparsers.add_parser(
        "import-workflow",
        parents=[common, execution],
        help="Load a hosted-CI workflow as isolated jobs",
        description=(
            "Turn a GitHub Actions style workflow into one chain of stages per job.\n\n"
            "Examples:\n"
            "  qgate import-workflow .github/workflows/ci.yml\n"
            "  qgate import-workflow .github/workflows/ci.yml --run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    workflow_parser.add_argument("workflow", help="Path to the workflow YAML file")
    workflow_parser.add_argument(
        "--run", action="store_true", help="Execute the imported jobs locally"
    )
    workflow_parser.set_defaults(handler=_cmd_import_workflow)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _resolve_definition(args, config)
    return _run_definition(args, config, definition)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _resolve_definition(args, config)
    graph = definition.graph.validate()

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", definition.name)
    renderer.kv("Topology", definition.topology.value)
    renderer.kv("Stages", len(graph))
    renderer.section("Ready sets:")
    for index, ready_set in enumerate(graph.ready_sets(), start=1):
        renderer.text(f"  {index}. {', '.join(ready_set)}")
    renderer.ok("definition is valid")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _resolve_definition(args, config)

    renderer = _get_renderer(args)
    _render_definition(renderer, definition)
    renderer.plan(definition.graph.validate())
    return 0


def _cmd_containerfile(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _resolve_definition(args, config)
    text = render_containerfile(
        definition.graph,
        base_image=args.base_image,
        env=definition.env,
        requirements=definition.requirements,
        project_root=definition.root,
    )
    if args.output:
        target = Path(args.output).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        _get_renderer(args).kv("Containerfile written", target)
    else:
        sys.stdout.write(text)
    return 0


def _cmd_import_workflow(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = load_workflow(args.workflow)

    if args.run:
        return _run_definition(args, config, definition)

    renderer = _get_renderer(args)
    _render_definition(renderer, definition)
    renderer.plan(definition.graph)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    sys.stdout.write(dump_effective_config(config) + "\n")
    return 0


# ---------------------------------------------------------------------------
# Pipeline execution
# ---------------------------------------------------------------------------


def _run_definition(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    definition: PipelineDefinition,
) -> int:
    graph = definition.graph.validate()
    only = getattr(args, "only", None)
    if only:
        try:
            graph = graph.subgraph(only)
        except KeyError as exc:
            raise CLIError(str(exc.args[0]), exit_code=2) from exc

    runner_cfg = config["runner"]
    executor_cfg = config["executor"]
    policy = args.policy
    if policy is None:
        isolated = definition.topology is Topology.ISOLATED
        policy = FailurePolicy.ISOLATED if isolated else runner_cfg["failure_policy"]
    strict = bool(runner_cfg["strict_partial_failure"])
    stream = executor_cfg["stream_output"] and not getattr(args, "json", False)

    run_id = uuid.uuid4().hex
    handle = setup_logging(
        config["observability"],
        run_id=run_id,
        log_dir=config["paths"]["log_dir"],
    )
    try:
        executor = LocalSubprocessExecutor(
            default_timeout_seconds=runner_cfg["default_timeout_seconds"],
            max_output_chars=executor_cfg["max_output_chars"],
            output_sink=_stream_output if stream else None,
            inherit_env=executor_cfg["inherit_env"],
        )
        runner = PipelineRunner(
            executor,
            definition.provisioner(executor),
            max_concurrency=runner_cfg["max_concurrency"],
            failure_policy=policy,
            default_timeout_seconds=runner_cfg["default_timeout_seconds"],
        )
        report = asyncio.run(_run_pipeline(runner, graph, definition.name, run_id))
        report_path = report.write(config["paths"]["report"])
    finally:
        shutdown_logging(handle)

    if getattr(args, "json", False):
        sys.stdout.write(report.to_json(include_output=False) + "\n")
    else:
        renderer = _get_renderer(args)
        renderer.report(report, strict=strict)
        renderer.kv("Report", report_path)
        renderer.kv("Log", handle.log_path)
    return report.exit_code(strict=strict)


async def _run_pipeline(
    runner: PipelineRunner,
    graph: PipelineGraph,
    pipeline_name: str,
    run_id: str,
) -> RunReport:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(signum, token.cancel, f"received {signum.name}")
            installed.append(signum)
    try:
        return await runner.run(
            graph,
            pipeline_name=pipeline_name,
            run_id=run_id,
            cancel_token=token,
        )
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _stream_output(stream: OutputStream, line: str) -> None:
    stage = get_correlation_context().get("stage", "-")
    target = sys.stderr if stream == "stderr" else sys.stdout
    target.write(f"[{stage}] {line.rstrip()}\n")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(
        no_color=bool(getattr(args, "no_color", False)),
        verbose=bool(getattr(args, "verbose", False)),
    )


def _render_definition(renderer: CLIRenderer, definition: PipelineDefinition) -> None:
    renderer.kv("Pipeline", definition.name)
    renderer.kv("Topology", definition.topology.value)
    if definition.source is not None:
        renderer.kv("Source", definition.source)
    if definition.requirements:
        renderer.kv("Tools", ", ".join(definition.requirements))
    if definition.skipped_steps:
        renderer.section("Steps without a local equivalent (skipped):")
        renderer.items(list(definition.skipped_steps))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {
        "runner.max_concurrency": getattr(args, "max_concurrency", None),
        "runner.failure_policy": getattr(args, "policy", None),
        "runner.strict_partial_failure": getattr(args, "strict", None),
        "paths.report": _absolute(getattr(args, "report", None)),
    }
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=3) from exc


def _resolve_definition(args: argparse.Namespace, config: Mapping[str, Any]) -> PipelineDefinition:
    if args.preset is not None:
        if args.definition is not None:
            raise CLIError("use either a definition file or --preset, not both", exit_code=2)
        return load_preset(args.preset, args.project_dir)

    path = Path(args.definition) if args.definition else Path(config["paths"]["pipeline"])
    if path.suffix.lower() in {".yml", ".yaml"} and _is_workflow_path(path):
        return load_workflow(path)
    return load_definition(path)


def _is_workflow_path(path: Path) -> bool:
    parts = path.expanduser().resolve().parts
    return len(parts) >= 3 and parts[-3:-1] == (".github", "workflows")


def _absolute(raw: str | None) -> str | None:
    if raw is None:
        return None
    return str(Path(raw).expanduser().resolve())


__all__ = ["CLIError", "build_parser", "run_cli"]
