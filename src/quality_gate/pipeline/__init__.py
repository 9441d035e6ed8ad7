"""Pipeline graph, stage execution, provisioning and run reporting."""

from quality_gate.pipeline.containerfile import render_containerfile
from quality_gate.pipeline.definition import (
    DefinitionError,
    PipelineDefinition,
    load_definition,
    parse_definition,
)
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.presets import PRESETS, load_preset
from quality_gate.pipeline.provisioner import EnvironmentProvisioner, ToolRequirement
from quality_gate.pipeline.report import RunReport, RunState, RunVerdict
from quality_gate.pipeline.runner import FailurePolicy, PipelineRunner
from quality_gate.pipeline.stage import ExecutionResult, Stage, StageStatus
from quality_gate.pipeline.topology import Job, Topology, isolated_jobs, sequential
from quality_gate.pipeline.workflow import load_workflow

__all__ = [
    "PRESETS",
    "DefinitionError",
    "EnvironmentProvisioner",
    "ExecutionResult",
    "FailurePolicy",
    "Job",
    "PipelineDefinition",
    "PipelineGraph",
    "PipelineRunner",
    "RunReport",
    "RunState",
    "RunVerdict",
    "Stage",
    "StageStatus",
    "ToolRequirement",
    "Topology",
    "isolated_jobs",
    "load_definition",
    "load_preset",
    "load_workflow",
    "parse_definition",
    "render_containerfile",
    "sequential",
]
