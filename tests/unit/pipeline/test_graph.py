"""
Unit tests for the pipeline graph.

Covers validation order (duplicates, unknown dependencies, cycles), ready-set
layering, dependency closures and deterministic serialization.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from quality_gate.errors import (
    CyclicDependencyError,
    DuplicateStageError,
    UnknownDependencyError,
    ValidationError,
)
from quality_gate.pipeline.graph import PipelineGraph
from quality_gate.pipeline.stage import Stage

pytestmark = pytest.mark.unit


def _stage(name: str, *depends_on: str) -> Stage:
    return Stage(name=name, command=("echo", name), depends_on=frozenset(depends_on))


def _build_lint_test_graph() -> PipelineGraph:
    return PipelineGraph(
        [
            _stage("build"),
            _stage("lint", "build"),
            _stage("test", "build"),
            _stage("coverage", "test"),
        ]
    )


def test_ready_sets_follow_dependencies_in_declaration_order() -> None:
    graph = _build_lint_test_graph()

    assert graph.ready_sets() == (("build",), ("lint", "test"), ("coverage",))


def test_independent_stages_share_the_first_ready_set() -> None:
    graph = PipelineGraph([_stage("fmt"), _stage("clippy"), _stage("docs")])

    assert graph.ready_sets() == (("fmt", "clippy", "docs"),)


def test_empty_graph_has_no_ready_sets() -> None:
    graph = PipelineGraph([])

    assert len(graph) == 0
    assert graph.ready_sets() == ()


def test_duplicate_names_are_reported_before_other_problems() -> None:
    graph = PipelineGraph([_stage("build"), _stage("build", "missing")])

    with pytest.raises(DuplicateStageError) as excinfo:
        graph.validate()

    assert excinfo.value.names == ("build",)


def test_unknown_dependency_names_the_offending_edge() -> None:
    graph = PipelineGraph([_stage("build"), _stage("lint", "biuld")])

    with pytest.raises(UnknownDependencyError) as excinfo:
        graph.validate()

    assert excinfo.value.missing == (("lint", "biuld"),)
    assert "lint -> biuld" in str(excinfo.value)


def test_two_stage_cycle_is_detected() -> None:
    graph = PipelineGraph([_stage("a", "b"), _stage("b", "a")])

    with pytest.raises(CyclicDependencyError) as excinfo:
        graph.validate()

    assert excinfo.value.cycles == (("a", "b", "a"),)


def test_self_dependency_is_a_cycle() -> None:
    graph = PipelineGraph([_stage("loop", "loop")])

    assert graph.detect_cycles() == (("loop", "loop"),)
    with pytest.raises(ValidationError):
        list(graph.topological_order())


def test_validate_is_cached_and_returns_the_graph() -> None:
    graph = _build_lint_test_graph()

    assert graph.validate() is graph
    assert graph.validate() is graph


def test_dependency_closures() -> None:
    graph = _build_lint_test_graph()

    assert graph.dependencies("coverage") == ("test",)
    assert graph.dependencies("coverage", transitive=True) == ("build", "test")
    assert graph.dependents("build") == ("lint", "test")
    assert graph.transitive_dependents("build") == ("lint", "test", "coverage")


def test_unknown_stage_lookup_raises_key_error() -> None:
    graph = _build_lint_test_graph()

    with pytest.raises(KeyError, match="Unknown stage: nope"):
        graph.stage("nope")
    assert "build" in graph
    assert "nope" not in graph


def test_subgraph_pulls_in_transitive_dependencies() -> None:
    graph = _build_lint_test_graph()

    sub = graph.subgraph(["coverage"])

    assert sub.names == ("build", "test", "coverage")
    assert sub.ready_sets() == (("build",), ("test",), ("coverage",))


def test_serialize_lists_stages_and_edges() -> None:
    graph = _build_lint_test_graph()

    payload = graph.serialize()

    assert [stage["name"] for stage in payload["stages"]] == ["build", "lint", "test", "coverage"]
    assert payload["edges"] == [["build", "lint"], ["build", "test"], ["test", "coverage"]]


@st.composite
def _acyclic_graphs(draw: st.DrawFn) -> PipelineGraph:
    size = draw(st.integers(min_value=0, max_value=12))
    stages: list[Stage] = []
    for index in range(size):
        earlier = [f"s{other}" for other in range(index)]
        deps = draw(st.sets(st.sampled_from(earlier))) if earlier else set()
        stages.append(_stage(f"s{index}", *deps))
    order = draw(st.permutations(stages))
    return PipelineGraph(order)


@settings(max_examples=75, deadline=None)
@given(_acyclic_graphs())
def test_every_acyclic_graph_visits_each_stage_once_after_its_dependencies(
    graph: PipelineGraph,
) -> None:
    seen: set[str] = set()
    visited: list[str] = []
    for ready_set in graph.topological_order():
        for stage in ready_set:
            assert stage.depends_on <= seen
        names = [stage.name for stage in ready_set]
        seen.update(names)
        visited.extend(names)

    assert sorted(visited) == sorted(graph.names)
    assert len(visited) == len(set(visited))


@settings(max_examples=50, deadline=None)
@given(_acyclic_graphs(), st.data())
def test_adding_a_back_edge_always_creates_a_detected_cycle(
    graph: PipelineGraph, data: st.DataObject
) -> None:
    candidates = [
        (stage.name, dependency)
        for stage in graph
        for dependency in graph.dependencies(stage.name, transitive=True)
    ]
    if not candidates:
        return
    descendant, ancestor = data.draw(st.sampled_from(candidates))
    rewired = [
        Stage(
            name=stage.name,
            command=stage.command,
            depends_on=stage.depends_on | ({descendant} if stage.name == ancestor else set()),
        )
        for stage in graph
    ]

    with pytest.raises(CyclicDependencyError):
        PipelineGraph(rewired).validate()
