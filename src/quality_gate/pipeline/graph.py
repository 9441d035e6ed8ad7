"""Deterministic dependency graph of pipeline stages."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING

from quality_gate.errors import (
    CyclicDependencyError,
    DuplicateStageError,
    UnknownDependencyError,
)

if TYPE_CHECKING:
    from quality_gate.pipeline.stage import Stage


class PipelineGraph:
    """Stages plus their ``depends_on`` edges, immutable once built.

    Declaration order is preserved and used to break ties, so two runs over the
    same definition always see the same ready sets in the same order.
    """

    __slots__ = ("_stages", "_by_name", "_children", "_order", "_validated")

    def __init__(self, stages: Iterable[Stage]) -> None:
        self._stages: tuple[Stage, ...] = tuple(stages)
        self._by_name: dict[str, Stage] = {}
        for stage in self._stages:
            self._by_name.setdefault(stage.name, stage)
        self._order: dict[str, int] = {}
        for index, stage in enumerate(self._stages):
            self._order.setdefault(stage.name, index)
        self._children: dict[str, set[str]] = {name: set() for name in self._by_name}
        for stage in self._by_name.values():
            for dependency in stage.depends_on:
                if dependency in self._children:
                    self._children[dependency].add(stage.name)
        self._validated = False

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def stages(self) -> tuple[Stage, ...]:
        """All stages in declaration order."""
        return self._stages

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self._stages)

    def stage(self, name: str) -> Stage:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown stage: {name}") from None

    def validate(self) -> PipelineGraph:
        """Raise a ``ValidationError`` subclass when the graph is malformed."""
        if self._validated:
            return self

        counts = Counter(stage.name for stage in self._stages)
        duplicates = [name for name, count in counts.items() if count > 1]
        if duplicates:
            raise DuplicateStageError(duplicates)

        missing = [
            (stage.name, dependency)
            for stage in self._stages
            for dependency in stage.depends_on
            if dependency not in self._by_name
        ]
        if missing:
            raise UnknownDependencyError(missing)

        cycles = self.detect_cycles()
        if cycles:
            raise CyclicDependencyError(cycles)

        self._validated = True
        return self

    def topological_order(self) -> Iterator[tuple[Stage, ...]]:
        """Yield ready sets lazily; every stage in a set has all deps in earlier sets."""
        self.validate()
        indegree = {stage.name: len(stage.depends_on) for stage in self._stages}
        ready = [stage.name for stage in self._stages if indegree[stage.name] == 0]

        while ready:
            layer = tuple(self._by_name[name] for name in ready)
            yield layer
            next_ready: list[str] = []
            for name in ready:
                for child in self._children[name]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        next_ready.append(child)
            next_ready.sort(key=self._order.__getitem__)
            ready = next_ready

    def ready_sets(self) -> tuple[tuple[str, ...], ...]:
        """Eager, name-only form of :meth:`topological_order`."""
        return tuple(tuple(stage.name for stage in layer) for layer in self.topological_order())

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles along ``dependency -> dependent`` edges.

        Returns closed paths such as ``("a", "b", "a")``, canonically rotated.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._by_name):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]

            while frames:
                node, child_iter = frames[-1]
                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                elif child_state == 1:
                    cycle = tuple(stack[stack_index[child] :] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def dependencies(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        stage = self.stage(name)
        if not transitive:
            return self._sorted(stage.depends_on)
        return self._closure(name, upstream=True)

    def dependents(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        self.stage(name)
        if not transitive:
            return self._sorted(self._children[name])
        return self._closure(name, upstream=False)

    def transitive_dependents(self, name: str) -> tuple[str, ...]:
        return self.dependents(name, transitive=True)

    def subgraph(self, names: Iterable[str]) -> PipelineGraph:
        """Return the graph restricted to ``names`` and everything they depend on."""
        self.validate()
        wanted: set[str] = set()
        for name in names:
            self.stage(name)
            wanted.add(name)
            wanted.update(self._closure(name, upstream=True))
        return PipelineGraph(stage for stage in self._stages if stage.name in wanted).validate()

    def serialize(self) -> dict[str, object]:
        """Serialize to a stable JSON-friendly mapping."""
        edges: list[list[str]] = []
        for stage in self._stages:
            for dependency in self._sorted(stage.depends_on):
                edges.append([dependency, stage.name])
        return {
            "stages": [stage.to_dict() for stage in self._stages],
            "edges": edges,
        }

    def _closure(self, name: str, *, upstream: bool) -> tuple[str, ...]:
        visited: set[str] = set()
        pending: list[str] = list(self._neighbors(name, upstream=upstream))
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(
                neighbor
                for neighbor in self._neighbors(node, upstream=upstream)
                if neighbor not in visited
            )
        return self._sorted(visited)

    def _neighbors(self, name: str, *, upstream: bool) -> Iterable[str]:
        if upstream:
            return (dep for dep in self._by_name[name].depends_on if dep in self._by_name)
        return self._children.get(name, ())

    def _sorted(self, names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(names, key=lambda item: (self._order.get(item, len(self._order)), item)))


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])
    best = min(core[offset:] + core[:offset] for offset in range(len(core)))
    return best + (best[0],)


__all__ = ["PipelineGraph"]
