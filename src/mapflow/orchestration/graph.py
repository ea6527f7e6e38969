"""
Dependency Graph Builder - turn a flow's steps into an ordered DAG.

This is the planning half of orchestration:

1. Index every step's read set (mapping sources) and write set (target)
2. Infer an edge A → B wherever B reads a table A writes
3. Union in explicit ``depends_on`` edges
4. Reject cycles, naming every step on the cycle
5. Layer the DAG: steps in one layer have no path between them and may
   run in parallel

The graph is a flow-scoped *view*.  Steps are shared across flows and
are never mutated; the same step can have different neighbours in
different flows.

Design Principles:
- Pure functions (testable, deterministic)
- Index-based adjacency (step ids), no object back-references
- Stable: ties are broken by the flow's declared step order
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from mapflow.core.errors import CyclicFlowError, DefinitionError, MissingDependencyError
from mapflow.core.logging import get_logger
from mapflow.model.snapshot import MetadataSnapshot

logger = get_logger(__name__)

EXPLICIT = "explicit"


@dataclass(frozen=True)
class StepIO:
    """What one step reads, writes and explicitly waits for."""

    step_id: str
    reads: frozenset[str] = frozenset()
    writes: frozenset[str] = frozenset()
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True)
class Edge:
    """An ordering constraint ``upstream`` → ``downstream``.

    ``reasons`` lists ``table:<id>`` for every inferred data dependency
    and ``explicit`` for a declared one.
    """

    upstream: str
    downstream: str
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.upstream, "to": self.downstream, "reasons": list(self.reasons)}


@dataclass(frozen=True)
class FlowGraph:
    """A validated, topologically ordered flow plan."""

    flow_id: str
    nodes: tuple[str, ...]
    order: tuple[str, ...]
    layers: tuple[tuple[str, ...], ...]
    edges: tuple[Edge, ...]
    predecessors: Mapping[str, frozenset[str]] = field(default_factory=dict)
    successors: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def descendants(self, step_id: str) -> set[str]:
        """Every step reachable from *step_id* (excluding itself)."""
        return self._reach(step_id, self.successors)

    def ancestors(self, step_id: str) -> set[str]:
        """Every step that reaches *step_id* (excluding itself)."""
        return self._reach(step_id, self.predecessors)

    def may_run_in_parallel(self, a: str, b: str) -> bool:
        """True when there is no path between *a* and *b* in either direction."""
        if a == b:
            return False
        return b not in self.descendants(a) and a not in self.descendants(b)

    def layer_of(self, step_id: str) -> int:
        for index, layer in enumerate(self.layers):
            if step_id in layer:
                return index
        raise KeyError(step_id)

    @staticmethod
    def _reach(start: str, adjacency: Mapping[str, frozenset[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(adjacency.get(start, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(adjacency.get(node, ()))
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "order": list(self.order),
            "layers": [list(layer) for layer in self.layers],
            "edges": [e.to_dict() for e in self.edges],
        }


def build_graph(snapshot: MetadataSnapshot) -> FlowGraph:
    """Build the dependency graph for the snapshot's flow.

    Raises:
        MissingDependencyError: A step depends on a step outside the flow.
        CyclicFlowError: The dependency graph has a cycle.
    """
    flow = snapshot.flow
    nodes = []
    for step_id in flow.steps:
        step = snapshot.step(step_id)
        mapping = snapshot.mapping(step.mapping_id)
        nodes.append(
            StepIO(
                step_id=step_id,
                reads=frozenset(mapping.sources),
                writes=frozenset({mapping.target}),
                depends_on=step.depends_on,
            )
        )
    return plan_steps(flow.id, nodes)


def plan_steps(flow_id: str, nodes: Iterable[StepIO]) -> FlowGraph:
    """Build a :class:`FlowGraph` from per-step read/write sets."""
    nodes = list(nodes)
    node_ids = [n.step_id for n in nodes]
    duplicates = sorted({s for s in node_ids if node_ids.count(s) > 1})
    if duplicates:
        raise DefinitionError(
            f"Flow '{flow_id}' lists steps more than once: {', '.join(duplicates)}"
        ).with_context(flow_id=flow_id)

    # Write-index: table -> producing steps (several writers are allowed)
    write_index: dict[str, list[str]] = {}
    for node in nodes:
        for table in sorted(node.writes):
            write_index.setdefault(table, []).append(node.step_id)

    reasons: dict[tuple[str, str], list[str]] = {}
    for node in nodes:
        for table in sorted(node.reads):
            for writer in write_index.get(table, ()):
                if writer != node.step_id:
                    reasons.setdefault((writer, node.step_id), []).append(f"table:{table}")

    members = set(node_ids)
    for node in nodes:
        missing = [dep for dep in node.depends_on if dep not in members]
        if missing:
            raise MissingDependencyError(node.step_id, missing).with_context(flow_id=flow_id)
        for dep in node.depends_on:
            reasons.setdefault((dep, node.step_id), []).append(EXPLICIT)

    successors: dict[str, set[str]] = {s: set() for s in node_ids}
    predecessors: dict[str, set[str]] = {s: set() for s in node_ids}
    for upstream, downstream in reasons:
        successors[upstream].add(downstream)
        predecessors[downstream].add(upstream)

    position = {s: i for i, s in enumerate(node_ids)}
    _validate_no_cycles(node_ids, successors, position)
    layers = _layered_topological_sort(node_ids, successors, predecessors, position)
    order = tuple(s for layer in layers for s in layer)

    edges = tuple(
        Edge(upstream=u, downstream=d, reasons=tuple(r))
        for (u, d), r in sorted(reasons.items(), key=lambda kv: (position[kv[0][0]], position[kv[0][1]]))
    )

    logger.debug(
        "graph.built",
        flow_id=flow_id,
        steps=len(node_ids),
        edges=len(edges),
        layers=len(layers),
    )
    return FlowGraph(
        flow_id=flow_id,
        nodes=tuple(node_ids),
        order=order,
        layers=layers,
        edges=edges,
        predecessors=MappingProxyType({k: frozenset(v) for k, v in predecessors.items()}),
        successors=MappingProxyType({k: frozenset(v) for k, v in successors.items()}),
    )


def _validate_no_cycles(
    node_ids: list[str],
    successors: dict[str, set[str]],
    position: dict[str, int],
) -> None:
    """
    Validate the graph is a DAG.

    Depth-first search with three-color marking:
    - WHITE (0): Unvisited
    - GRAY (1): On the current path
    - BLACK (2): Finished

    Reaching a GRAY node closes a cycle; the cycle is the path slice from
    that node, reported with the node repeated at the end (``a -> b -> a``).
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {s: WHITE for s in node_ids}
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        color[node] = GRAY
        path.append(node)
        for neighbor in sorted(successors[node], key=position.__getitem__):
            if color[neighbor] == GRAY:
                return path[path.index(neighbor):] + [neighbor]
            if color[neighbor] == WHITE:
                cycle = dfs(neighbor)
                if cycle:
                    return cycle
        color[node] = BLACK
        path.pop()
        return None

    for step_id in node_ids:
        if color[step_id] == WHITE:
            cycle = dfs(step_id)
            if cycle:
                raise CyclicFlowError(cycle)


def _layered_topological_sort(
    node_ids: list[str],
    successors: dict[str, set[str]],
    predecessors: dict[str, set[str]],
    position: dict[str, int],
) -> tuple[tuple[str, ...], ...]:
    """Kahn's algorithm, one wave at a time.

    Each wave holds the steps whose predecessors all sit in earlier waves,
    so a step's layer is its longest distance from a root and no two steps
    of one layer are connected.
    """
    in_degree = {s: len(predecessors[s]) for s in node_ids}
    current = deque(s for s in node_ids if in_degree[s] == 0)
    layers: list[tuple[str, ...]] = []
    placed = 0

    while current:
        layer = tuple(sorted(current, key=position.__getitem__))
        layers.append(layer)
        placed += len(layer)
        nxt: list[str] = []
        for node in layer:
            for neighbor in successors[node]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    nxt.append(neighbor)
        current = deque(nxt)

    if placed != len(node_ids):
        # _validate_no_cycles runs first, so this only fires on a bug.
        remaining = [s for s in node_ids if in_degree[s] > 0]
        raise CyclicFlowError(remaining)
    return tuple(layers)


__all__ = ["Edge", "FlowGraph", "StepIO", "build_graph", "plan_steps"]
