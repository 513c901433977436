from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from sequencer.errors import CycleError
from sequencer.models import PipelineSpec


@dataclass
class StageNode:
    """A node in the stage dependency graph."""

    name: str
    needs: list[str] = field(default_factory=list)
    position: int = 0


class StageGraph:
    def __init__(self) -> None:
        self._nodes: dict[str, StageNode] = {}

    def add_stage(self, name: str, needs: list[str] | None = None) -> None:
        """Add or update a stage. Declaration order breaks ties in sorting."""
        existing = self._nodes.get(name)
        position = existing.position if existing else len(self._nodes)
        self._nodes[name] = StageNode(name=name, needs=needs or [], position=position)

    def get_node(self, name: str) -> StageNode | None:
        return self._nodes.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    @property
    def nodes(self) -> list[StageNode]:
        """All nodes in declaration order."""
        return sorted(self._nodes.values(), key=lambda n: n.position)

    def dependents(self, name: str) -> list[str]:
        """Stages that list *name* in their needs."""
        return [n.name for n in self.nodes if name in n.needs]

    def unknown_needs(self) -> list[tuple[str, str]]:
        """(stage, need) pairs whose need is not a stage in the graph."""
        return [
            (n.name, dep) for n in self.nodes for dep in n.needs if dep not in self._nodes
        ]

    def ancestors(self, name: str) -> set[str]:
        """All stages reachable from *name* through needs edges."""
        seen: set[str] = set()
        stack = list(self._nodes[name].needs) if name in self._nodes else []
        while stack:
            current = stack.pop()
            if current in seen or current not in self._nodes:
                continue
            seen.add(current)
            stack.extend(self._nodes[current].needs)
        return seen

    def descendants(self, name: str) -> set[str]:
        """All stages that depend on *name* directly or transitively."""
        seen: set[str] = set()
        queue: deque[str] = deque(self.dependents(name))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.dependents(current))
        return seen

    def is_ready(self, name: str, terminal: set[str]) -> bool:
        """A stage is ready once every need is in the *terminal* set."""
        node = self._nodes.get(name)
        if node is None:
            return False
        return all(dep in terminal for dep in node.needs)

    def ready_stages(self, terminal: set[str], started: set[str]) -> list[str]:
        """Stages not yet started whose needs are all terminal."""
        return [
            name
            for name in self.topological_sort()
            if name not in started and self.is_ready(name, terminal)
        ]

    def topological_sort(self) -> list[str]:
        """Return stage names in dependency order. Raises CycleError on cycles."""
        in_degree: dict[str, int] = {n: 0 for n in self._nodes}
        for node in self._nodes.values():
            for dep in node.needs:
                if dep in self._nodes:
                    in_degree[node.name] += 1

        queue: deque[str] = deque(
            n.name for n in self.nodes if in_degree[n.name] == 0
        )
        result: list[str] = []

        while queue:
            current = queue.popleft()
            result.append(current)
            for dependent in self.dependents(current):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._nodes):
            cycle = self._find_cycle(in_degree)
            raise CycleError(cycle)

        return result

    def _find_cycle(self, in_degree: dict[str, int]) -> list[str]:
        """Extract one cycle from remaining nodes with non-zero in-degree."""
        remaining = {n for n, d in in_degree.items() if d > 0}
        if not remaining:
            return []

        start = min(remaining, key=lambda n: self._nodes[n].position)
        visited: set[str] = set()
        current = start
        while current not in visited:
            visited.add(current)
            node = self._nodes[current]
            current = next((d for d in node.needs if d in remaining), current)

        cycle_start = current
        cycle = [cycle_start]
        node = self._nodes[cycle_start]
        nxt = next((d for d in node.needs if d in remaining), cycle_start)
        while nxt != cycle_start:
            cycle.append(nxt)
            node = self._nodes[nxt]
            nxt = next((d for d in node.needs if d in remaining), cycle_start)
        cycle.append(cycle_start)
        return cycle

    def execution_tiers(self) -> list[list[str]]:
        """Group stages into tiers that may run in parallel.

        Tier N depends only on Tier <N.
        """
        order = self.topological_sort()
        depth: dict[str, int] = {}

        for name in order:
            node = self._nodes[name]
            deps_in_graph = [d for d in node.needs if d in self._nodes]
            if not deps_in_graph:
                depth[name] = 0
            else:
                depth[name] = max(depth[d] for d in deps_in_graph) + 1

        if not depth:
            return []

        max_depth = max(depth.values())
        tiers: list[list[str]] = [[] for _ in range(max_depth + 1)]
        for name in order:
            tiers[depth[name]].append(name)

        return tiers


def build_graph(pipeline: PipelineSpec) -> StageGraph:
    """Build the stage graph from a pipeline definition."""
    graph = StageGraph()
    for stage in pipeline.stages:
        graph.add_stage(stage.name, needs=list(stage.needs))
    return graph
