"""DAG dependency resolver — topological sort, cycle detection, parallel groups, branch insertion."""

from __future__ import annotations
import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tessera.errors import CycleError
from tessera.pipeline.types import NodeKind

if TYPE_CHECKING:
    from tessera.dag.patterns import BranchSpec


@dataclass
class DAGNode:
    """A node in the dependency graph."""
    name: str
    kind: NodeKind = NodeKind.TARGET
    order: int = 0
    parent: str | None = None  # owning dynamic target of a branch
    position: int = 0          # branch index within its target
    upstream: set[str] = field(default_factory=set)
    downstream: set[str] = field(default_factory=set)

    @property
    def sort_key(self) -> tuple:
        return (0 if self.kind is NodeKind.IMPORT else 1, self.order, self.position, self.name)


class DAGResolver:
    """Holds the dependency graph and resolves it into execution order."""

    def __init__(self):
        self._nodes: dict[str, DAGNode] = {}

    def add_node(
        self,
        name: str,
        kind: NodeKind = NodeKind.TARGET,
        order: int | None = None,
        parent: str | None = None,
        position: int = 0,
    ) -> DAGNode:
        """Register a node; re-registering updates its kind and order."""
        node = self._nodes.get(name)
        if node is None:
            node = DAGNode(name=name, order=len(self._nodes) if order is None else order)
            self._nodes[name] = node
        elif order is not None:
            node.order = order
        node.kind = kind
        node.parent = parent
        node.position = position
        return node

    def add_dependency(self, upstream: str, downstream: str) -> None:
        """Add a dependency: downstream depends on upstream."""
        if upstream not in self._nodes:
            self.add_node(upstream)
        if downstream not in self._nodes:
            self.add_node(downstream)
        self._nodes[upstream].downstream.add(downstream)
        self._nodes[downstream].upstream.add(upstream)

    def add_dependencies(self, node: str, depends_on: list[str]) -> None:
        """Add multiple dependencies for a node."""
        for dep in depends_on:
            self.add_dependency(upstream=dep, downstream=node)

    def add_branches(
        self,
        target: str,
        specs: list["BranchSpec"],
        branch_upstream: dict[str, list[str]],
    ) -> None:
        """Splice the branches of an expanded dynamic target into the graph.

        Each branch depends on its own input slices and feeds the owning
        target, which completes once every branch is done.
        """
        owner = self._nodes[target]
        for spec in specs:
            self.add_node(spec.name, kind=NodeKind.BRANCH, order=owner.order, parent=target, position=spec.index)
            self.add_dependencies(spec.name, branch_upstream.get(spec.name, []))
            self.add_dependency(spec.name, target)

    def branches_of(self, target: str) -> list[str]:
        return [n for n in self._nodes[target].upstream if self._nodes[n].parent == target]

    @property
    def nodes(self) -> dict[str, DAGNode]:
        return self._nodes

    def get_upstream(self, name: str) -> set[str]:
        """Get all transitive upstream dependencies."""
        visited = set()
        queue = deque([name])
        while queue:
            node = queue.popleft()
            if node in visited or node not in self._nodes:
                continue
            visited.add(node)
            queue.extend(self._nodes[node].upstream)
        visited.discard(name)
        return visited

    def get_downstream(self, name: str) -> set[str]:
        """Get all transitive downstream dependents."""
        visited = set()
        queue = deque([name])
        while queue:
            node = queue.popleft()
            if node in visited or node not in self._nodes:
                continue
            visited.add(node)
            queue.extend(self._nodes[node].downstream)
        visited.discard(name)
        return visited

    def _sorted(self, names) -> list[str]:
        return sorted(names, key=lambda n: self._nodes[n].sort_key)

    def detect_cycles(self) -> list[str] | None:
        """Detect cycles using DFS. Returns the cycle path (first node repeated at the end) or None."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {n: WHITE for n in self._nodes}

        for start in self._sorted(self._nodes):
            if color[start] != WHITE:
                continue
            path = [start]
            color[start] = GRAY
            stack = [iter(self._sorted(self._nodes[start].downstream))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                    continue
                if color[child] == GRAY:
                    return path[path.index(child):] + [child]
                if color[child] == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append(iter(self._sorted(self._nodes[child].downstream)))
        return None

    def topological_sort(self) -> list[str]:
        """Return nodes in dependency order (upstream first).

        Ties are broken by (imports first, declaration order, name), so the
        order is identical across runs. Raises CycleError if a cycle is detected.
        """
        cycle = self.detect_cycles()
        if cycle:
            raise CycleError(cycle)

        in_degree = {n: len(self._nodes[n].upstream) for n in self._nodes}
        heap = [(self._nodes[n].sort_key, n) for n, d in in_degree.items() if d == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, node = heapq.heappop(heap)
            result.append(node)
            for child in self._nodes[node].downstream:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(heap, (self._nodes[child].sort_key, child))

        return result

    def parallel_groups(self) -> list[list[str]]:
        """Return execution groups — nodes in the same group can run in parallel.

        Each group only runs after all previous groups have completed.
        """
        cycle = self.detect_cycles()
        if cycle:
            raise CycleError(cycle)

        in_degree = {n: len(self._nodes[n].upstream) for n in self._nodes}
        current_group = [n for n, d in in_degree.items() if d == 0]
        groups = []

        while current_group:
            groups.append(self._sorted(current_group))
            next_group = []
            for node in current_group:
                for child in self._nodes[node].downstream:
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        next_group.append(child)
            current_group = next_group

        return groups

    def get_subgraph(self, roots: list[str]) -> "DAGResolver":
        """Get the sub-DAG needed to build the given nodes (roots plus all upstream)."""
        keep = set(roots)
        for root in roots:
            keep |= self.get_upstream(root)

        sub = DAGResolver()
        for name in self._sorted(keep):
            node = self._nodes[name]
            sub.add_node(name, kind=node.kind, order=node.order, parent=node.parent, position=node.position)
        for name in keep:
            for child in self._nodes[name].downstream:
                if child in keep:
                    sub.add_dependency(name, child)
        return sub

    def to_dict(self) -> dict:
        """Serialize the DAG for JSON output."""
        return {
            "nodes": [
                {"name": name, "kind": self._nodes[name].kind.value}
                for name in self.topological_sort()
            ],
            "edges": [
                {"upstream": name, "downstream": child}
                for name in self._sorted(self._nodes)
                for child in self._sorted(self._nodes[name].downstream)
            ],
            "groups": self.parallel_groups(),
        }
