"""Dependency graph over chain steps."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field


@dataclass
class DependencyGraph:
    """Directed graph where an edge ``(a, b)`` means ``b`` depends on ``a``."""

    nodes: list[str] = field(default_factory=list)
    edges: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_dependencies(cls, dependencies: dict[str, list[str]]) -> DependencyGraph:
        graph = cls(nodes=list(dependencies))
        for node, deps in dependencies.items():
            for dep in deps:
                graph.edges.append((dep, node))
        return graph

    def dependents(self, node: str) -> list[str]:
        return [target for source, target in self.edges if source == node]

    def downstream(self, roots: set[str]) -> set[str]:
        """All nodes reachable from ``roots``, excluding the roots themselves."""
        seen: set[str] = set()
        queue = deque(roots)
        while queue:
            node = queue.popleft()
            for child in self.dependents(node):
                if child not in seen and child not in roots:
                    seen.add(child)
                    queue.append(child)
        return seen

    def layers(self) -> tuple[list[list[str]], set[str]]:
        """Kahn layering.

        Returns ``(layers, blocked)`` where each layer holds nodes whose
        dependencies all sit in earlier layers, and ``blocked`` holds cycle
        members plus everything downstream of a cycle.
        """
        indegree = {node: 0 for node in self.nodes}
        for source, target in self.edges:
            if source in indegree and target in indegree:
                indegree[target] += 1
        order = {node: idx for idx, node in enumerate(self.nodes)}
        current = [node for node in self.nodes if indegree[node] == 0]
        layers: list[list[str]] = []
        placed: set[str] = set()
        while current:
            layers.append(current)
            placed.update(current)
            nxt: list[str] = []
            for node in current:
                for child in self.dependents(node):
                    if child not in indegree:
                        continue
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        nxt.append(child)
            current = sorted(set(nxt), key=order.__getitem__)
        blocked = {node for node in self.nodes if node not in placed}
        return layers, blocked

    def is_acyclic(self) -> bool:
        _, blocked = self.layers()
        return not blocked
