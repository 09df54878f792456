"""Resource dependency graph construction and ordering.

This module builds the dependency graph the planner works from:
1. Edges from explicit ``dependsOn`` declarations
2. Edges implied by output references (``{ref: storage.endpoint}``)
3. Cycle detection with the full cycle path for diagnostics
4. Deterministic topological order (Kahn, ties broken by resource id)

EXAMPLE DECLARATIONS:
```yaml
resources:
  storage:
    kind: storage-account
  backend:
    kind: compute-service
    dependsOn: [env]
    parameters:
      blobUrl: {ref: storage.endpoint}   # implies backend -> storage
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .models import ResourceSpec

logger = logging.getLogger(__name__)


class PlanningError(Exception):
    """Base for errors that invalidate the whole run before any apply."""

    pass


class CycleError(PlanningError):
    """Raised when the dependency graph is not a DAG.

    Attributes:
        cycle: Resource ids along the cycle, first id repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")

    @property
    def resource_ids(self) -> list[str]:
        return sorted(set(self.cycle))


class UnresolvedReferenceError(PlanningError):
    """Raised when a dependency or output reference cannot be resolved."""

    def __init__(self, resource_id: str, target: str, detail: str | None = None) -> None:
        self.resource_id = resource_id
        self.target = target
        message = detail or f"references unknown resource '{target}'"
        super().__init__(f"Resource '{resource_id}' {message}")

    @property
    def resource_ids(self) -> list[str]:
        return [self.resource_id]


@dataclass
class ResourceNode:
    """A node in the resource graph."""

    spec: ResourceSpec
    depends_on: list[str] = field(default_factory=list)

    @property
    def resource_id(self) -> str:
        return self.spec.id


@dataclass
class ResourceGraph:
    """Directed graph of resources; edges point from a resource to its dependencies."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    @classmethod
    def from_declarations(
        cls, specs: Mapping[str, ResourceSpec] | Iterable[ResourceSpec]
    ) -> ResourceGraph:
        """Build and validate the graph from resource declarations.

        Args:
            specs: Resource specs, either keyed by id or as an iterable.

        Returns:
            A validated acyclic graph.

        Raises:
            UnresolvedReferenceError: If a dependsOn entry or reference names
                an unknown resource.
            CycleError: If the resulting graph has a cycle.
        """
        spec_list = list(specs.values()) if isinstance(specs, Mapping) else list(specs)
        graph = cls()
        known = {spec.id for spec in spec_list}

        for spec in sorted(spec_list, key=lambda s: s.id):
            if spec.id in graph.nodes:
                raise PlanningError(f"Resource '{spec.id}' is declared more than once")

            edges: list[str] = []
            for dep in spec.depends_on:
                if dep not in known:
                    raise UnresolvedReferenceError(spec.id, dep)
                if dep not in edges:
                    edges.append(dep)

            for ref in spec.references():
                if ref.resource_id not in known:
                    raise UnresolvedReferenceError(
                        spec.id,
                        ref.resource_id,
                        f"references output '{ref.expression}' of unknown resource "
                        f"'{ref.resource_id}'",
                    )
                if ref.resource_id not in edges:
                    edges.append(ref.resource_id)

            graph.nodes[spec.id] = ResourceNode(spec=spec, depends_on=sorted(edges))

        graph.validate()
        logger.debug(
            "Resource graph built",
            extra={
                "resource_count": len(graph.nodes),
                "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
            },
        )
        return graph

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CycleError: With the first cycle found, in deterministic order.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    def find_cycle(self) -> list[str] | None:
        """Find a cycle with an iterative depth-first search.

        Returns:
            Cycle path with its first id repeated at the end, or None.
        """
        unvisited, in_progress, done = 0, 1, 2
        state = dict.fromkeys(self.nodes, unvisited)

        for root in sorted(self.nodes):
            if state[root] != unvisited:
                continue

            path: list[str] = [root]
            iterators = [iter(self.nodes[root].depends_on)]
            state[root] = in_progress

            while iterators:
                dep = next(iterators[-1], None)
                if dep is None:
                    state[path.pop()] = done
                    iterators.pop()
                    continue
                if state[dep] == in_progress:
                    return path[path.index(dep) :] + [dep]
                if state[dep] == unvisited:
                    state[dep] = in_progress
                    path.append(dep)
                    iterators.append(iter(self.nodes[dep].depends_on))

        return None

    def topological_sort(self) -> list[str]:
        """Return resource ids in dependency order (dependencies first).

        Returns:
            List of resource ids in apply order.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.resource_id)
                in_degree[node.resource_id] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def dependencies_of(self, resource_id: str) -> list[str]:
        """Direct dependencies of a resource."""
        return list(self.nodes[resource_id].depends_on)

    def dependents_of(self, resource_id: str) -> list[str]:
        """Resources that depend directly on ``resource_id``."""
        return sorted(
            node.resource_id
            for node in self.nodes.values()
            if resource_id in node.depends_on
        )

    def transitive_dependents(self, resource_id: str) -> list[str]:
        """Every resource that depends on ``resource_id``, directly or not."""
        seen: set[str] = set()
        stack = [resource_id]
        while stack:
            current = stack.pop()
            for dependent in self.dependents_of(current):
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        return sorted(seen)
