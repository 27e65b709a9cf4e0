"""Resource graph for deployment orchestration.

Builds a dependency graph from ResourceSpecs and computes traversal
orderings for apply (dependencies first) and teardown (dependents first).
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Optional, Sequence

from manifest import Manifest, ResourceKind, ResourceSpec, canonical_hash

if TYPE_CHECKING:
    from deploy_opr.state import DeploymentState

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Invalid resource graph. Fatal before any provider call."""


class DependencyError(GraphError):
    """A dependency names a resource that does not exist."""

    def __init__(self, missing: str, referenced_by: str):
        self.missing = missing
        self.referenced_by = referenced_by
        super().__init__(f"Resource '{referenced_by}' depends on unknown resource '{missing}'")


class CycleError(GraphError):
    """The dependency graph contains a cycle."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"Dependency cycle: {' -> '.join(path)}")


class DuplicateResourceError(GraphError):
    """Two resources share a logical name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate resource name: '{name}'")


@dataclass
class GraphNode:
    """A resource in the graph with its dependency edges.

    Attributes:
        spec: The underlying ResourceSpec
        index: Position in the input sequence (tie-breaker for ordering)
        dependencies: Names this resource requires before creation
        dependents: Names that require this resource
        effective_hash: Spec hash combined with the hashes of referenced resources
    """
    spec: ResourceSpec
    index: int
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    effective_hash: str = ''

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def kind(self) -> ResourceKind:
        return self.spec.kind

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, kind={self.kind.value}, deps={self.dependencies})"


class ResourceGraph:
    """Acyclic dependency graph over a deployment's resources.

    Provides ordered traversal for lifecycle operations:
    - order(): dependencies before dependents (Kahn, ties by input order)
    - reverse_order(): dependents before dependencies
    """

    def __init__(self, specs: Sequence[ResourceSpec]):
        """Build the graph.

        Raises:
            DuplicateResourceError: If two specs share a name
            DependencyError: If a dependency does not resolve
            CycleError: If the dependencies form a cycle
        """
        self._nodes: dict[str, GraphNode] = {}
        self._order: list[str] = []
        self._build(specs)

    def _build(self, specs: Sequence[ResourceSpec]) -> None:
        for i, spec in enumerate(specs):
            if spec.name in self._nodes:
                raise DuplicateResourceError(spec.name)
            self._nodes[spec.name] = GraphNode(spec=spec, index=i)

        # Wire edges; every dependency must resolve
        for node in self._nodes.values():
            for dep in node.spec.dependencies:
                if dep not in self._nodes:
                    raise DependencyError(dep, node.name)
                node.dependencies.append(dep)
                self._nodes[dep].dependents.append(node.name)

        self._order = self._topological_sort()

        for name in self._order:
            node = self._nodes[name]
            node.effective_hash = canonical_hash({
                'spec': node.spec.spec_hash,
                'refs': {ref: self._nodes[ref].effective_hash for ref in node.spec.references},
            })

        logger.debug(f"Resource graph order: {self._order}")

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm with a min-heap on input index for stable order."""
        remaining = {name: len(node.dependencies) for name, node in self._nodes.items()}
        ready = [(node.index, name) for name, node in self._nodes.items() if not node.dependencies]
        heapq.heapify(ready)

        ordered: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in self._nodes[name].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._nodes[dependent].index, dependent))

        if len(ordered) != len(self._nodes):
            stuck = [n for n in self._nodes if remaining[n] > 0]
            raise CycleError(self._find_cycle(stuck))
        return ordered

    def _find_cycle(self, stuck: list[str]) -> list[str]:
        """Return one cycle among unsorted nodes as a closed path [a, b, ..., a]."""
        stuck_set = set(stuck)
        visited: set[str] = set()

        for start in stuck:
            if start in visited:
                continue
            path: list[str] = []
            on_path: dict[str, int] = {}
            stack = [(start, iter(self._nodes[start].dependencies))]
            path.append(start)
            on_path[start] = 0
            while stack:
                name, deps = stack[-1]
                advanced = False
                for dep in deps:
                    if dep not in stuck_set:
                        continue
                    if dep in on_path:
                        return path[on_path[dep]:] + [dep]
                    if dep not in visited:
                        on_path[dep] = len(path)
                        path.append(dep)
                        stack.append((dep, iter(self._nodes[dep].dependencies)))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    visited.add(name)
                    del on_path[path.pop()]
        # Unreachable when Kahn's algorithm left nodes behind
        return stuck

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[GraphNode]:
        return (self._nodes[name] for name in self._order)

    def get_node(self, name: str) -> GraphNode:
        """Get a GraphNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    @property
    def specs(self) -> list[ResourceSpec]:
        """Specs in input order."""
        return [n.spec for n in sorted(self._nodes.values(), key=lambda n: n.index)]

    def order(self) -> list[str]:
        """Names in apply order (dependencies before dependents)."""
        return list(self._order)

    def reverse_order(self) -> list[str]:
        """Names in teardown order (dependents before dependencies)."""
        return list(reversed(self._order))

    def dependencies(self, name: str) -> list[str]:
        return list(self._nodes[name].dependencies)

    def dependents(self, name: str) -> list[str]:
        return list(self._nodes[name].dependents)

    def transitive_dependents(self, name: str) -> set[str]:
        """Every resource that directly or indirectly depends on name."""
        found: set[str] = set()
        queue = list(self._nodes[name].dependents)
        while queue:
            current = queue.pop()
            if current in found:
                continue
            found.add(current)
            queue.extend(self._nodes[current].dependents)
        return found

    def effective_hash(self, name: str) -> str:
        return self._nodes[name].effective_hash


def build(specs: Sequence[ResourceSpec]) -> ResourceGraph:
    """Build a ResourceGraph from an ordered sequence of specs."""
    return ResourceGraph(specs)


def build_from_manifest(manifest: Manifest) -> ResourceGraph:
    return ResourceGraph(manifest.resources)


def merge_orphans(graph: Optional[ResourceGraph], state: 'DeploymentState') -> ResourceGraph:
    """Extend a graph with resources recorded in state but missing from it.

    Orphans carry no params; their kind and dependencies come from the state
    recorded at their last apply, which is enough to order their deletion.
    Dependencies on resources that are neither in the graph nor in state
    are dropped.
    """
    specs = list(graph.specs) if graph is not None else []
    known = {s.name for s in specs}

    orphans = [
        rs for name, rs in state.resources.items()
        if name not in known and rs.status.value != 'deleted'
    ]
    orphan_names = {rs.name for rs in orphans}
    for rs in orphans:
        deps = tuple(d for d in rs.dependencies if d in known or d in orphan_names)
        specs.append(ResourceSpec(name=rs.name, kind=ResourceKind(rs.kind), depends_on=deps))

    if orphans:
        logger.info(f"Including {len(orphans)} orphaned resource(s): {sorted(orphan_names)}")
    return ResourceGraph(specs)
