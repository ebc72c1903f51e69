"""Task graph construction and planning.

``build_graph`` turns a ``TaskRepository`` into a ``TaskGraph`` (an arena of
tasks keyed by identity plus adjacency tuples), collapsing duplicate
declarations. ``topo_sort`` proves the graph acyclic and produces a
deterministic ``ExecutionPlan``, or raises ``DependencyCycleError`` carrying
the full loop.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from .errors import DependencyCycleError, DuplicateTaskError, MissingDependencyError
from .logging import get_logger
from .repository import TaskRepository
from .task import Identity, Task


log = get_logger("buildgraph.core")


class TaskGraph:
    """Read-only dependency graph; edges point from a task to what it depends on."""

    def __init__(
        self,
        nodes: Mapping[Identity, Task],
        edges: Mapping[Identity, tuple[Identity, ...]],
        origins: Mapping[Identity, list[str | None]] | None = None,
    ):
        self._nodes = MappingProxyType(dict(nodes))
        self._edges = MappingProxyType({k: tuple(edges.get(k, ())) for k in self._nodes})
        self._origins = MappingProxyType(
            {k: tuple((origins or {}).get(k, ())) for k in self._nodes}
        )
        dependents: dict[Identity, list[Identity]] = {k: [] for k in self._nodes}
        for node, deps in self._edges.items():
            for dep in deps:
                dependents[dep].append(node)
        self._dependents = MappingProxyType(
            {k: tuple(sorted(v)) for k, v in dependents.items()}
        )

    @property
    def origins(self) -> Mapping[Identity, tuple[str | None, ...]]:
        return self._origins

    def identities(self) -> list[Identity]:
        return sorted(self._nodes)

    def task(self, identity: Identity) -> Task:
        return self._nodes[identity]

    def dependencies(self, identity: Identity) -> tuple[Identity, ...]:
        return self._edges[identity]

    def dependents(self, identity: Identity) -> tuple[Identity, ...]:
        return self._dependents[identity]

    def roots(self) -> list[Identity]:
        """Tasks without dependencies."""
        return [i for i in self.identities() if not self._edges[i]]

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, identity: object) -> bool:
        return identity in self._nodes

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.identities())

    def ancestors(self, identity: Identity) -> set[Identity]:
        """Everything ``identity`` transitively depends on."""
        return self._closure(identity, self._edges)

    def descendants(self, identity: Identity) -> set[Identity]:
        """Everything that transitively depends on ``identity``."""
        return self._closure(identity, self._dependents)

    @staticmethod
    def _closure(start: Identity, adjacency: Mapping[Identity, tuple[Identity, ...]]) -> set[Identity]:
        seen: set[Identity] = set()
        stack = list(adjacency[start])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(adjacency[n])
        return seen

    def subgraph(self, targets: Iterable[Identity]) -> "TaskGraph":
        """Restrict to ``targets`` and everything they depend on."""
        keep: set[Identity] = set()
        for t in targets:
            if t not in self._nodes:
                raise MissingDependencyError(None, t)
            keep.add(t)
            keep |= self.ancestors(t)
        return TaskGraph(
            {k: self._nodes[k] for k in keep},
            {k: self._edges[k] for k in keep},
            {k: list(self._origins[k]) for k in keep},
        )


def build_graph(repository: TaskRepository) -> TaskGraph:
    nodes: dict[Identity, Task] = {}
    origins: dict[Identity, list[str | None]] = defaultdict(list)
    for origin, task in repository.declarations():
        ident = task.identity
        existing = nodes.get(ident)
        if existing is None:
            nodes[ident] = task
        elif existing.content_key() != task.content_key():
            raise DuplicateTaskError(ident, origins[ident] + [origin])
        else:
            log.debug("Duplicate declaration of %s collapsed (%s)", ident, origin)
        origins[ident].append(origin)

    edges: dict[Identity, tuple[Identity, ...]] = {}
    for ident in sorted(nodes):
        deps = sorted(set(nodes[ident].depends))
        for dep in deps:
            if dep not in nodes:
                raise MissingDependencyError(ident, dep, origins[ident][0])
        edges[ident] = tuple(deps)

    log.info("Task graph built: %d tasks", len(nodes))
    return TaskGraph(nodes, edges, origins)


@dataclass(frozen=True)
class ExecutionPlan:
    order: tuple[Identity, ...]

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)

    def position(self, identity: Identity) -> int:
        return self.order.index(identity)

    def as_strings(self) -> list[str]:
        return [str(i) for i in self.order]


_WHITE, _GREY, _BLACK = 0, 1, 2


def topo_sort(graph: TaskGraph) -> ExecutionPlan:
    """Depth-first post-order over identities in ascending order.

    Every dependency lands before its dependents; ties follow identity string
    order so that the same graph always yields the same plan.
    """
    color = {n: _WHITE for n in graph.identities()}
    order: list[Identity] = []
    for root in graph.identities():
        if color[root] != _WHITE:
            continue
        color[root] = _GREY
        stack = [(root, iter(graph.dependencies(root)))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if color[dep] == _GREY:
                    path = [n for n, _ in stack]
                    loop = path[path.index(dep):] + [dep]
                    raise DependencyCycleError(
                        loop, {i: list(graph.origins[i]) for i in loop}
                    )
                if color[dep] == _WHITE:
                    color[dep] = _GREY
                    stack.append((dep, iter(graph.dependencies(dep))))
                    break
            else:
                stack.pop()
                color[node] = _BLACK
                order.append(node)
    return ExecutionPlan(tuple(order))


def check_acyclic(graph: TaskGraph) -> ExecutionPlan:
    try:
        return topo_sort(graph)
    except DependencyCycleError as e:
        log.error("%s", e.describe())
        raise
