"""Dependency graph construction for declared resources."""
from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .errors import CycleError, UnresolvedReferenceError
from .resources import ResourceDescriptor, ResourceKind

Key = tuple[ResourceKind, str]

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass
class DependencyGraph:
    """Directed acyclic graph where an edge means "must exist before"."""

    _nodes: dict[Key, ResourceDescriptor] = field(default_factory=dict)
    _dependencies: dict[Key, set[Key]] = field(default_factory=dict)
    _dependents: dict[Key, set[Key]] = field(default_factory=dict)

    def __contains__(self, key: object) -> bool:
        """Return ``True`` when *key* is a declared ``(kind, name)`` pair."""
        return key in self._nodes

    def __len__(self) -> int:
        """Return the number of declared resources."""
        return len(self._nodes)

    def get(self, key: Key) -> ResourceDescriptor:
        """Return the descriptor stored under *key*."""
        return self._nodes[key]

    def nodes(self) -> list[ResourceDescriptor]:
        """Return descriptors in declaration order."""
        return list(self._nodes.values())

    def dependencies(self, key: Key) -> set[Key]:
        """Return the direct dependencies of *key*."""
        return set(self._dependencies.get(key, ()))

    def dependents(self, key: Key) -> set[Key]:
        """Return the resources that directly depend on *key*."""
        return set(self._dependents.get(key, ()))

    def transitive_dependents(self, key: Key) -> set[Key]:
        """Return every resource reachable from *key* along dependency edges."""
        seen: set[Key] = set()
        pending = list(self._dependents.get(key, ()))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self._dependents.get(current, ()))
        return seen

    def topological_order(self) -> list[ResourceDescriptor]:
        """Return descriptors so every dependency precedes its dependents.

        Independent resources keep their declaration order.
        """
        position = {key: index for index, key in enumerate(self._nodes)}
        remaining = {key: len(self._dependencies.get(key, ())) for key in self._nodes}
        ready = [position[key] for key, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        keys = list(self._nodes)
        ordered: list[ResourceDescriptor] = []
        while ready:
            key = keys[heapq.heappop(ready)]
            ordered.append(self._nodes[key])
            for dependent in self._dependents.get(key, ()):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, position[dependent])
        if len(ordered) != len(self._nodes):  # pragma: no cover - build() rejects cycles
            raise CycleError([key[1] for key, count in remaining.items() if count])
        return ordered

    # ------------------------------------------------------------------
    def _add_node(self, resource: ResourceDescriptor) -> None:
        self._nodes[resource.key] = resource
        self._dependencies.setdefault(resource.key, set())
        self._dependents.setdefault(resource.key, set())

    def _add_edge(self, dependency: Key, dependent: Key) -> None:
        self._dependencies[dependent].add(dependency)
        self._dependents[dependency].add(dependent)

    def _find_cycle(self) -> list[Key] | None:
        colour = {key: _WHITE for key in self._nodes}
        stack: list[Key] = []

        def visit(key: Key) -> list[Key] | None:
            colour[key] = _GREY
            stack.append(key)
            for dependency in sorted(self._dependencies[key], key=_sort_key):
                if colour[dependency] == _GREY:
                    return stack[stack.index(dependency) :]
                if colour[dependency] == _WHITE:
                    found = visit(dependency)
                    if found is not None:
                        return found
            stack.pop()
            colour[key] = _BLACK
            return None

        for key in self._nodes:
            if colour[key] == _WHITE:
                found = visit(key)
                if found is not None:
                    return found
        return None


def _sort_key(key: Key) -> tuple[str, str]:
    return (key[0].value, key[1])


def build(resources: Iterable[ResourceDescriptor]) -> DependencyGraph:
    """Build the dependency graph for *resources*.

    Edges come from attribute references and explicit ``depends_on`` hints.
    Raises :class:`CycleError` naming the participating resources when the
    references loop back on themselves.
    """
    graph = DependencyGraph()
    declared: Sequence[ResourceDescriptor] = list(resources)
    for resource in declared:
        graph._add_node(resource)

    for resource in declared:
        for reference in resource.references():
            if reference.key not in graph:
                raise UnresolvedReferenceError(resource.address, reference.address)
            graph._add_edge(reference.key, resource.key)

    cycle = graph._find_cycle()
    if cycle is not None:
        # The DFS walks dependency edges, so reverse to read in creation order.
        raise CycleError([graph.get(key).address for key in reversed(cycle)])
    return graph


__all__ = ["DependencyGraph", "Key", "build"]
