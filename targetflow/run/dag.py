"""Dependency graph builder for targets."""

import heapq
from collections import defaultdict

from targetflow.exceptions import CyclicDependency, UnknownSymbol
from targetflow.run.target import Registry, Target


class DAG:
    """Directed acyclic graph of target dependencies.

    ``graph`` maps a target to the targets that read it; ``reverse_graph``
    maps a target to the targets it reads. Both value dependencies and the
    names referenced inside a pattern count as edges.
    """

    def __init__(self, registry: Registry | list[Target]):
        if not isinstance(registry, Registry):
            registry = Registry(registry)
        self.registry = registry
        self.targets = {t.name: t for t in registry}
        self._order = {name: i for i, name in enumerate(self.targets)}
        self.graph: dict[str, set[str]] = defaultdict(set)
        self.reverse_graph: dict[str, set[str]] = defaultdict(set)
        self.missing: dict[str, set[str]] = defaultdict(set)
        self._build_graph()

    def _build_graph(self):
        """Build dependency edges, collecting references to unknown names."""
        for name, target in self.targets.items():
            for dep in target.get_dependency_names():
                if dep not in self.targets:
                    self.missing[dep].add(name)
                    continue
                # Edge: producer -> consumer
                self.graph[dep].add(name)
                self.reverse_graph[name].add(dep)

    def _sorted(self, names) -> list[str]:
        return sorted(names, key=self._order.__getitem__)

    def get_dependencies(self, name: str) -> set[str]:
        """Get all targets that this target depends on."""
        return self.reverse_graph.get(name, set())

    def get_dependents(self, name: str) -> set[str]:
        """Get all targets that depend on this target."""
        return self.graph.get(name, set())

    def check_unknown(self) -> dict[str, set[str]]:
        """Return ``{missing name: referencing targets}`` (empty if none)."""
        return dict(self.missing)

    def check_cycles(self) -> list[str] | None:
        """Check for cycles in the dependency graph.

        Returns:
            None if no cycles, otherwise the target names forming a cycle,
            with the first name repeated at the end
        """
        visited = set()
        rec_stack = set()

        def visit(node: str, path: list[str]) -> list[str] | None:
            if node in rec_stack:
                cycle_start = path.index(node)
                return path[cycle_start:] + [node]

            if node in visited:
                return None

            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in self._sorted(self.get_dependents(node)):
                cycle = visit(neighbor, path.copy())
                if cycle:
                    return cycle

            rec_stack.remove(node)
            return None

        for name in self.targets:
            if name not in visited:
                cycle = visit(name, [])
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Raise on unknown references or cycles.

        Raises:
            UnknownSymbol: A dependency or pattern names a missing target
            CyclicDependency: The graph contains a cycle
        """
        if self.missing:
            raise UnknownSymbol(self.missing)
        cycle = self.check_cycles()
        if cycle:
            raise CyclicDependency(cycle)

    def topological_order(self) -> list[str]:
        """Targets in dependency order, ties broken by registration order."""
        self.validate()

        in_degree = {name: len(self.get_dependencies(name)) for name in self.targets}
        heap = [self._order[name] for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        names = list(self.targets)
        order: list[str] = []

        while heap:
            name = names[heapq.heappop(heap)]
            order.append(name)
            for dependent in self.get_dependents(name):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, self._order[dependent])

        return order

    def topological_sort(self) -> list[list[str]]:
        """Group targets by execution level.

        Returns:
            List of levels; targets within a level do not depend on each
            other, and each level is in registration order.
        """
        self.validate()

        in_degree = {name: len(self.get_dependencies(name)) for name in self.targets}
        level = [name for name, degree in in_degree.items() if degree == 0]
        levels = []

        while level:
            levels.append(level)
            following = []
            for name in level:
                for dependent in self.get_dependents(name):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            level = self._sorted(following)

        return levels

    def ancestors(self, name: str) -> set[str]:
        """All targets ``name`` transitively depends on."""
        return self._walk(name, self.get_dependencies)

    def descendants(self, name: str) -> set[str]:
        """All targets that transitively depend on ``name``."""
        return self._walk(name, self.get_dependents)

    @staticmethod
    def _walk(name, step) -> set[str]:
        seen: set[str] = set()
        to_process = list(step(name))
        while to_process:
            current = to_process.pop()
            if current in seen:
                continue
            seen.add(current)
            to_process.extend(step(current))
        return seen

    def downstream_weights(self) -> dict[str, int]:
        """Number of transitive dependents of every target."""
        return {name: len(self.descendants(name)) for name in self.targets}

    def filter_to_targets(self, names: list[str]) -> "DAG":
        """Create a new DAG with only ``names`` and their upstream closure.

        Raises:
            UnknownSymbol: If any requested name doesn't exist
        """
        missing = set(names) - set(self.targets)
        if missing:
            raise UnknownSymbol({name: {"<selection>"} for name in missing})

        needed = set(names)
        for name in names:
            needed |= self.ancestors(name)

        return DAG(self.registry.subset(needed))
