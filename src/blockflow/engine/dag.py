"""
DAG dependency resolution for workflow nodes.

This module is intentionally SYNCHRONOUS: pure in-memory graph algorithms
(in-degree maps, execution waves, DFS cycle search) with no I/O.
The validator uses it to check a definition, and the orchestrator uses the
in-degree and adjacency maps to seed its event-driven scheduler.

Edges point from source to target: an edge ``a -> b`` means ``b`` depends
on ``a``.
"""

from collections import deque

from .load_result import LoadResult


class DAGResolver:
    """Resolves execution order for workflow nodes connected by edges."""

    def __init__(self, nodes: list[str], edges: list[tuple[str, str]]):
        """
        Initialize DAG resolver.

        Args:
            nodes: Node IDs in definition order
            edges: (source, target) pairs; parallel edges are allowed
        """
        self.nodes = nodes
        self.edges = edges

    def successors(self) -> dict[str, list[str]]:
        """Map each node to the targets of its outgoing edges (unique, in edge order)."""
        adjacency: dict[str, list[str]] = {node: [] for node in self.nodes}
        for source, target in self.edges:
            if source in adjacency and target not in adjacency[source]:
                adjacency[source].append(target)
        return adjacency

    def predecessors(self) -> dict[str, list[str]]:
        """Map each node to the sources of its incoming edges (unique, in edge order)."""
        reverse: dict[str, list[str]] = {node: [] for node in self.nodes}
        for source, target in self.edges:
            if target in reverse and source not in reverse[target]:
                reverse[target].append(source)
        return reverse

    def in_degree(self) -> dict[str, int]:
        """Number of distinct upstream nodes per node."""
        return {node: len(sources) for node, sources in self.predecessors().items()}

    def roots(self) -> list[str]:
        """Nodes without incoming edges."""
        return [node for node, degree in self.in_degree().items() if degree == 0]

    def sinks(self) -> list[str]:
        """Nodes without outgoing edges."""
        return [node for node, targets in self.successors().items() if not targets]

    def _check_references(self) -> str | None:
        known = set(self.nodes)
        for source, target in self.edges:
            if source not in known:
                return f"Edge source '{source}' not found in nodes list"
            if target not in known:
                return f"Edge target '{target}' not found in nodes list"
        return None

    def get_execution_waves(self) -> LoadResult[list[list[str]]]:
        """
        Group nodes into waves that could run in parallel.

        The orchestrator schedules event-driven rather than wave by wave;
        the validator reports waves as ``ValidationResult.execution_waves``.

        Returns:
            Result containing a list of waves (each a list of node IDs)
        """
        error = self._check_references()
        if error:
            return LoadResult.failure(error)

        predecessors = self.predecessors()
        waves: list[list[str]] = []
        completed: set[str] = set()
        remaining = list(self.nodes)

        while remaining:
            ready = [node for node in remaining if all(dep in completed for dep in predecessors[node])]
            if not ready:
                return LoadResult.failure("Cyclic dependency detected in workflow")

            waves.append(ready)
            completed.update(ready)
            remaining = [node for node in remaining if node not in completed]

        return LoadResult.success(waves)

    def find_cycle(self) -> list[str] | None:
        """
        Return one cycle as a node path (first node repeated at the end), or None.

        Iterative DFS with an explicit recursion stack, so deep graphs do not
        hit the interpreter recursion limit. Runs in O(V + E).
        """
        adjacency = self.successors()
        visited: set[str] = set()
        on_stack: set[str] = set()

        for start in self.nodes:
            if start in visited:
                continue
            path: list[str] = [start]
            iterators = [iter(adjacency.get(start, []))]
            visited.add(start)
            on_stack.add(start)

            while iterators:
                neighbor = next(iterators[-1], None)
                if neighbor is None:
                    iterators.pop()
                    on_stack.discard(path.pop())
                    continue
                if neighbor in on_stack:
                    return path[path.index(neighbor) :] + [neighbor]
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_stack.add(neighbor)
                    path.append(neighbor)
                    iterators.append(iter(adjacency.get(neighbor, [])))

        return None

    def reachable_from(self, starts: list[str]) -> set[str]:
        """All nodes reachable from ``starts`` (inclusive) following edge direction."""
        adjacency = self.successors()
        seen = set(node for node in starts if node in adjacency)
        queue = deque(seen)
        while queue:
            current = queue.popleft()
            for neighbor in adjacency[current]:
                if neighbor not in seen:
                    seen.add(neighbor)
                    queue.append(neighbor)
        return seen
