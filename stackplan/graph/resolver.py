"""
Plan resolver.

Orders a dependency graph with a depth-first topological sort using
three-colour marking: white (unvisited), grey (on the current path) and
black (done). Meeting a grey node again means the path closes a cycle.

Roots and dependencies are visited in insertion order, so identical input
always yields the identical plan.
"""

from enum import Enum
from typing import Iterable, Mapping, Sequence

import structlog

from stackplan.core.exceptions import CyclicDependencyError, UnresolvedReferenceError
from stackplan.graph.builder import DependencyGraph
from stackplan.models.plan import ProvisioningPlan
from stackplan.models.state import StateSnapshot

logger = structlog.get_logger(__name__)


class _Mark(Enum):
    WHITE = 0
    GREY = 1
    BLACK = 2


def topological_order(ids: Sequence[str], edges: Mapping[str, Iterable[str]]) -> list[str]:
    """
    Order ids so that every id appears after all of its dependencies.

    Args:
        ids: All vertices, in tie-break order.
        edges: Vertex -> the vertices it depends on.

    Raises:
        CyclicDependencyError: The dependency relation has a cycle; the
            error names the cycle members in path order.
        UnresolvedReferenceError: An edge points outside `ids`.
    """
    marks = {vertex: _Mark.WHITE for vertex in ids}
    ordered: list[str] = []

    for root in ids:
        if marks[root] is not _Mark.WHITE:
            continue

        marks[root] = _Mark.GREY
        stack = [(root, iter(edges.get(root, ())))]

        # Iterative DFS so deep chains don't hit the recursion limit
        while stack:
            vertex, pending = stack[-1]
            for dependency in pending:
                if dependency not in marks:
                    raise UnresolvedReferenceError(vertex, dependency)
                if marks[dependency] is _Mark.GREY:
                    path = [entry[0] for entry in stack]
                    raise CyclicDependencyError(path[path.index(dependency):] + [dependency])
                if marks[dependency] is _Mark.WHITE:
                    marks[dependency] = _Mark.GREY
                    stack.append((dependency, iter(edges.get(dependency, ()))))
                    break
            else:
                stack.pop()
                marks[vertex] = _Mark.BLACK
                ordered.append(vertex)

    return ordered


class PlanResolver:
    """Turns dependency graphs into provisioning plans."""

    def resolve(self, graph: DependencyGraph) -> ProvisioningPlan:
        """Dependency-respecting order of every node in graph."""
        steps = topological_order(graph.node_ids, graph.edges())
        logger.debug("plan_resolved", unit=graph.unit, steps=steps)
        return ProvisioningPlan(unit=graph.unit, steps=tuple(steps))

    def order(self, ids: Sequence[str], edges: Mapping[str, Iterable[str]]) -> list[str]:
        """Dependency order of arbitrary ids (used for units as well as nodes)."""
        return topological_order(ids, edges)

    def reverse(self, plan: ProvisioningPlan) -> ProvisioningPlan:
        """Teardown order: the exact inverse of plan."""
        return plan.reversed()

    def resolve_state(self, snapshot: StateSnapshot) -> ProvisioningPlan:
        """
        Creation order of the nodes recorded in a snapshot.

        Uses the dependencies recorded at apply time; edges to nodes that
        are no longer recorded are ignored.
        """
        ids = list(snapshot.resources)
        recorded = set(ids)
        edges = {
            node_id: [dep for dep in node_state.depends_on if dep in recorded]
            for node_id, node_state in snapshot.resources.items()
        }
        return ProvisioningPlan(unit=snapshot.unit, steps=tuple(topological_order(ids, edges)))
