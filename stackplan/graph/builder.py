"""
Dependency graph builder.

Collects the resource nodes of one deployment unit and turns the references
held in their attributes into explicit dependency edges. Nodes are never
mutated; the graph holds copies with `depends_on` populated.

Usage:
    builder = GraphBuilder.from_unit(unit)
    graph = builder.build()
    graph.dependencies("service")   # ["storage"]
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

import structlog

from stackplan.core.exceptions import DuplicateIdError, UnresolvedReferenceError
from stackplan.models.resources import (
    DeploymentUnit,
    InputRef,
    Ref,
    ResourceNode,
    UnitOutputRef,
)

logger = structlog.get_logger(__name__)


@dataclass
class DependencyGraph:
    """Directed graph of resource nodes; an edge A -> B means A depends on B."""

    unit: str
    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    cross_unit_inputs: dict[str, UnitOutputRef] = field(default_factory=dict)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_ids(self) -> list[str]:
        return list(self.nodes)

    def _position(self, node_id: str) -> int:
        return self.node_ids.index(node_id)

    def dependencies(self, node_id: str) -> list[str]:
        """Direct dependencies of node_id, in insertion order."""
        return sorted(self.nodes[node_id].depends_on, key=self._position)

    def dependents(self, node_id: str) -> list[str]:
        """Nodes that depend directly on node_id, in insertion order."""
        return [
            other_id for other_id, node in self.nodes.items() if node_id in node.depends_on
        ]

    def transitive_dependents(self, node_id: str) -> list[str]:
        """Every node with a dependency path to node_id, in insertion order."""
        reached: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.dependents(current):
                if dependent not in reached:
                    reached.add(dependent)
                    frontier.append(dependent)
        return [other_id for other_id in self.nodes if other_id in reached]

    def edges(self) -> dict[str, list[str]]:
        """Adjacency map node id -> direct dependencies."""
        return {node_id: self.dependencies(node_id) for node_id in self.nodes}


class GraphBuilder:
    """Assembles a DependencyGraph from declared resource nodes."""

    def __init__(
        self,
        unit: str = "default",
        cross_unit_inputs: Optional[Mapping[str, UnitOutputRef]] = None,
    ):
        self.unit = unit
        self.cross_unit_inputs = dict(cross_unit_inputs or {})
        self._nodes: dict[str, ResourceNode] = {}

    @classmethod
    def from_unit(cls, unit: DeploymentUnit) -> "GraphBuilder":
        builder = cls(unit.name)
        builder.add_unit(unit)
        return builder

    def add_unit(self, unit: DeploymentUnit) -> None:
        """Add every node of unit in declaration order, plus its inputs."""
        self.cross_unit_inputs.update(unit.cross_unit_inputs)
        self.add_nodes(unit.resources)

    def add_node(self, node: ResourceNode) -> None:
        if node.id in self._nodes:
            raise DuplicateIdError(node.id, self.unit)
        self._nodes[node.id] = node

    def add_nodes(self, nodes: Iterable[ResourceNode]) -> None:
        for node in nodes:
            self.add_node(node)

    def build(self) -> DependencyGraph:
        """
        Materialize reference edges into `depends_on`.

        Raises:
            UnresolvedReferenceError: A reference names a node or cross-unit
                input that is not part of this unit.
        """
        graph = DependencyGraph(unit=self.unit, cross_unit_inputs=dict(self.cross_unit_inputs))

        for node in self._nodes.values():
            depends_on = set(node.depends_on)

            for target in node.depends_on:
                if target not in self._nodes:
                    raise UnresolvedReferenceError(node.id, target)

            for reference in node.references():
                if isinstance(reference, Ref):
                    if reference.node not in self._nodes:
                        raise UnresolvedReferenceError(node.id, str(reference))
                    depends_on.add(reference.node)
                elif isinstance(reference, InputRef):
                    if reference.name not in self.cross_unit_inputs:
                        raise UnresolvedReferenceError(
                            node.id,
                            str(reference),
                            f"Resource '{node.id}' uses undeclared cross-unit input "
                            f"'{reference.name}'",
                        )

            graph.nodes[node.id] = node.model_copy(update={"depends_on": depends_on})

        logger.debug(
            "dependency_graph_built",
            unit=self.unit,
            nodes=len(graph.nodes),
            edges=sum(len(n.depends_on) for n in graph.nodes.values()),
        )
        return graph
