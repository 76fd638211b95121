"""
Planning pass for one deployment unit.

build graph -> resolve order -> read state -> diff -> change set

Planning never calls the provider. Every error it raises (duplicate ids,
unresolved references, cycles) surfaces before any side effect.
"""

from typing import Any, Mapping, Optional

import structlog

from stackplan.graph.builder import DependencyGraph, GraphBuilder
from stackplan.graph.diff import DiffEngine
from stackplan.graph.kinds import KindRegistry
from stackplan.graph.resolver import PlanResolver
from stackplan.models.plan import ChangeAction, ChangeSet, NodeDiff, ProvisioningPlan
from stackplan.models.resources import DeploymentUnit
from stackplan.models.state import StateSnapshot
from stackplan.state.store import StateStore

logger = structlog.get_logger(__name__)


class Planner:
    """Produces change sets for deployment units."""

    def __init__(
        self,
        store: StateStore,
        kinds: Optional[KindRegistry] = None,
        resolver: Optional[PlanResolver] = None,
    ):
        self.store = store
        self.resolver = resolver or PlanResolver()
        self.diff_engine = DiffEngine(kinds)

    async def plan(
        self,
        unit: DeploymentUnit,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ChangeSet:
        """Plan unit against its persisted snapshot and current input values."""
        graph = GraphBuilder.from_unit(unit).build()
        order = self.resolver.resolve(graph)
        prior = await self.store.read(unit.name)
        return self._change_set(graph, order, prior, inputs)

    def plan_against(
        self,
        unit: DeploymentUnit,
        prior: StateSnapshot,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ChangeSet:
        """Plan unit against an explicit snapshot (no store access)."""
        graph = GraphBuilder.from_unit(unit).build()
        order = self.resolver.resolve(graph)
        return self._change_set(graph, order, prior, inputs)

    async def plan_destroy(self, unit_name: str) -> ChangeSet:
        """Delete every recorded node, dependents before their dependencies."""
        prior = await self.store.read(unit_name)
        teardown = self.resolver.reverse(self.resolver.resolve_state(prior))
        diffs = {
            node_id: NodeDiff(node_id=node_id, action=ChangeAction.DELETE, reason="unit destroyed")
            for node_id in teardown.steps
        }
        logger.info("destroy_planned", unit=unit_name, nodes=len(teardown))
        return ChangeSet(unit=unit_name, plan=teardown, diffs=diffs, prior=prior)

    def _change_set(
        self,
        graph: DependencyGraph,
        order: ProvisioningPlan,
        prior: StateSnapshot,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ChangeSet:
        diffs = self.diff_engine.diff(graph, prior, inputs)

        # Deletions run last, in teardown order of the recorded graph
        deleted = {node_id for node_id, diff in diffs.items() if diff.action == ChangeAction.DELETE}
        teardown = self.resolver.reverse(self.resolver.resolve_state(prior))
        deletions = tuple(node_id for node_id in teardown.steps if node_id in deleted)

        plan = ProvisioningPlan(unit=graph.unit, steps=order.steps + deletions)
        change_set = ChangeSet(
            unit=graph.unit,
            plan=plan,
            diffs=diffs,
            desired=dict(graph.nodes),
            prior=prior,
        )
        logger.info("unit_planned", unit=graph.unit, summary=change_set.summary())
        return change_set
