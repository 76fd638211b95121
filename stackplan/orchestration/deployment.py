"""
Multi-unit deployment orchestration.

A deployment is a set of units that consume each other's outputs through
cross-unit inputs. Units are applied in dependency order (upstream first)
and destroyed in the reverse order. Each unit keeps its own snapshot, so a
unit's writes never collide with another's.

Usage:
    orchestrator = DeploymentOrchestrator(units, provider, store, settings)
    results = await orchestrator.apply_all()
    await orchestrator.destroy_all()
"""

from typing import Any, Optional, Sequence

import structlog

from stackplan.config.settings import Settings, get_settings
from stackplan.core.exceptions import DuplicateIdError, UnresolvedReferenceError
from stackplan.execution.driver import ExecutionDriver
from stackplan.execution.planner import Planner
from stackplan.graph.builder import GraphBuilder
from stackplan.graph.kinds import KindRegistry
from stackplan.graph.resolver import PlanResolver
from stackplan.models.plan import ApplyResult, ChangeSet
from stackplan.models.resources import DeploymentUnit
from stackplan.providers.base import ResourceProvider
from stackplan.state.store import StateStore

logger = structlog.get_logger(__name__)


class DeploymentOrchestrator:
    """Plans, applies and destroys a group of linked deployment units."""

    def __init__(
        self,
        units: Sequence[DeploymentUnit],
        provider: ResourceProvider,
        store: StateStore,
        settings: Optional[Settings] = None,
        kinds: Optional[KindRegistry] = None,
    ):
        self.units: dict[str, DeploymentUnit] = {}
        for unit in units:
            if unit.name in self.units:
                raise DuplicateIdError(unit.name)
            self.units[unit.name] = unit

        self.store = store
        self.settings = settings or get_settings()
        self.planner = Planner(store, kinds)
        self.driver = ExecutionDriver(provider, store, self.settings)

    def unit_order(self) -> list[str]:
        """
        Unit names, every unit after the units it takes inputs from.

        Raises:
            UnresolvedReferenceError: An input names a unit not in the deployment.
            CyclicDependencyError: Units depend on each other (or themselves).
        """
        edges: dict[str, list[str]] = {}
        for name, unit in self.units.items():
            for upstream in unit.upstream_units():
                if upstream not in self.units:
                    raise UnresolvedReferenceError(
                        name,
                        upstream,
                        f"Unit '{name}' takes inputs from unknown unit '{upstream}'",
                    )
            edges[name] = unit.upstream_units()
        return self.planner.resolver.order(list(self.units), edges)

    def validate(self) -> list[str]:
        """Run every planning-time check for every unit; returns the unit order."""
        order = self.unit_order()
        resolver = PlanResolver()
        for name in order:
            unit = self.units[name]
            graph = GraphBuilder.from_unit(unit).build()
            resolver.resolve(graph)
            for input_name, target in unit.cross_unit_inputs.items():
                upstream = self.units[target.unit].get(target.node)
                if upstream is None:
                    raise UnresolvedReferenceError(
                        name,
                        str(target),
                        f"Input '{input_name}' of unit '{name}' names unknown node '{target}'",
                    )
        return order

    async def resolve_inputs(self, name: str, strict: bool = True) -> dict[str, Any]:
        """
        Values of a unit's cross-unit inputs from upstream snapshots.

        Args:
            name: Unit name.
            strict: Raise when an upstream output is missing; otherwise
                leave that input out.
        """
        unit = self.units[name]
        values: dict[str, Any] = {}
        for input_name, target in unit.cross_unit_inputs.items():
            snapshot = await self.store.read(target.unit)
            outputs = snapshot.outputs_of(target.node)
            if outputs is None or target.output not in outputs:
                if strict:
                    raise UnresolvedReferenceError(
                        name,
                        str(target),
                        f"Input '{input_name}' of unit '{name}' needs '{target}', "
                        "which has not been provisioned",
                    )
                continue
            values[input_name] = outputs[target.output]
        return values

    async def plan_all(self) -> dict[str, ChangeSet]:
        """Change sets for every unit against current state, in unit order."""
        change_sets: dict[str, ChangeSet] = {}
        for name in self.validate():
            inputs = await self.resolve_inputs(name, strict=False)
            change_sets[name] = await self.planner.plan(self.units[name], inputs)
        return change_sets

    async def apply_all(self) -> dict[str, ApplyResult]:
        """
        Apply every unit, upstream units first.

        Planning errors in any unit abort before the first provider call.
        A failing unit stops the deployment; units applied before it keep
        their recorded state.
        """
        order = self.validate()
        logger.info("deployment_apply_started", units=order)

        results: dict[str, ApplyResult] = {}
        for name in order:
            inputs = await self.resolve_inputs(name)
            change_set = await self.planner.plan(self.units[name], inputs)
            if not change_set.has_changes:
                logger.info("unit_up_to_date", unit=name)
            results[name] = await self.driver.apply_change_set(change_set, inputs)

        logger.info("deployment_apply_completed", units=order)
        return results

    async def destroy_all(self) -> dict[str, ApplyResult]:
        """Delete every recorded resource, downstream units first."""
        order = list(reversed(self.unit_order()))
        logger.info("deployment_destroy_started", units=order)

        results: dict[str, ApplyResult] = {}
        for name in order:
            results[name] = await self.driver.destroy(name)

        logger.info("deployment_destroy_completed", units=order)
        return results

    async def outputs(self, name: str) -> dict[str, dict[str, Any]]:
        """Recorded outputs of every node in a unit."""
        snapshot = await self.store.read(name)
        return {node_id: dict(state.outputs) for node_id, state in snapshot.resources.items()}
