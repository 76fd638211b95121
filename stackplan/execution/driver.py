"""
Execution driver.

Walks a provisioning plan and applies each changed node through the
provider, persisting the unit's snapshot with a conditional write right
after every successful provider operation.

Scheduling:
    Nodes are launched in plan order once everything they wait on has
    finished. With max_concurrency=1 this is strictly sequential; higher
    values let independent branches run side by side. A node never runs
    alongside one of its dependencies.

Failure:
    The first failing node stops further launches. In-flight nodes finish
    and are persisted, then PartialApplyError names the last applied and
    the failing node. The snapshot holds exactly what succeeded.

    With create_before_destroy the superseded resource is recorded as
    deposed on the node until its delete succeeds. Any later run touching
    the node deletes deposed resources first.

Cancellation:
    cancel() stops launches without interrupting provider calls already
    under way; once they are persisted ApplyCancelledError is raised.

Usage:
    driver = ExecutionDriver(provider, store, settings)
    change_set = await planner.plan(unit)
    result = await driver.apply(change_set.plan, change_set.diffs, desired=change_set.desired)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import structlog

from stackplan.config.settings import Settings, get_settings
from stackplan.core.exceptions import (
    ApplyCancelledError,
    ConcurrentModificationError,
    InvalidChangeSetError,
    PartialApplyError,
    ProviderError,
    UnresolvedReferenceError,
)
from stackplan.execution.planner import Planner
from stackplan.execution.retry import provider_retrying
from stackplan.models.plan import ApplyResult, ChangeAction, ChangeSet, NodeDiff, ProvisioningPlan
from stackplan.models.resources import InputRef, Ref, ResourceNode
from stackplan.models.state import NodeState, StateSnapshot
from stackplan.monitoring.metrics import (
    record_apply_run,
    record_node_change,
    track_provider_operation,
)
from stackplan.providers.base import ResourceProvider
from stackplan.state.store import StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class _Run:
    """Mutable bookkeeping for one apply run."""

    unit: str
    snapshot: StateSnapshot
    applied: list[str] = field(default_factory=list)
    # Physical ids created by this run that never made it into state
    orphaned: list[Any] = field(default_factory=list)

    @property
    def last_applied(self) -> Optional[str]:
        return self.applied[-1] if self.applied else None


class ExecutionDriver:
    """Applies change sets through a provider."""

    def __init__(
        self,
        provider: ResourceProvider,
        store: StateStore,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings or get_settings()
        self._cancel_requested = asyncio.Event()
        self._write_lock = asyncio.Lock()

    def cancel(self) -> None:
        """Stop launching node operations; in-flight ones still complete."""
        if not self._cancel_requested.is_set():
            logger.info("apply_cancel_requested")
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    async def apply_change_set(
        self,
        change_set: ChangeSet,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ApplyResult:
        return await self.apply(
            change_set.plan,
            change_set.diffs,
            desired=change_set.desired,
            inputs=inputs,
        )

    async def destroy(self, unit: str) -> ApplyResult:
        """Delete every recorded node of unit, dependents before dependencies."""
        change_set = await Planner(self.store).plan_destroy(unit)
        return await self.apply_change_set(change_set)

    async def apply(
        self,
        plan: ProvisioningPlan,
        diffs: Mapping[str, NodeDiff],
        desired: Optional[Mapping[str, ResourceNode]] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ApplyResult:
        """
        Apply every changed node of plan, in dependency order.

        Args:
            plan: Ordered node ids (creation order, deletions last).
            diffs: Diff for every node id in plan.
            desired: Declared nodes for every create/update/replace step.
            inputs: Values of the unit's cross-unit inputs.

        Raises:
            PartialApplyError: A node failed; carries the applied/failed boundary.
            ApplyCancelledError: cancel() was called before the plan finished.
            ConcurrentModificationError: Another run wrote this unit's state.
        """
        desired = desired or {}
        inputs = inputs or {}
        self._validate(plan, diffs, desired)

        snapshot = await self.store.read(plan.unit)
        run = _Run(unit=plan.unit, snapshot=snapshot)

        steps = [node_id for node_id in plan.steps if diffs[node_id].is_change]
        skipped = [node_id for node_id in plan.steps if not diffs[node_id].is_change]
        waits_on = self._waits_on(plan, diffs, desired, snapshot, set(steps))

        logger.info(
            "apply_started",
            unit=plan.unit,
            changes=len(steps),
            unchanged=len(skipped),
            state_version=snapshot.version,
            max_concurrency=self.settings.max_concurrency,
        )

        async def start(node_id: str) -> None:
            await self._apply_node(run, diffs[node_id], desired.get(node_id), inputs)

        try:
            pending, failure = await self._schedule(steps, waits_on, start)
        finally:
            self._cancel_requested.clear()

        if failure is not None:
            failed_id, error = failure
            if isinstance(error, ConcurrentModificationError):
                record_apply_run("conflict")
                error.details["orphaned"] = list(run.orphaned)
                logger.error(
                    "apply_conflict",
                    unit=plan.unit,
                    node_id=failed_id,
                    orphaned=run.orphaned,
                    error=str(error),
                )
                raise error
            record_apply_run("failed")
            logger.error(
                "apply_failed",
                unit=plan.unit,
                failed=failed_id,
                last_applied=run.last_applied,
                error=str(error),
            )
            raise PartialApplyError(plan.unit, run.last_applied, failed_id) from error

        if pending:
            record_apply_run("cancelled")
            logger.warning(
                "apply_cancelled",
                unit=plan.unit,
                last_applied=run.last_applied,
                pending=pending,
            )
            raise ApplyCancelledError(plan.unit, run.last_applied, pending)

        record_apply_run("success")
        logger.info(
            "apply_completed",
            unit=plan.unit,
            applied=len(run.applied),
            state_version=run.snapshot.version,
        )
        return ApplyResult(
            unit=plan.unit,
            applied=list(run.applied),
            skipped=skipped,
            snapshot=run.snapshot,
        )

    async def refresh(self, unit: str) -> StateSnapshot:
        """
        Reconcile recorded state with what the provider still has.

        Nodes the provider no longer knows are dropped so the next plan
        re-creates them; changed outputs are recorded.
        """
        snapshot = await self.store.read(unit)
        refreshed = snapshot
        vanished: list[str] = []

        for node_id, node_state in snapshot.resources.items():
            outputs = await self._call(
                "describe",
                node_state.kind,
                node_id,
                lambda: self.provider.describe(node_state.kind, node_id, node_state),
            )
            if outputs is None:
                vanished.append(node_id)
                refreshed = refreshed.without_node(node_id)
            elif outputs != node_state.outputs:
                refreshed = refreshed.with_node(
                    node_id, node_state.model_copy(update={"outputs": outputs})
                )

        if refreshed is snapshot:
            logger.info("state_refreshed", unit=unit, drift=False)
            return snapshot

        stored = await self.store.write(refreshed, expected_version=snapshot.version)
        logger.warning("state_refreshed", unit=unit, drift=True, vanished=vanished)
        return stored

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _validate(
        self,
        plan: ProvisioningPlan,
        diffs: Mapping[str, NodeDiff],
        desired: Mapping[str, ResourceNode],
    ) -> None:
        for node_id in plan.steps:
            diff = diffs.get(node_id)
            if diff is None:
                raise InvalidChangeSetError(plan.unit, node_id, f"No diff for plan step '{node_id}'")
            if diff.action in (ChangeAction.CREATE, ChangeAction.UPDATE, ChangeAction.REPLACE):
                if node_id not in desired:
                    raise InvalidChangeSetError(
                        plan.unit,
                        node_id,
                        f"No desired definition for '{node_id}' ({diff.action.value})",
                    )

    def _waits_on(
        self,
        plan: ProvisioningPlan,
        diffs: Mapping[str, NodeDiff],
        desired: Mapping[str, ResourceNode],
        snapshot: StateSnapshot,
        steps: set[str],
    ) -> dict[str, set[str]]:
        """Node id -> changed nodes that must finish before it starts."""
        waits_on: dict[str, set[str]] = {}
        earlier: list[str] = []

        for node_id in plan.steps:
            if node_id not in steps:
                continue
            if diffs[node_id].action == ChangeAction.DELETE:
                # Every non-delete step, plus recorded dependents being deleted
                dependents = {
                    other_id
                    for other_id, node_state in snapshot.resources.items()
                    if node_id in node_state.depends_on
                }
                waits_on[node_id] = {
                    other_id
                    for other_id in earlier
                    if diffs[other_id].action != ChangeAction.DELETE or other_id in dependents
                }
            else:
                node = desired.get(node_id)
                waits_on[node_id] = set(node.depends_on) & steps if node else set()
            earlier.append(node_id)

        return waits_on

    async def _schedule(
        self,
        steps: list[str],
        waits_on: Mapping[str, set[str]],
        start: Callable[[str], Awaitable[None]],
    ) -> tuple[list[str], Optional[tuple[str, BaseException]]]:
        """Run steps with bounded fan-out; returns (never started, first failure)."""
        pending = list(steps)
        running: dict[asyncio.Task, str] = {}
        done: set[str] = set()
        failure: Optional[tuple[str, BaseException]] = None
        limit = self.settings.max_concurrency

        while pending or running:
            if failure is None and not self._cancel_requested.is_set():
                for node_id in list(pending):
                    if len(running) >= limit:
                        break
                    if waits_on[node_id] <= done:
                        pending.remove(node_id)
                        running[asyncio.create_task(start(node_id))] = node_id

            if not running:
                break

            try:
                finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                # Let in-flight provider calls finish and persist before unwinding
                self.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                raise

            for task in [t for t in running if t in finished]:
                node_id = running.pop(task)
                error = task.exception()
                if error is None:
                    done.add(node_id)
                elif failure is None:
                    failure = (node_id, error)

        return pending, failure

    # -------------------------------------------------------------------------
    # Node operations
    # -------------------------------------------------------------------------

    async def _apply_node(
        self,
        run: _Run,
        diff: NodeDiff,
        node: Optional[ResourceNode],
        inputs: Mapping[str, Any],
    ) -> None:
        node_id = diff.node_id
        action = diff.action
        log = logger.bind(unit=run.unit, node_id=node_id, action=action.value)
        log.info("node_apply_started")

        await self._purge_deposed(run, node_id)
        prior = run.snapshot.resources.get(node_id)

        if action == ChangeAction.DELETE:
            if prior is not None:
                await self._delete(node_id, prior)
            await self._persist(run, lambda snapshot: snapshot.without_node(node_id))

        elif action == ChangeAction.CREATE:
            attributes = self._resolve(node, run.snapshot, inputs)
            outputs = await self._create(node, attributes)
            await self._record(run, node, attributes, outputs)

        elif action == ChangeAction.UPDATE:
            attributes = self._resolve(node, run.snapshot, inputs)
            outputs = await self._call(
                "update",
                node.kind,
                node_id,
                lambda: self.provider.update(node.kind, node_id, attributes, prior),
            )
            await self._record(run, node, attributes, outputs)

        elif action == ChangeAction.REPLACE:
            attributes = self._resolve(node, run.snapshot, inputs)
            if self.settings.replace_strategy == "create_before_destroy":
                outputs = await self._create(node, attributes)
                # The old resource stays on record until its delete succeeds
                await self._record(run, node, attributes, outputs, deposed=[prior.outputs])
                await self._purge_deposed(run, node_id)
            else:
                await self._delete(node_id, prior)
                await self._persist(run, lambda snapshot: snapshot.without_node(node_id))
                outputs = await self._create(node, attributes)
                await self._record(run, node, attributes, outputs)

        run.applied.append(node_id)
        record_node_change(action.value)
        log.info("node_apply_completed", state_version=run.snapshot.version)

    async def _purge_deposed(self, run: _Run, node_id: str) -> None:
        """Delete superseded resources recorded against node_id, oldest first."""
        node_state = run.snapshot.resources.get(node_id)
        while node_state is not None and node_state.deposed:
            superseded = node_state.model_copy(update={"outputs": node_state.deposed[0], "deposed": []})
            await self._delete(node_id, superseded)
            logger.info(
                "deposed_resource_deleted",
                unit=run.unit,
                node_id=node_id,
                physical_id=superseded.outputs.get("id"),
            )

            def drop_first(snapshot: StateSnapshot) -> StateSnapshot:
                current = snapshot.resources[node_id]
                return snapshot.with_node(
                    node_id, current.model_copy(update={"deposed": current.deposed[1:]})
                )

            await self._persist(run, drop_first)
            node_state = run.snapshot.resources.get(node_id)

    async def _create(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            "create",
            node.kind,
            node.id,
            lambda: self.provider.create(node.kind, node.id, attributes),
        )

    async def _delete(self, node_id: str, prior: NodeState) -> None:
        await self._call(
            "delete",
            prior.kind,
            node_id,
            lambda: self.provider.delete(prior.kind, node_id, prior),
        )

    async def _call(
        self,
        operation: str,
        kind: str,
        node_id: str,
        request: Callable[[], Awaitable[T]],
    ) -> T:
        """One provider operation with retries; unexpected errors become ProviderError."""
        try:
            async for attempt in provider_retrying(self.settings):
                with attempt:
                    with track_provider_operation(kind, operation):
                        result = await request()
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(node_id, operation, f"{type(e).__name__}: {e}") from e
        return result

    async def _record(
        self,
        run: _Run,
        node: ResourceNode,
        attributes: dict[str, Any],
        outputs: dict[str, Any],
        deposed: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        node_state = NodeState(
            kind=node.kind,
            attributes=node.declared_attributes(),
            resolved_attributes=attributes,
            outputs=outputs or {},
            depends_on=sorted(node.depends_on),
            deposed=deposed or [],
        )
        try:
            await self._persist(run, lambda snapshot: snapshot.with_node(node.id, node_state))
        except ConcurrentModificationError:
            prior = run.snapshot.resources.get(node.id)
            physical_id = node_state.outputs.get("id")
            if prior is None or prior.outputs.get("id") != physical_id:
                run.orphaned.append(physical_id)
            raise

    async def _persist(
        self,
        run: _Run,
        change: Callable[[StateSnapshot], StateSnapshot],
    ) -> None:
        # Writes are serialized so every one builds on the latest version
        async with self._write_lock:
            updated = change(run.snapshot)
            run.snapshot = await self.store.write(updated, expected_version=run.snapshot.version)

    def _resolve(
        self,
        node: ResourceNode,
        snapshot: StateSnapshot,
        inputs: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Substitute references with recorded outputs and input values."""

        def substitute(value: Any) -> Any:
            if isinstance(value, Ref):
                outputs = snapshot.outputs_of(value.node)
                if outputs is None or value.output not in outputs:
                    raise UnresolvedReferenceError(
                        node.id,
                        str(value),
                        f"Output '{value}' is not available for '{node.id}'",
                    )
                return outputs[value.output]
            if isinstance(value, InputRef):
                if value.name not in inputs:
                    raise UnresolvedReferenceError(
                        node.id,
                        str(value),
                        f"Cross-unit input '{value.name}' has no value for '{node.id}'",
                    )
                return inputs[value.name]
            if isinstance(value, dict):
                return {key: substitute(item) for key, item in value.items()}
            if isinstance(value, (list, tuple)):
                return [substitute(item) for item in value]
            return value

        return {key: substitute(value) for key, value in node.attributes.items()}
