"""
Diff engine.

Classifies every node of a desired graph against the last-applied snapshot:

- create:    declared, not recorded
- delete:    recorded, no longer declared
- unchanged: declared attributes equal the recorded ones
- update:    attributes differ, none of them immutable for the kind
- replace:   an immutable attribute (or the kind itself) differs

Reference-bearing attributes are also compared in resolved form: a node
whose references or cross-unit inputs now resolve to values other than
the ones it was last applied with is changed, even when its declared
attributes are not. This covers runs that stopped after an upstream
replacement and upstream nodes dropped by refresh.

Forced replacements propagate: every node that transitively depends on a
replaced or newly created node becomes at least an update, since its
inputs regenerate. A node that feeds such an output into one of its own
immutable attributes is itself replaced.

Superseded resources still recorded as deposed are listed on the node
diff so the apply deletes them.
"""

from typing import Any, Mapping, Optional

import structlog

from stackplan.graph.builder import DependencyGraph
from stackplan.graph.kinds import KindRegistry, default_registry
from stackplan.graph.resolver import topological_order
from stackplan.models.plan import ACTION_SEVERITY, ChangeAction, NodeDiff
from stackplan.models.resources import InputRef, Ref, ResourceNode, iter_references
from stackplan.models.state import NodeState, StateSnapshot

logger = structlog.get_logger(__name__)

_MISSING = object()


class DiffEngine:
    """Compares desired graphs against persisted state."""

    def __init__(self, kinds: Optional[KindRegistry] = None):
        self.kinds = kinds or default_registry()

    def diff(
        self,
        desired: DependencyGraph,
        last_state: StateSnapshot,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, NodeDiff]:
        """
        Classify every node id appearing in desired or last_state.

        Args:
            desired: Built graph of declared nodes.
            last_state: Last-applied snapshot of the same unit.
            inputs: Current cross-unit input values. An attribute holding an
                input without a value here is only compared in declared form.

        Returns:
            Mapping node id -> NodeDiff. Desired nodes come first in
            insertion order, followed by deletions in recorded order.
        """
        inputs = inputs or {}
        diffs: dict[str, NodeDiff] = {}

        for node_id, node in desired.nodes.items():
            prior = last_state.resources.get(node_id)
            diffs[node_id] = self._classify(node, prior)
            if prior is not None and prior.kind == node.kind:
                diffs[node_id] = _merge(
                    diffs[node_id], self._classify_resolved(node, prior, last_state, inputs)
                )

        for node_id in last_state.resources:
            if node_id not in desired:
                diffs[node_id] = NodeDiff(
                    node_id=node_id,
                    action=ChangeAction.DELETE,
                    reason="no longer declared",
                )

        self._propagate_replacements(desired, diffs)

        for node_id, prior in last_state.resources.items():
            if prior.deposed:
                diffs[node_id] = diffs[node_id].model_copy(
                    update={"deposed": [str(outputs.get("id")) for outputs in prior.deposed]}
                )

        logger.debug(
            "diff_computed",
            unit=desired.unit,
            changes={k: v.action.value for k, v in diffs.items() if v.is_change},
        )
        return diffs

    def _classify(self, node: ResourceNode, prior: Optional[NodeState]) -> NodeDiff:
        if prior is None:
            return NodeDiff(node_id=node.id, action=ChangeAction.CREATE, reason="not yet provisioned")

        if prior.kind != node.kind:
            return NodeDiff(
                node_id=node.id,
                action=ChangeAction.REPLACE,
                changed_attributes=["kind"],
                forced_by=["kind"],
                reason=f"kind changed from {prior.kind} to {node.kind}",
            )

        changed = _changed_attributes(node.declared_attributes(), prior.attributes)
        if not changed:
            return NodeDiff(node_id=node.id, action=ChangeAction.UNCHANGED)

        kind = self.kinds.get(node.kind)
        forcing = [name for name in changed if kind.forces_replacement(name)]
        if forcing:
            return NodeDiff(
                node_id=node.id,
                action=ChangeAction.REPLACE,
                changed_attributes=changed,
                forced_by=forcing,
                reason="immutable attribute changed",
            )
        return NodeDiff(
            node_id=node.id,
            action=ChangeAction.UPDATE,
            changed_attributes=changed,
            reason="attributes changed",
        )

    def _classify_resolved(
        self,
        node: ResourceNode,
        prior: NodeState,
        last_state: StateSnapshot,
        inputs: Mapping[str, Any],
    ) -> NodeDiff:
        """Compare reference-bearing attributes by the values they resolve to now."""
        changed = []
        sources: set[type] = set()
        for name, value in node.attributes.items():
            current = _substitute(value, last_state, inputs)
            recorded = prior.resolved_attributes.get(name, _MISSING)
            if current is _MISSING or recorded is _MISSING:
                continue
            if current != recorded:
                changed.append(name)
                sources.update(type(item) for item in iter_references(value))

        if not changed:
            return NodeDiff(node_id=node.id, action=ChangeAction.UNCHANGED)

        if sources == {InputRef}:
            reason = "cross-unit input changed"
        elif sources == {Ref}:
            reason = "referenced outputs changed"
        else:
            reason = "referenced outputs and cross-unit inputs changed"

        kind = self.kinds.get(node.kind)
        forcing = [name for name in changed if kind.forces_replacement(name)]
        return NodeDiff(
            node_id=node.id,
            action=ChangeAction.REPLACE if forcing else ChangeAction.UPDATE,
            changed_attributes=sorted(changed),
            forced_by=sorted(forcing),
            reason=reason,
        )

    def _propagate_replacements(
        self,
        desired: DependencyGraph,
        diffs: dict[str, NodeDiff],
    ) -> None:
        # Upstream decisions are final before a node is visited
        order = topological_order(desired.node_ids, desired.edges())
        regenerated: set[str] = set()
        fresh_identity = (ChangeAction.CREATE, ChangeAction.REPLACE)

        for node_id in order:
            current = diffs[node_id]
            if current.action in fresh_identity:
                regenerated.add(node_id)
                continue

            upstream = [dep for dep in desired.dependencies(node_id) if dep in regenerated]
            if not upstream:
                continue

            node = desired.nodes[node_id]
            kind = self.kinds.get(node.kind)
            replaced = {dep for dep in upstream if diffs[dep].action in fresh_identity}
            pinned = [
                name
                for name, value in node.attributes.items()
                if kind.forces_replacement(name) and _refers_to(value, replaced)
            ]

            target = ChangeAction.REPLACE if pinned else ChangeAction.UPDATE
            if ACTION_SEVERITY[target] > ACTION_SEVERITY[current.action]:
                diffs[node_id] = current.model_copy(
                    update={
                        "action": target,
                        "forced_by": sorted(set(current.forced_by) | set(upstream)),
                        "reason": (
                            f"immutable input from replaced {', '.join(sorted(replaced))}"
                            if pinned
                            else f"inputs regenerate after replacement of {', '.join(upstream)}"
                        ),
                    }
                )
                logger.debug(
                    "diff_upgraded",
                    node_id=node_id,
                    action=target.value,
                    upstream=upstream,
                )

            if diffs[node_id].action in (ChangeAction.UPDATE, ChangeAction.REPLACE):
                regenerated.add(node_id)


def _changed_attributes(declared: dict[str, Any], recorded: dict[str, Any]) -> list[str]:
    names = set(declared) | set(recorded)
    return sorted(
        name
        for name in names
        if declared.get(name, _MISSING) != recorded.get(name, _MISSING)
    )


def _merge(declared: NodeDiff, resolved: NodeDiff) -> NodeDiff:
    """Combine declared and resolved comparisons; the more severe action wins."""
    if not resolved.is_change:
        return declared
    if not declared.is_change:
        return resolved

    stronger = resolved if ACTION_SEVERITY[resolved.action] > ACTION_SEVERITY[declared.action] else declared
    return declared.model_copy(
        update={
            "action": stronger.action,
            "changed_attributes": sorted(
                set(declared.changed_attributes) | set(resolved.changed_attributes)
            ),
            "forced_by": sorted(set(declared.forced_by) | set(resolved.forced_by)),
            "reason": f"{declared.reason}; {resolved.reason}",
        }
    )


def _substitute(value: Any, snapshot: StateSnapshot, inputs: Mapping[str, Any]) -> Any:
    """Value with references substituted from snapshot outputs and inputs.

    _MISSING if value holds no reference or one of them has no value yet.
    """
    references = list(iter_references(value))
    if not references:
        return _MISSING
    for item in references:
        if isinstance(item, Ref):
            outputs = snapshot.outputs_of(item.node)
            if outputs is None or item.output not in outputs:
                return _MISSING
        elif item.name not in inputs:
            return _MISSING

    def substitute(item: Any) -> Any:
        if isinstance(item, Ref):
            return snapshot.outputs_of(item.node)[item.output]
        if isinstance(item, InputRef):
            return inputs[item.name]
        if isinstance(item, dict):
            return {key: substitute(inner) for key, inner in item.items()}
        if isinstance(item, (list, tuple)):
            return [substitute(inner) for inner in item]
        return item

    return substitute(value)


def _refers_to(value: Any, node_ids: set[str]) -> bool:
    return any(
        isinstance(reference, Ref) and reference.node in node_ids
        for reference in iter_references(value)
    )
