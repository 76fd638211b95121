"""Pydantic models for plans, diffs and apply results."""

from collections import Counter
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from stackplan.models.resources import ResourceNode
from stackplan.models.state import StateSnapshot


class ChangeAction(str, Enum):
    """Classification of one node against last-applied state."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    UNCHANGED = "unchanged"


# Ordering used when an action is upgraded by propagation
ACTION_SEVERITY = {
    ChangeAction.UNCHANGED: 0,
    ChangeAction.UPDATE: 1,
    ChangeAction.REPLACE: 2,
    ChangeAction.CREATE: 3,
    ChangeAction.DELETE: 3,
}


class NodeDiff(BaseModel):
    """Diff result for a single node."""

    node_id: str
    action: ChangeAction
    changed_attributes: list[str] = Field(default_factory=list)
    forced_by: list[str] = Field(default_factory=list)
    reason: str = ""
    # Physical ids of superseded resources the apply must still delete
    deposed: list[str] = Field(default_factory=list)

    @property
    def is_change(self) -> bool:
        return self.action != ChangeAction.UNCHANGED or bool(self.deposed)


class ProvisioningPlan(BaseModel):
    """Ordered node ids such that every dependency precedes its dependent.

    Plans are immutable; a planning pass always builds a new one.
    """

    model_config = ConfigDict(frozen=True)

    unit: str
    steps: tuple[str, ...] = ()

    def reversed(self) -> "ProvisioningPlan":
        """The exact inverse sequence, used for teardown."""
        return ProvisioningPlan(unit=self.unit, steps=tuple(reversed(self.steps)))

    def __len__(self) -> int:
        return len(self.steps)


class ChangeSet(BaseModel):
    """Everything the execution driver needs to apply one unit."""

    unit: str
    plan: ProvisioningPlan
    diffs: dict[str, NodeDiff]
    desired: dict[str, ResourceNode] = Field(default_factory=dict)
    prior: StateSnapshot

    @property
    def has_changes(self) -> bool:
        return any(diff.is_change for diff in self.diffs.values())

    def summary(self) -> dict[str, int]:
        """Count of nodes per action, e.g. {"create": 2, "unchanged": 1}.

        Superseded resources awaiting deletion are counted under "deposed".
        """
        counts = Counter(diff.action.value for diff in self.diffs.values())
        deposed = sum(len(diff.deposed) for diff in self.diffs.values())
        if deposed:
            counts["deposed"] = deposed
        return dict(sorted(counts.items()))


class ApplyResult(BaseModel):
    """Outcome of a completed apply run."""

    unit: str
    applied: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    snapshot: StateSnapshot
