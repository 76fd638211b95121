"""Persisted state models."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeState(BaseModel):
    """Last-applied record of one node."""

    kind: str
    # Declared attributes (references kept in JSON form) used for diffing
    attributes: dict[str, Any] = Field(default_factory=dict)
    # Attributes as sent to the provider, references substituted
    resolved_attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    # Outputs of superseded resources still awaiting deletion
    deposed: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)


class StateSnapshot(BaseModel):
    """
    Persisted mapping from node id to last-applied attributes and outputs.

    version 0 means the unit has never been written. Every successful
    conditional write increments the version by one.
    """

    unit: str
    version: int = 0
    resources: dict[str, NodeState] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def with_node(self, node_id: str, node_state: NodeState) -> "StateSnapshot":
        """Copy of this snapshot with node_id recorded (version unchanged)."""
        resources = dict(self.resources)
        resources[node_id] = node_state
        return self.model_copy(update={"resources": resources})

    def without_node(self, node_id: str) -> "StateSnapshot":
        """Copy of this snapshot with node_id removed (version unchanged)."""
        resources = {key: value for key, value in self.resources.items() if key != node_id}
        return self.model_copy(update={"resources": resources})

    def outputs_of(self, node_id: str) -> Optional[dict[str, Any]]:
        node_state = self.resources.get(node_id)
        return node_state.outputs if node_state else None

    @property
    def is_empty(self) -> bool:
        return not self.resources
