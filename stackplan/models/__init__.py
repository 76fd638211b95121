"""Data models for resources, plans and state."""

from stackplan.models.resources import (
    DeploymentUnit,
    InputRef,
    Ref,
    ResourceNode,
    UnitOutputRef,
    iter_references,
    parse_references,
    ref,
    to_json_value,
)
from stackplan.models.state import NodeState, StateSnapshot
from stackplan.models.plan import (
    ACTION_SEVERITY,
    ApplyResult,
    ChangeAction,
    ChangeSet,
    NodeDiff,
    ProvisioningPlan,
)

__all__ = [
    "ACTION_SEVERITY",
    "ApplyResult",
    "ChangeAction",
    "ChangeSet",
    "DeploymentUnit",
    "InputRef",
    "NodeDiff",
    "NodeState",
    "ProvisioningPlan",
    "Ref",
    "ResourceNode",
    "StateSnapshot",
    "UnitOutputRef",
    "iter_references",
    "parse_references",
    "ref",
    "to_json_value",
]
