"""
Resource kind registry.

A kind marks which attributes cannot change in place. Changing one of them
forces the diff engine to classify the node as a replacement. Unknown kinds
are accepted and treat every attribute as updatable.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass(frozen=True)
class ResourceKind:
    """Update semantics for one resource kind."""

    name: str
    immutable_attributes: frozenset[str] = frozenset()
    # Revisioned resources (e.g. task definitions) never update in place
    replace_on_any_change: bool = False

    def forces_replacement(self, attribute: str) -> bool:
        return self.replace_on_any_change or attribute in self.immutable_attributes


@dataclass
class KindRegistry:
    """Lookup table from kind name to ResourceKind."""

    _kinds: dict[str, ResourceKind] = field(default_factory=dict)

    def register(
        self,
        name: str,
        immutable: Iterable[str] = (),
        replace_on_any_change: bool = False,
    ) -> ResourceKind:
        kind = ResourceKind(
            name=name,
            immutable_attributes=frozenset(immutable),
            replace_on_any_change=replace_on_any_change,
        )
        self._kinds[name] = kind
        return kind

    def get(self, name: str) -> ResourceKind:
        return self._kinds.get(name) or ResourceKind(name=name)

    def find(self, name: str) -> Optional[ResourceKind]:
        return self._kinds.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._kinds

    @property
    def names(self) -> list[str]:
        return sorted(self._kinds)


def default_registry() -> KindRegistry:
    """Registry with the kinds used by the reference topology."""
    registry = KindRegistry()

    # Network tier
    registry.register("network", immutable=["cidr_block"])
    registry.register("subnet", immutable=["network_id", "cidr_block", "availability_zone"])
    registry.register("nat-gateway", immutable=["subnet_id"])
    registry.register("security-group", immutable=["network_id", "description"])

    # Shared file system tier
    registry.register(
        "file-system",
        immutable=["performance_mode", "encrypted", "network_id"],
    )
    registry.register("mount-target", immutable=["file_system_id", "subnet_id"])
    registry.register(
        "access-point",
        immutable=["file_system_id", "path", "posix_user", "create_acl"],
    )

    # Compute tier
    registry.register("cluster", immutable=["name"])
    registry.register("iam-role", immutable=["assumed_by"])
    registry.register("task-definition", replace_on_any_change=True)
    registry.register("log-group", immutable=["name"])
    registry.register("load-balancer", immutable=["internet_facing", "network_id"])
    registry.register("target-group", immutable=["network_id", "port", "protocol", "target_type"])
    registry.register("listener", immutable=["load_balancer_id"])
    registry.register("compute-service", immutable=["cluster_id", "launch_type"])
    registry.register("scaling-target", immutable=["service_id"])
    registry.register("scaling-policy", immutable=["scaling_target_id", "metric"])

    return registry
