"""
Simulated in-memory provider.

Behaves like a small cloud control plane: it hands out physical ids,
derives outputs per kind and keeps resources until they are deleted.
Faults can be injected per node and operation for failure testing.

Usage:
    provider = InMemoryProvider()
    provider.fail_on("service", "create")            # always fails
    provider.throttle("storage", times=2, retry_after=0.0)
    release = provider.hold("net")                   # blocks until release.set()
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from stackplan.core.exceptions import (
    ProviderError,
    ProviderRejectedError,
    ProviderThrottledError,
)
from stackplan.models.state import NodeState

logger = structlog.get_logger(__name__)

# Physical id prefixes by kind
ID_PREFIXES = {
    "network": "vpc",
    "subnet": "subnet",
    "nat-gateway": "nat",
    "security-group": "sg",
    "file-system": "fs",
    "mount-target": "fsmt",
    "access-point": "fsap",
    "cluster": "cluster",
    "iam-role": "role",
    "task-definition": "taskdef",
    "log-group": "lg",
    "load-balancer": "alb",
    "target-group": "tg",
    "listener": "listener",
    "compute-service": "svc",
    "scaling-target": "scalable",
    "scaling-policy": "policy",
}


@dataclass
class ProviderCall:
    """One recorded provider invocation."""

    operation: str
    kind: str
    node_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Fault:
    operation: Optional[str]
    remaining: Optional[int]
    error: ProviderError

    def matches(self, operation: str) -> bool:
        return self.operation in (None, operation) and self.remaining != 0


class InMemoryProvider:
    """Provider that keeps resources in a dict keyed by physical id."""

    def __init__(self, region: str = "sim-east-1", latency: float = 0.0):
        self.region = region
        self.latency = latency
        # physical id -> {"node_id", "kind", "attributes", "outputs"}
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[ProviderCall] = []
        self.in_flight: set[str] = set()
        self.max_in_flight = 0
        self._faults: dict[str, list[_Fault]] = {}
        self._holds: dict[str, asyncio.Event] = {}
        self._started: dict[str, asyncio.Event] = {}
        self._counter = 0

    # -------------------------------------------------------------------------
    # Fault injection
    # -------------------------------------------------------------------------

    def fail_on(
        self,
        node_id: str,
        operation: Optional[str] = None,
        times: Optional[int] = None,
        error: Optional[ProviderError] = None,
    ) -> None:
        """Make operations on node_id fail; times=None fails forever."""
        self._faults.setdefault(node_id, []).append(
            _Fault(
                operation=operation,
                remaining=times,
                error=error or ProviderRejectedError(node_id, operation or "any", "Injected failure"),
            )
        )

    def throttle(
        self,
        node_id: str,
        operation: Optional[str] = None,
        times: int = 1,
        retry_after: Optional[float] = None,
    ) -> None:
        """Throttle the next `times` operations on node_id."""
        self.fail_on(
            node_id,
            operation,
            times=times,
            error=ProviderThrottledError(node_id, operation or "any", retry_after=retry_after),
        )

    def hold(self, node_id: str) -> asyncio.Event:
        """Block operations on node_id until the returned event is set."""
        event = asyncio.Event()
        self._holds[node_id] = event
        return event

    async def wait_started(self, node_id: str) -> None:
        """Wait until an operation on node_id has started."""
        await self._started.setdefault(node_id, asyncio.Event()).wait()

    def forget(self, node_id: str) -> None:
        """Drop a node's resources behind the engine's back (simulates drift)."""
        for physical_id in self.physical_ids(node_id):
            del self.resources[physical_id]

    def physical_ids(self, node_id: str) -> list[str]:
        """Physical ids currently held for node_id."""
        return [
            physical_id
            for physical_id, resource in self.resources.items()
            if resource["node_id"] == node_id
        ]

    def operations(self, node_id: Optional[str] = None) -> list[str]:
        """Recorded operation names, optionally for one node."""
        return [
            f"{call.operation}:{call.node_id}"
            for call in self.calls
            if node_id is None or call.node_id == node_id
        ]

    # -------------------------------------------------------------------------
    # Provider protocol
    # -------------------------------------------------------------------------

    async def create(self, kind: str, node_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create", kind, node_id, attributes)
        try:
            physical_id = self._next_id(kind)
            outputs = self._outputs(kind, physical_id, attributes)
            self.resources[physical_id] = {
                "node_id": node_id,
                "kind": kind,
                "attributes": dict(attributes),
                "outputs": outputs,
            }
            return dict(outputs)
        finally:
            self.in_flight.discard(node_id)

    async def update(
        self, kind: str, node_id: str, attributes: dict[str, Any], prior: NodeState
    ) -> dict[str, Any]:
        await self._enter("update", kind, node_id, attributes)
        try:
            physical_id = prior.outputs.get("id")
            existing = self.resources.get(physical_id)
            if existing is None:
                raise ProviderRejectedError(node_id, "update", f"Resource {physical_id} does not exist")
            outputs = self._outputs(kind, physical_id, attributes)
            existing.update(attributes=dict(attributes), outputs=outputs)
            return dict(outputs)
        finally:
            self.in_flight.discard(node_id)

    async def delete(self, kind: str, node_id: str, prior: NodeState) -> None:
        await self._enter("delete", kind, node_id, {})
        try:
            # Deleting something already gone counts as success
            self.resources.pop(prior.outputs.get("id"), None)
        finally:
            self.in_flight.discard(node_id)

    async def describe(self, kind: str, node_id: str, prior: NodeState) -> Optional[dict[str, Any]]:
        self.calls.append(ProviderCall("describe", kind, node_id))
        existing = self.resources.get(prior.outputs.get("id"))
        return dict(existing["outputs"]) if existing else None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _enter(self, operation: str, kind: str, node_id: str, attributes: dict[str, Any]) -> None:
        self.calls.append(ProviderCall(operation, kind, node_id, dict(attributes)))
        self.in_flight.add(node_id)
        self.max_in_flight = max(self.max_in_flight, len(self.in_flight))
        self._started.setdefault(node_id, asyncio.Event()).set()

        try:
            hold = self._holds.get(node_id)
            if hold is not None:
                await hold.wait()
            await asyncio.sleep(self.latency)

            for fault in self._faults.get(node_id, []):
                if fault.matches(operation):
                    if fault.remaining is not None:
                        fault.remaining -= 1
                    logger.debug("provider_fault_injected", node_id=node_id, operation=operation)
                    raise fault.error
        except BaseException:
            self.in_flight.discard(node_id)
            raise

    def _next_id(self, kind: str) -> str:
        self._counter += 1
        return f"{ID_PREFIXES.get(kind, 'res')}-{self._counter:08x}"

    def _outputs(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        outputs: dict[str, Any] = {
            "id": physical_id,
            "arn": f"arn:sim:{kind}:{self.region}:{physical_id}",
        }
        if kind == "network":
            outputs["cidr_block"] = attributes.get("cidr_block")
        elif kind == "load-balancer":
            outputs["dns_name"] = f"{physical_id}.{self.region}.elb.simulated"
        elif kind == "file-system":
            outputs["dns_name"] = f"{physical_id}.efs.{self.region}.simulated"
        return outputs
