"""Provider protocol consumed by the execution driver."""

from typing import Any, Optional, Protocol

from stackplan.models.state import NodeState


class ResourceProvider(Protocol):
    """
    Narrow request/response boundary to a cloud control plane.

    Implementations signal throttling with ProviderThrottledError (carrying
    retry_after when the provider sends one), transient outages with
    ProviderUnavailableError and rejected requests with ProviderRejectedError.
    """

    async def create(
        self, kind: str, node_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def update(
        self, kind: str, node_id: str, attributes: dict[str, Any], prior: NodeState
    ) -> dict[str, Any]: ...

    async def delete(self, kind: str, node_id: str, prior: NodeState) -> None: ...

    async def describe(
        self, kind: str, node_id: str, prior: NodeState
    ) -> Optional[dict[str, Any]]: ...
