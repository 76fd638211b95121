"""Reference deployment topologies."""

from stackplan.topology.n8n import (
    COMPUTE_UNIT,
    FILESYSTEM_UNIT,
    NETWORK_UNIT,
    N8nTopologyConfig,
    compute_unit,
    filesystem_unit,
    n8n_topology,
    network_unit,
)

__all__ = [
    "COMPUTE_UNIT",
    "FILESYSTEM_UNIT",
    "NETWORK_UNIT",
    "N8nTopologyConfig",
    "compute_unit",
    "filesystem_unit",
    "n8n_topology",
    "network_unit",
]
