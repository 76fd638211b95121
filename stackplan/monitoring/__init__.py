"""
Monitoring and observability for stackplan.

Provides Prometheus metrics for provider calls, state writes and runs.

Usage:
    from stackplan.monitoring import track_provider_operation

    with track_provider_operation("cluster", "create"):
        await provider.create(...)
"""

from stackplan.monitoring.metrics import (
    APPLY_RUNS,
    NODE_CHANGES,
    PROVIDER_LATENCY,
    PROVIDER_OPERATIONS,
    PROVIDER_RETRIES,
    STATE_WRITES,
    record_apply_run,
    record_node_change,
    record_provider_retry,
    record_state_write,
    track_provider_operation,
)

__all__ = [
    # Prometheus metrics
    "APPLY_RUNS",
    "NODE_CHANGES",
    "PROVIDER_LATENCY",
    "PROVIDER_OPERATIONS",
    "PROVIDER_RETRIES",
    "STATE_WRITES",
    # Context managers
    "track_provider_operation",
    # Helper functions
    "record_apply_run",
    "record_node_change",
    "record_provider_retry",
    "record_state_write",
]
