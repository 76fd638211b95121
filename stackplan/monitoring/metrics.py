"""
Prometheus metrics for stackplan observability.

Provides standardized metrics for provider calls, state writes and apply
runs.

Usage:
    from stackplan.monitoring.metrics import track_provider_operation

    with track_provider_operation("file-system", "create"):
        outputs = await provider.create(kind, node_id, attributes)

    # Or manually
    NODE_CHANGES.labels(action="replace").inc()
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import Counter, Histogram


# =============================================================================
# Metric Definitions
# =============================================================================

# Provider metrics
PROVIDER_OPERATIONS = Counter(
    "stackplan_provider_operations_total",
    "Total provider operations",
    ["kind", "operation", "status"],
)

PROVIDER_LATENCY = Histogram(
    "stackplan_provider_latency_seconds",
    "Latency of provider operations (single attempt)",
    ["kind", "operation"],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0],
)

PROVIDER_RETRIES = Counter(
    "stackplan_provider_retries_total",
    "Provider operation attempts that were retried",
    ["operation", "reason"],
)

# State metrics
STATE_WRITES = Counter(
    "stackplan_state_writes_total",
    "Conditional state snapshot writes",
    ["backend", "status"],
)

# Apply metrics
NODE_CHANGES = Counter(
    "stackplan_node_changes_total",
    "Node changes applied, by diff action",
    ["action"],
)

APPLY_RUNS = Counter(
    "stackplan_apply_runs_total",
    "Apply runs by outcome",
    ["status"],
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def track_provider_operation(
    kind: str,
    operation: str,
) -> Generator[None, None, None]:
    """
    Context manager to track one provider call.

    Usage:
        with track_provider_operation("network", "create"):
            await provider.create(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        PROVIDER_OPERATIONS.labels(kind=kind, operation=operation, status=status).inc()
        PROVIDER_LATENCY.labels(kind=kind, operation=operation).observe(duration)


def record_provider_retry(operation: str, reason: str) -> None:
    """Record a retried provider attempt."""
    PROVIDER_RETRIES.labels(operation=operation, reason=reason).inc()


def record_state_write(backend: str, status: str) -> None:
    """Record a state write outcome ("ok", "conflict", "error")."""
    STATE_WRITES.labels(backend=backend, status=status).inc()


def record_node_change(action: str) -> None:
    """Record one applied node change."""
    NODE_CHANGES.labels(action=action).inc()


def record_apply_run(status: str) -> None:
    """Record an apply run outcome ("success", "failed", "cancelled", "conflict")."""
    APPLY_RUNS.labels(status=status).inc()
