"""
Core exception hierarchy for stackplan.

Provides standardized exception types with categorization for retry logic.
Planning errors are raised before any provider call is made; operation
errors carry the node ids needed to resume or roll back a run.
"""

from typing import Any, Optional, Sequence


# =============================================================================
# Base Exceptions
# =============================================================================


class StackPlanError(Exception):
    """Base exception for all stackplan errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(StackPlanError):
    """
    Transient errors that should be retried.

    Examples: Provider throttling, temporary control plane outages.
    """

    pass


class PermanentError(StackPlanError):
    """
    Errors that won't be fixed by retrying.

    Examples: Invalid graphs, rejected resource definitions.
    """

    pass


# =============================================================================
# Planning Errors
# =============================================================================


class PlanningError(PermanentError):
    """Base exception for errors detected while building or resolving a graph."""

    pass


class DuplicateIdError(PlanningError):
    """Raised when a node id is added twice to the same deployment unit."""

    def __init__(self, node_id: str, unit: Optional[str] = None):
        self.node_id = node_id
        self.unit = unit
        details = {"node_id": node_id}
        if unit:
            details["unit"] = unit
        super().__init__(f"Duplicate resource id '{node_id}'", details)


class UnresolvedReferenceError(PlanningError):
    """Raised when a reference names a node, output or input that does not exist."""

    def __init__(self, node_id: str, reference: str, message: Optional[str] = None):
        self.node_id = node_id
        self.reference = reference
        super().__init__(
            message or f"Resource '{node_id}' references unknown target '{reference}'",
            {"node_id": node_id, "reference": reference},
        )


class CyclicDependencyError(PlanningError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, node_ids: Sequence[str]):
        self.node_ids = list(node_ids)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.node_ids)}",
            {"node_ids": self.node_ids},
        )


class InvalidChangeSetError(PlanningError):
    """Raised when a change set handed to the driver is missing a diff or a declared node."""

    def __init__(self, unit: str, node_id: str, message: str):
        self.unit = unit
        self.node_id = node_id
        super().__init__(message, {"unit": unit, "node_id": node_id})


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(StackPlanError):
    """Base exception for provider operation failures."""

    def __init__(
        self,
        node_id: str,
        operation: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.node_id = node_id
        self.operation = operation
        merged = {"node_id": node_id, "operation": operation}
        merged.update(details or {})
        super().__init__(f"[{operation} {node_id}] {message}", merged)


class ProviderThrottledError(ProviderError, RetryableError):
    """Raised when the provider throttles a request."""

    def __init__(
        self,
        node_id: str,
        operation: str,
        message: str = "Request throttled",
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(node_id, operation, message, {"retry_after": retry_after})


class ProviderUnavailableError(ProviderError, RetryableError):
    """Raised when the provider control plane is temporarily unavailable."""

    pass


class ProviderRejectedError(ProviderError, PermanentError):
    """Raised when the provider rejects a request outright."""

    pass


# =============================================================================
# Apply Errors
# =============================================================================


class PartialApplyError(StackPlanError):
    """
    Terminal report of a run that stopped on a failing node.

    The persisted snapshot reflects exactly the nodes applied before
    `failed`. The provider error is chained as `__cause__`.
    """

    def __init__(self, unit: str, last_applied: Optional[str], failed: str):
        self.unit = unit
        self.last_applied = last_applied
        self.failed = failed
        super().__init__(
            f"Apply of unit '{unit}' failed at '{failed}' (last applied: {last_applied or 'none'})",
            {"unit": unit, "last_applied": last_applied, "failed": failed},
        )


class ApplyCancelledError(StackPlanError):
    """Raised after a cancelled run has drained its in-flight operations."""

    def __init__(self, unit: str, last_applied: Optional[str], pending: Sequence[str]):
        self.unit = unit
        self.last_applied = last_applied
        self.pending = list(pending)
        super().__init__(
            f"Apply of unit '{unit}' cancelled with {len(self.pending)} node(s) pending",
            {"unit": unit, "last_applied": last_applied, "pending": self.pending},
        )


# =============================================================================
# State Errors
# =============================================================================


class StateStoreError(RetryableError):
    """Raised when the state backend cannot be reached."""

    pass


class ConcurrentModificationError(PermanentError):
    """Raised when a conditional state write finds a newer stored version."""

    def __init__(self, unit: str, expected_version: int, actual_version: int):
        self.unit = unit
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"State for unit '{unit}' changed concurrently; re-read state and re-plan",
            {
                "unit": unit,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)
