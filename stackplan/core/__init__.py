"""
Core infrastructure modules for stackplan.

Provides common utilities used across the application:
- exceptions: Standardized exception hierarchy
- logging: structlog configuration
"""

from stackplan.core.exceptions import (
    StackPlanError,
    RetryableError,
    PermanentError,
    PlanningError,
    DuplicateIdError,
    UnresolvedReferenceError,
    CyclicDependencyError,
    InvalidChangeSetError,
    ProviderError,
    ProviderThrottledError,
    ProviderUnavailableError,
    ProviderRejectedError,
    PartialApplyError,
    ApplyCancelledError,
    StateStoreError,
    ConcurrentModificationError,
    ConfigurationError,
)

__all__ = [
    "StackPlanError",
    "RetryableError",
    "PermanentError",
    "PlanningError",
    "DuplicateIdError",
    "UnresolvedReferenceError",
    "CyclicDependencyError",
    "InvalidChangeSetError",
    "ProviderError",
    "ProviderThrottledError",
    "ProviderUnavailableError",
    "ProviderRejectedError",
    "PartialApplyError",
    "ApplyCancelledError",
    "StateStoreError",
    "ConcurrentModificationError",
    "ConfigurationError",
]
