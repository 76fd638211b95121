"""
Retry policy for provider operations.

Retryable provider errors (throttling, temporary outages) are retried with
bounded exponential backoff. When the provider sends a retry-after hint the
wait is at least that long. After the last attempt the final error is
re-raised unchanged.
"""

from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from stackplan.config.settings import Settings, get_settings
from stackplan.core.exceptions import ProviderThrottledError, RetryableError
from stackplan.monitoring.metrics import record_provider_retry

logger = structlog.get_logger(__name__)


class wait_retry_after(wait_base):
    """Wait for the provider's retry-after hint, or the fallback if longer."""

    def __init__(self, fallback: wait_base):
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        computed = self.fallback(retry_state)
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return max(float(retry_after), computed)
        return computed


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    operation = getattr(error, "operation", "unknown")
    reason = "throttled" if isinstance(error, ProviderThrottledError) else "unavailable"
    record_provider_retry(operation, reason)
    logger.warning(
        "provider_operation_retry",
        node_id=getattr(error, "node_id", None),
        operation=operation,
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )


def provider_retrying(settings: Optional[Settings] = None) -> AsyncRetrying:
    """
    Build the AsyncRetrying controller used around every provider call.

    Usage:
        async for attempt in provider_retrying(settings):
            with attempt:
                outputs = await provider.create(kind, node_id, attributes)
    """
    settings = settings or get_settings()
    return AsyncRetrying(
        retry=retry_if_exception_type(RetryableError),
        stop=stop_after_attempt(settings.provider_max_attempts),
        wait=wait_retry_after(
            wait_exponential(
                multiplier=settings.provider_backoff_multiplier,
                min=settings.provider_backoff_min_seconds,
                max=settings.provider_backoff_max_seconds,
            )
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
