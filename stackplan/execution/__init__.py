"""
Planning and applying change sets.

- planner: per-unit planning pass producing change sets
- driver: applies change sets through a provider with incremental state
- retry: tenacity policy for provider calls
"""

from stackplan.execution.driver import ExecutionDriver
from stackplan.execution.planner import Planner
from stackplan.execution.retry import provider_retrying, wait_retry_after

__all__ = [
    "ExecutionDriver",
    "Planner",
    "provider_retrying",
    "wait_retry_after",
]
