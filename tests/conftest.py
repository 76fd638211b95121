"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings with zero backoff so retries don't sleep
- provider: Simulated in-memory provider
- store: Fresh in-memory state store
- planner / driver: Planning and execution wired to the fixtures above
- sample_unit: net <- storage <- service chain
"""

import pytest

from stackplan.config.settings import Settings
from stackplan.execution.driver import ExecutionDriver
from stackplan.execution.planner import Planner
from stackplan.models.resources import DeploymentUnit, ref
from stackplan.providers.memory import InMemoryProvider
from stackplan.state.store import InMemoryStateStore


@pytest.fixture
def settings() -> Settings:
    """Return settings tuned for fast tests."""
    return Settings(
        provider_max_attempts=3,
        provider_backoff_multiplier=0,
        provider_backoff_min_seconds=0,
        provider_backoff_max_seconds=0,
    )


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def planner(store) -> Planner:
    return Planner(store)


@pytest.fixture
def driver(provider, store, settings) -> ExecutionDriver:
    return ExecutionDriver(provider, store, settings)


@pytest.fixture
def sample_unit() -> DeploymentUnit:
    """Return a three-node unit: service -> storage -> net."""
    unit = DeploymentUnit(name="app")
    unit.add("net", "network", cidr_block="10.0.0.0/16")
    unit.add(
        "storage",
        "file-system",
        network_id=ref("net.id"),
        performance_mode="generalPurpose",
        encrypted=True,
    )
    unit.add(
        "service",
        "compute-service",
        file_system_id=ref("storage.id"),
        desired_count=1,
    )
    return unit
