"""State store factory with Redis and in-memory implementations.

Provides a consistent interface for snapshot persistence with conditional
writes, with automatic fallback to in-memory when Redis is unavailable.

Usage:
    # Get store (auto-selects Redis or in-memory)
    store = await get_state_store(settings)

    snapshot = await store.read("network")
    snapshot = await store.write(updated, expected_version=snapshot.version)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import structlog

from stackplan.config.settings import Settings
from stackplan.core.exceptions import ConcurrentModificationError
from stackplan.models.state import StateSnapshot
from stackplan.monitoring.metrics import record_state_write

logger = structlog.get_logger(__name__)


class StateStore(Protocol):
    """Protocol for state store implementations."""

    async def read(self, unit: str) -> StateSnapshot: ...

    async def write(self, snapshot: StateSnapshot, expected_version: int) -> StateSnapshot: ...

    async def delete(self, unit: str) -> None: ...


@dataclass
class InMemoryStateStore:
    """
    In-memory state store for development, tests or Redis fallback.

    WARNING: Does not persist across restarts and does not guard against
    concurrent runs in other processes.
    """

    _snapshots: Dict[str, str] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def read(self, unit: str) -> StateSnapshot:
        """Current snapshot for unit (version 0 when never written)."""
        async with self._lock:
            raw = self._snapshots.get(unit)
            if raw is None:
                return StateSnapshot(unit=unit)
            return StateSnapshot.model_validate_json(raw)

    async def write(self, snapshot: StateSnapshot, expected_version: int) -> StateSnapshot:
        """
        Store snapshot if the stored version still equals expected_version.

        Returns:
            The stored snapshot with its new version.

        Raises:
            ConcurrentModificationError: Another writer advanced the version.
        """
        async with self._lock:
            raw = self._snapshots.get(snapshot.unit)
            current = StateSnapshot.model_validate_json(raw).version if raw else 0

            if current != expected_version:
                record_state_write("memory", "conflict")
                raise ConcurrentModificationError(snapshot.unit, expected_version, current)

            stored = snapshot.model_copy(
                update={
                    "version": expected_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._snapshots[snapshot.unit] = stored.model_dump_json()
            record_state_write("memory", "ok")
            return stored

    async def delete(self, unit: str) -> None:
        """Remove the unit's snapshot entirely."""
        async with self._lock:
            self._snapshots.pop(unit, None)
        logger.info("state_deleted", unit=unit, backend="memory")

    @property
    def units(self) -> list[str]:
        return sorted(self._snapshots)


# Global state store instance
_state_store: Optional[StateStore] = None


async def get_state_store(settings: Optional[Settings] = None) -> StateStore:
    """
    Get or create state store instance.

    Attempts to use Redis if configured, falls back to in-memory outside
    production.

    Args:
        settings: Application settings (uses get_settings() if not provided)

    Returns:
        State store instance (Redis or in-memory)
    """
    global _state_store

    if _state_store is not None:
        return _state_store

    if settings is None:
        from stackplan.config.settings import get_settings
        settings = get_settings()

    # Try Redis first
    if settings.state_backend == "redis" and settings.redis_url:
        try:
            from stackplan.state.redis_store import RedisStateStore

            redis_store = RedisStateStore(
                redis_url=settings.redis_url,
                key_prefix=settings.state_key_prefix,
            )
            await redis_store.connect()
            _state_store = redis_store
            logger.info("state_store_initialized", backend="redis")
            return _state_store
        except Exception as e:
            # Falling back would let concurrent runs corrupt shared state
            if settings.is_production:
                raise
            logger.warning(
                "redis_state_store_failed_fallback_to_memory",
                error=str(e),
            )

    # Fallback to in-memory
    _state_store = InMemoryStateStore()
    logger.info("state_store_initialized", backend="memory")
    return _state_store


async def reset_state_store() -> None:
    """Reset global state store (for testing)."""
    global _state_store
    _state_store = None
