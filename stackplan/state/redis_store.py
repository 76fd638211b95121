"""Redis-backed state store with optimistic conditional writes.

Each deployment unit's snapshot is a JSON document under its own key, so
concurrent units never collide. Writes run in a WATCH/MULTI transaction:
the stored version is checked against the expected one and the transaction
aborts if another client touches the key in between.

Usage:
    store = RedisStateStore(
        redis_url="redis://localhost:6379",
        key_prefix="stackplan:state"
    )
    await store.connect()

    snapshot = await store.read("compute")
    snapshot = await store.write(updated, expected_version=snapshot.version)
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from stackplan.core.exceptions import ConcurrentModificationError, StateStoreError
from stackplan.models.state import StateSnapshot
from stackplan.monitoring.metrics import record_state_write

logger = structlog.get_logger(__name__)


class RedisStateStore:
    """
    Redis-backed snapshot store.

    Args:
        redis_url: Redis connection URL
        key_prefix: Prefix for Redis keys (default: "stackplan:state")
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "stackplan:state",
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client: Optional[redis.Redis] = None
        self._connected = False

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._connected:
            return

        try:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self._client.ping()
            self._connected = True
            logger.info("redis_state_store_connected", url=self._redis_url)
        except Exception as e:
            logger.error("redis_state_store_connection_failed", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()
            self._connected = False
            logger.info("redis_state_store_disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if connected to Redis."""
        return self._connected

    def _make_key(self, unit: str) -> str:
        """Create Redis key for a unit's snapshot."""
        return f"{self._key_prefix}:{unit}"

    def _require_client(self) -> redis.Redis:
        if not self._connected or self._client is None:
            raise RuntimeError("State store not connected. Call connect() first.")
        return self._client

    async def read(self, unit: str) -> StateSnapshot:
        """Current snapshot for unit (version 0 when never written)."""
        client = self._require_client()
        try:
            raw = await client.get(self._make_key(unit))
        except RedisError as e:
            raise StateStoreError(f"Failed to read state for unit '{unit}'", {"error": str(e)}) from e

        if raw is None:
            return StateSnapshot(unit=unit)
        return StateSnapshot.model_validate_json(raw)

    async def write(self, snapshot: StateSnapshot, expected_version: int) -> StateSnapshot:
        """
        Store snapshot if the stored version still equals expected_version.

        Raises:
            ConcurrentModificationError: Stored version moved on, or another
                client wrote the key during the transaction.
            StateStoreError: Redis could not be reached.
        """
        client = self._require_client()
        key = self._make_key(snapshot.unit)

        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current = StateSnapshot.model_validate_json(raw).version if raw else 0

                if current != expected_version:
                    await pipe.unwatch()
                    record_state_write("redis", "conflict")
                    raise ConcurrentModificationError(snapshot.unit, expected_version, current)

                stored = snapshot.model_copy(
                    update={
                        "version": expected_version + 1,
                        "updated_at": datetime.now(timezone.utc),
                    }
                )
                pipe.multi()
                pipe.set(key, stored.model_dump_json())
                await pipe.execute()
        except WatchError:
            record_state_write("redis", "conflict")
            actual = await self._stored_version(key)
            raise ConcurrentModificationError(snapshot.unit, expected_version, actual)
        except RedisError as e:
            record_state_write("redis", "error")
            raise StateStoreError(
                f"Failed to write state for unit '{snapshot.unit}'", {"error": str(e)}
            ) from e

        record_state_write("redis", "ok")
        logger.debug("state_written", unit=snapshot.unit, version=stored.version)
        return stored

    async def delete(self, unit: str) -> None:
        """Remove the unit's snapshot entirely."""
        client = self._require_client()
        await client.delete(self._make_key(unit))
        logger.info("state_deleted", unit=unit, backend="redis")

    async def _stored_version(self, key: str) -> int:
        raw = await self._require_client().get(key)
        return StateSnapshot.model_validate_json(raw).version if raw else 0
