"""State persistence: versioned snapshots with conditional writes."""

from stackplan.state.store import (
    InMemoryStateStore,
    StateStore,
    get_state_store,
    reset_state_store,
)

__all__ = [
    "InMemoryStateStore",
    "StateStore",
    "get_state_store",
    "reset_state_store",
]
