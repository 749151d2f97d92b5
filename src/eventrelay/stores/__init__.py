"""Event store for the eventrelay library."""

from eventrelay.stores.store import AppendContext, EventStore

__all__ = [
    "AppendContext",
    "EventStore",
]
