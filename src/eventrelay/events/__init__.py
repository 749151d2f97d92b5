"""Domain event primitives and relay classification for eventrelay."""

from eventrelay.events.base import DomainEvent
from eventrelay.events.registry import (
    DuplicateEventTypeError,
    EventClassification,
    EventRegistry,
    EventTypeConflictError,
    EventTypeNotFoundError,
    default_registry,
    get_event_class,
    is_relayable,
    register_event,
    relayable_event,
)

__all__ = [
    # Base event class
    "DomainEvent",
    # Registry
    "EventRegistry",
    "EventClassification",
    "default_registry",
    # Decorators
    "register_event",
    "relayable_event",
    # Convenience functions
    "get_event_class",
    "is_relayable",
    # Exceptions
    "EventTypeConflictError",
    "EventTypeNotFoundError",
    "DuplicateEventTypeError",
]
