"""
Event type registry and relay classification.

The registry maps event type names to event classes and records, for each
type, whether its events are relayed to the message bus or kept for audit
only. The event store resolves the classification once, at append time, and
stores it in the record's immutable ``relayable`` column; changing the
classification later only affects events appended afterwards.

Usage:
    # Audit-only registration
    @register_event
    class PasswordChanged(DomainEvent):
        ...

    # Relayed to the message bus
    @register_event(relayable=True)
    class OrderPlaced(DomainEvent):
        ...

    # Shorthand for the above
    @relayable_event
    class OrderShipped(DomainEvent):
        ...

    # Explicit registration in an isolated registry
    registry = EventRegistry()
    registry.register(OrderPlaced, relayable=True)
    registry.is_relayable("OrderPlaced")  # True
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar, overload

if TYPE_CHECKING:
    from eventrelay.events.base import DomainEvent

logger = logging.getLogger(__name__)

TEvent = TypeVar("TEvent", bound="DomainEvent")

# Classes whose event_type was fixed by a registration in any registry
_named_classes: weakref.WeakSet[type[DomainEvent]] = weakref.WeakSet()


class EventTypeNotFoundError(KeyError):
    """Lookup of an event type name that has no registry entry."""

    def __init__(self, event_type: str, available_types: list[str]) -> None:
        self.event_type = event_type
        self.available_types = sorted(available_types)
        known = ", ".join(self.available_types) or "(registry is empty)"
        super().__init__(f"Event type '{event_type}' is not registered; known types: {known}")


class DuplicateEventTypeError(ValueError):
    """Two different classes claimed the same event type name."""

    def __init__(
        self,
        event_type: str,
        existing_class: type[DomainEvent],
        new_class: type[DomainEvent],
    ) -> None:
        self.event_type = event_type
        self.existing_class = existing_class
        self.new_class = new_class
        super().__init__(
            f"{new_class.__name__} cannot use event type '{event_type}', "
            f"it already belongs to {existing_class.__name__}"
        )


class EventTypeConflictError(ValueError):
    """A class that already carries one event type name was registered under another."""

    def __init__(self, event_class: type[DomainEvent], requested: str) -> None:
        self.event_class = event_class
        self.current = event_class.event_type
        self.requested = requested
        super().__init__(
            f"{event_class.__name__} already uses event type '{self.current}' "
            f"and cannot be registered as '{requested}'"
        )


@dataclass(frozen=True)
class EventClassification:
    """Registry entry: the event class and whether it is relayed."""

    event_class: type[DomainEvent]
    relayable: bool


class EventRegistry:
    """
    Event type names mapped to their class and relay classification.

    Most applications use ``default_registry`` through the decorators; tests
    build their own instance. Guarded by a reentrant lock so decorators
    running at import time in several threads are safe.

    Example:
        >>> registry = EventRegistry()
        >>> registry.register(OrderPlaced, relayable=True)
        >>> registry.register(PasswordChanged)
        >>> registry.is_relayable("OrderPlaced")
        True
        >>> registry.is_relayable("PasswordChanged")
        False
    """

    def __init__(self) -> None:
        self._entries: dict[str, EventClassification] = {}
        self._lock = threading.RLock()

    def register(
        self,
        event_class: type[TEvent],
        event_type: str | None = None,
        relayable: bool = False,
    ) -> type[TEvent]:
        """
        Add ``event_class`` under ``event_type`` (or the class's own event_type).

        Re-registering the same class is a no-op, or a reclassification
        when ``relayable`` changed. Returns the class so this can back a
        decorator.

        A name override is written to the class, since the store reads the
        name off the event. It is only accepted while the class still has
        its default name (the class name) and no registry holds it yet.

        Raises:
            DuplicateEventTypeError: The name is taken by another class
            EventTypeConflictError: The class already uses a different name
        """
        current_name = getattr(event_class, "event_type", None) or event_class.__name__
        name = event_type or current_name
        if name != current_name and (
            current_name != event_class.__name__ or event_class in _named_classes
        ):
            raise EventTypeConflictError(event_class, name)

        with self._lock:
            current = self._entries.get(name)
            if current is not None:
                if current.event_class is not event_class:
                    raise DuplicateEventTypeError(name, current.event_class, event_class)
                if current.relayable != relayable:
                    self._classify(name, event_class, relayable)
                return event_class

            if current_name != name:
                event_class.event_type = name
            _named_classes.add(event_class)
            self._entries[name] = EventClassification(event_class, relayable)

        logger.debug(
            "Event type %s registered as %s",
            name,
            "relayable" if relayable else "audit-only",
            extra={"event_type": name, "event_class": event_class.__name__, "relayable": relayable},
        )
        return event_class

    def reclassify(self, event_type: str, relayable: bool) -> None:
        """
        Flip a registered type between relayable and audit-only.

        Only appends made afterwards see the new classification.

        Raises:
            EventTypeNotFoundError: The type was never registered
        """
        with self._lock:
            self._classify(event_type, self._entry(event_type).event_class, relayable)

    def _entry(self, event_type: str) -> EventClassification:
        entry = self._entries.get(event_type)
        if entry is None:
            raise EventTypeNotFoundError(event_type, list(self._entries))
        return entry

    def _classify(self, event_type: str, event_class: type[DomainEvent], relayable: bool) -> None:
        self._entries[event_type] = EventClassification(event_class, relayable)
        logger.info(
            "Event type %s reclassified as %s",
            event_type,
            "relayable" if relayable else "audit-only",
            extra={"event_type": event_type, "relayable": relayable},
        )

    def is_relayable(self, event_type: str) -> bool:
        """Relay classification of ``event_type``; False when unregistered."""
        with self._lock:
            entry = self._entries.get(event_type)
        return entry is not None and entry.relayable

    def get(self, event_type: str) -> type[DomainEvent]:
        """
        Class registered under ``event_type``.

        Raises:
            EventTypeNotFoundError: The type was never registered
        """
        with self._lock:
            return self._entry(event_type).event_class

    def get_or_none(self, event_type: str) -> type[DomainEvent] | None:
        with self._lock:
            entry = self._entries.get(event_type)
        return None if entry is None else entry.event_class

    def contains(self, event_type: str) -> bool:
        with self._lock:
            return event_type in self._entries

    def list_types(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def list_relayable(self) -> list[str]:
        with self._lock:
            return sorted(name for name, entry in self._entries.items() if entry.relayable)

    def unregister(self, event_type: str) -> bool:
        """Drop ``event_type``. Returns False if it was not registered."""
        with self._lock:
            removed = self._entries.pop(event_type, None)
        if removed is None:
            return False
        logger.debug("Event type %s unregistered", event_type, extra={"event_type": event_type})
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __bool__(self) -> bool:
        # An empty registry is still a registry, not a missing one
        return True

    def __contains__(self, event_type: str) -> bool:
        return self.contains(event_type)

    def __iter__(self) -> Iterator[str]:
        return iter(self.list_types())


default_registry = EventRegistry()


@overload
def register_event(event_class: type[TEvent]) -> type[TEvent]: ...


@overload
def register_event(
    event_class: None = None,
    *,
    event_type: str | None = None,
    relayable: bool = False,
    registry: EventRegistry | None = None,
) -> Callable[[type[TEvent]], type[TEvent]]: ...


def register_event(
    event_class: type[TEvent] | None = None,
    *,
    event_type: str | None = None,
    relayable: bool = False,
    registry: EventRegistry | None = None,
) -> type[TEvent] | Callable[[type[TEvent]], type[TEvent]]:
    """
    Class decorator adding an event type to a registry.

    Works bare (audit-only, default registry) or called with options:

        @register_event
        class PasswordChanged(DomainEvent):
            ...

        @register_event(relayable=True, event_type="order.placed")
        class OrderPlaced(DomainEvent):
            ...

    ``event_type`` overrides the wire name. ``registry`` defaults to
    ``default_registry``.
    """
    target_registry = registry or default_registry

    def decorator(cls: type[TEvent]) -> type[TEvent]:
        return target_registry.register(cls, event_type, relayable=relayable)

    if event_class is not None:
        return decorator(event_class)
    return decorator


@overload
def relayable_event(event_class: type[TEvent]) -> type[TEvent]: ...


@overload
def relayable_event(
    event_class: None = None,
    *,
    event_type: str | None = None,
    registry: EventRegistry | None = None,
) -> Callable[[type[TEvent]], type[TEvent]]: ...


def relayable_event(
    event_class: type[TEvent] | None = None,
    *,
    event_type: str | None = None,
    registry: EventRegistry | None = None,
) -> type[TEvent] | Callable[[type[TEvent]], type[TEvent]]:
    """Shorthand for ``register_event(relayable=True)``."""
    decorator = register_event(event_type=event_type, relayable=True, registry=registry)
    if event_class is not None:
        return decorator(event_class)
    return decorator


def is_relayable(event_type: str) -> bool:
    """Relay classification of an event type in the default registry."""
    return default_registry.is_relayable(event_type)


def get_event_class(event_type: str) -> type[DomainEvent]:
    """Class registered under ``event_type`` in the default registry."""
    return default_registry.get(event_type)
