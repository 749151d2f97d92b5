"""
Base class for domain events.

Events are immutable value objects describing something that happened to
an aggregate. The aggregate identity, tenant and actor travel separately in
the append context; the event itself only carries its payload fields.
"""

from __future__ import annotations

from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict


class DomainEvent(BaseModel):
    """
    Base class for all domain events with automatic event_type derivation.

    The ``event_type`` class attribute is the name consumers use to pick a
    deserializer. It defaults to the class name; declare it explicitly to
    decouple the wire name from the Python name.

    Example without explicit event_type (auto-derived):
        >>> class OrderPlaced(DomainEvent):
        ...     order_number: str
        ...     total_cents: int
        ...
        >>> OrderPlaced.event_type
        'OrderPlaced'

    Example with explicit event_type:
        >>> class OrderShipped(DomainEvent):
        ...     event_type: ClassVar[str] = "order.shipped"
        ...     carrier: str
    """

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str] = "DomainEvent"

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        """Derive event_type from the class name unless the subclass declares one."""
        super().__pydantic_init_subclass__(**kwargs)
        if "event_type" not in cls.__dict__:
            cls.event_type = cls.__name__

    def to_payload(self) -> str:
        """
        Serialize the event fields to the stored payload.

        Returns:
            JSON string of the event's fields (UUIDs and datetimes as strings)
        """
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str | bytes) -> Self:
        """
        Rebuild an event from a stored payload.

        Raises:
            ValidationError: If the payload doesn't match the event schema
        """
        return cls.model_validate_json(payload)

    def __str__(self) -> str:
        return f"{self.event_type}({self.model_dump_json()})"
