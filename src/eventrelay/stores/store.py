"""
Event store: the write-side API business operations use to record events.

Appending writes one event record through the caller's unit of work, so the
record commits or rolls back together with the business-state change that
produced it. The store never talks to the message bus; relaying is the
dispatcher's job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

from eventrelay.events.base import DomainEvent
from eventrelay.events.registry import EventRegistry, default_registry
from eventrelay.exceptions import PersistenceError
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_ACTOR_ID,
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_TYPE,
    ATTR_RECORD_ID,
    ATTR_RELAYABLE,
    ATTR_SEQUENCE,
    ATTR_TENANT_ID,
)
from eventrelay.records import DispatchStatus, EventRecord
from eventrelay.repositories.interface import EventRecordRepository, UnitOfWork

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class AppendContext:
    """
    Where an event belongs and who caused it.

    Attributes:
        tenant_id: Owning tenant
        aggregate_type: Kind of aggregate (e.g. "Order")
        aggregate_id: Aggregate instance; UUIDs and ints are stored as strings
        unit_of_work: The caller's active unit of work
        actor_id: User or process that caused the event
        actor_name: Display name of the actor
        correlation_id: Groups the events of one business operation
            (defaults to the aggregate id)
        ip_address: Client address of the originating request
    """

    tenant_id: UUID
    aggregate_type: str
    aggregate_id: str
    unit_of_work: UnitOfWork = field(repr=False)
    actor_id: str | None = None
    actor_name: str | None = None
    correlation_id: str | None = None
    ip_address: str | None = None

    def __post_init__(self) -> None:
        if not self.aggregate_type:
            raise ValueError("aggregate_type must not be empty.")
        if not isinstance(self.aggregate_id, str):
            object.__setattr__(self, "aggregate_id", str(self.aggregate_id))
        if not self.aggregate_id:
            raise ValueError("aggregate_id must not be empty.")
        if self.correlation_id is None:
            object.__setattr__(self, "correlation_id", self.aggregate_id)


class EventStore:
    """
    Appends domain events as event records.

    Each event's relay classification is looked up in the registry when it
    is appended and frozen into the record. Audit-only events (unregistered
    types included) are stored as ``not_applicable`` and never relayed.

    Example:
        >>> store = EventStore(repository)
        >>> async with repository.begin() as uow:
        ...     context = AppendContext(
        ...         tenant_id=tenant_id,
        ...         aggregate_type="Order",
        ...         aggregate_id="42",
        ...         unit_of_work=uow,
        ...         actor_id="user-7",
        ...     )
        ...     record_id = await store.append(OrderPlaced(total_cents=1250), context)
    """

    def __init__(
        self,
        repository: EventRecordRepository,
        registry: EventRegistry | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the event store.

        Args:
            repository: Repository records are written through
            registry: Relay classification of event types (defaults to the module registry)
            clock: Returns the current UTC time, used for occurred_at
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._repository = repository
        self._registry = registry if registry is not None else default_registry
        self._clock = clock or _utcnow
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def repository(self) -> EventRecordRepository:
        return self._repository

    async def append(self, event: DomainEvent, context: AppendContext) -> UUID:
        """
        Append one event inside the context's unit of work.

        Args:
            event: The domain event
            context: Aggregate, tenant, actor and unit of work

        Returns:
            Id of the new event record

        Raises:
            PersistenceError: If the record could not be written. The caller's
                unit of work must be rolled back.
        """
        with self._tracer.span(
            "eventrelay.store.append",
            {
                ATTR_EVENT_TYPE: event.event_type,
                ATTR_TENANT_ID: str(context.tenant_id),
                ATTR_AGGREGATE_TYPE: context.aggregate_type,
                ATTR_AGGREGATE_ID: context.aggregate_id,
                ATTR_ACTOR_ID: context.actor_id or "",
            },
        ) as span:
            record = await self._append(event, context)
            if span:
                span.set_attribute(ATTR_RECORD_ID, str(record.id))
                span.set_attribute(ATTR_SEQUENCE, record.sequence)
                span.set_attribute(ATTR_RELAYABLE, record.relayable)
            return record.id

    async def append_all(self, events: Sequence[DomainEvent], context: AppendContext) -> list[UUID]:
        """
        Append several events of one aggregate, in order, with consecutive sequences.

        Raises:
            PersistenceError: If any record could not be written
        """
        with self._tracer.span(
            "eventrelay.store.append_all",
            {
                ATTR_EVENT_COUNT: len(events),
                ATTR_TENANT_ID: str(context.tenant_id),
                ATTR_AGGREGATE_TYPE: context.aggregate_type,
                ATTR_AGGREGATE_ID: context.aggregate_id,
            },
        ):
            return [(await self._append(event, context)).id for event in events]

    async def _append(self, event: DomainEvent, context: AppendContext) -> EventRecord:
        event_type = event.event_type
        relayable = self._registry.is_relayable(event_type)

        try:
            payload = event.to_payload()
            sequence = await self._repository.next_sequence(
                context.unit_of_work,
                context.tenant_id,
                context.aggregate_type,
                context.aggregate_id,
            )
            record = EventRecord(
                id=uuid4(),
                tenant_id=context.tenant_id,
                aggregate_type=context.aggregate_type,
                aggregate_id=context.aggregate_id,
                event_type=event_type,
                payload=payload,
                relayable=relayable,
                occurred_at=self._clock(),
                sequence=sequence,
                dispatch_status=(
                    DispatchStatus.PENDING if relayable else DispatchStatus.NOT_APPLICABLE
                ),
                actor_id=context.actor_id,
                actor_name=context.actor_name,
                correlation_id=context.correlation_id,
                ip_address=context.ip_address,
            )
            await self._repository.insert(record, context.unit_of_work)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(
                "Failed to append %s to %s/%s: %s",
                event_type,
                context.aggregate_type,
                context.aggregate_id,
                e,
                extra={
                    "event_type": event_type,
                    "tenant_id": str(context.tenant_id),
                    "aggregate_type": context.aggregate_type,
                    "aggregate_id": context.aggregate_id,
                },
            )
            raise PersistenceError(
                f"Failed to append {event_type} to "
                f"{context.aggregate_type}/{context.aggregate_id}: {e}",
                event_type=event_type,
                aggregate_id=context.aggregate_id,
            ) from e

        logger.debug(
            "Appended %s to %s/%s at sequence %d (relayable=%s)",
            event_type,
            context.aggregate_type,
            context.aggregate_id,
            record.sequence,
            relayable,
            extra={
                "record_id": str(record.id),
                "event_type": event_type,
                "tenant_id": str(context.tenant_id),
                "aggregate_type": context.aggregate_type,
                "aggregate_id": context.aggregate_id,
                "sequence": record.sequence,
                "relayable": relayable,
            },
        )
        return record

    async def get_events(
        self,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: str,
    ) -> list[EventRecord]:
        """Audit trail of one aggregate, ordered by sequence."""
        return await self._repository.get_by_aggregate(tenant_id, aggregate_type, str(aggregate_id))

    async def get_events_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[EventRecord]:
        """Most recent events of a tenant, newest first."""
        return await self._repository.list_by_tenant(tenant_id, limit)
