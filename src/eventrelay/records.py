"""
Event record model.

An EventRecord is the durable representation of one domain event together
with its dispatch state. Identity, payload, classification and sequence are
fixed when the record is written; only the dispatch-state fields
(``dispatch_status``, ``claimed_by``, ``claimed_at``, ``attempt_count``,
``last_error``, ``next_attempt_at``, ``dispatched_at``) change afterwards, and
only through an EventRecordRepository.

Dispatch lifecycle of a relayable record:

    pending -> claimed -> dispatched
    pending -> claimed -> pending        (publish failed, retried after backoff)
    pending -> claimed -> failed         (attempts exhausted, needs an operator)

Audit-only records are ``not_applicable`` for their whole life.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from eventrelay.serialization import json_dumps, json_loads


class DispatchStatus(str, Enum):
    """
    Dispatch state of an event record.

    Attributes:
        NOT_APPLICABLE: Audit-only record, never relayed
        PENDING: Waiting to be claimed (possibly after a failed attempt)
        CLAIMED: Leased by a dispatcher worker
        DISPATCHED: Accepted by the message bus
        FAILED: Attempts exhausted; terminal until requeued by an operator
    """

    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    CLAIMED = "claimed"
    DISPATCHED = "dispatched"
    FAILED = "failed"


AggregateKey = tuple[UUID, str, str]


@dataclass
class EventRecord:
    """
    One persisted domain event and its dispatch state.

    Attributes:
        id: Unique record identifier, also used by consumers for deduplication
        tenant_id: Owning tenant
        aggregate_type: Kind of aggregate that produced the event (e.g. "Order")
        aggregate_id: Identifier of the aggregate instance
        event_type: Logical event type name
        payload: Serialized event data
        relayable: Whether the event is relayed to the message bus
        occurred_at: When the event was appended (UTC)
        sequence: Position within the aggregate's event stream, starting at 1
        dispatch_status: Current dispatch state
        claimed_by: Worker holding the current lease
        claimed_at: Time of the most recent claim
        attempt_count: Publish attempts made so far
        last_error: Description of the last publish failure
        next_attempt_at: Earliest time a retried record may be claimed again
        dispatched_at: When the message bus accepted the event
        actor_id: User or process that caused the event
        actor_name: Display name of the actor
        correlation_id: Correlation identifier for tracing a business operation
        ip_address: Client address of the request that caused the event
    """

    id: UUID
    tenant_id: UUID
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    relayable: bool
    occurred_at: datetime
    sequence: int
    dispatch_status: DispatchStatus
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    dispatched_at: datetime | None = None
    actor_id: str | None = None
    actor_name: str | None = None
    correlation_id: str | None = None
    ip_address: str | None = None

    @property
    def aggregate_key(self) -> AggregateKey:
        """The (tenant_id, aggregate_type, aggregate_id) stream this record belongs to."""
        return (self.tenant_id, self.aggregate_type, self.aggregate_id)

    @property
    def is_terminal(self) -> bool:
        """True if the record will not change state without operator action."""
        return self.dispatch_status in (
            DispatchStatus.NOT_APPLICABLE,
            DispatchStatus.DISPATCHED,
            DispatchStatus.FAILED,
        )

    def to_envelope(self) -> RelayEnvelope:
        """Build the message published to the bus for this record."""
        return RelayEnvelope(
            id=self.id,
            event_type=self.event_type,
            payload=self.payload,
            occurred_at=self.occurred_at,
            tenant_id=self.tenant_id,
            aggregate_type=self.aggregate_type,
            aggregate_id=self.aggregate_id,
        )


@dataclass(frozen=True)
class RelayEnvelope:
    """
    Minimal message relayed to the message bus.

    Consumers deduplicate on ``id``: delivery is at-least-once.
    """

    id: UUID
    event_type: str
    payload: str
    occurred_at: datetime
    tenant_id: UUID
    aggregate_type: str
    aggregate_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(timespec="microseconds"),
            "tenant_id": str(self.tenant_id),
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
        }

    def to_json(self) -> str:
        return json_dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str | bytes) -> RelayEnvelope:
        """
        Parse an envelope produced by to_json().

        Raises:
            ValueError: If a field is missing or malformed
        """
        raw = json_loads(data)
        try:
            return cls(
                id=UUID(raw["id"]),
                event_type=raw["event_type"],
                payload=raw["payload"],
                occurred_at=datetime.fromisoformat(raw["occurred_at"]),
                tenant_id=UUID(raw["tenant_id"]),
                aggregate_type=raw["aggregate_type"],
                aggregate_id=raw["aggregate_id"],
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed relay envelope: {e}") from e


@dataclass(frozen=True)
class DispatchStats:
    """
    Dispatch state counts for monitoring.

    Attributes:
        pending_count: Relayable records waiting to be claimed
        retrying_count: Pending records that already failed at least once
        claimed_count: Records currently leased by a worker
        dispatched_count: Records accepted by the message bus
        failed_count: Records that exhausted their attempts
        not_applicable_count: Audit-only records
        oldest_pending: occurred_at of the oldest pending record
    """

    pending_count: int = 0
    retrying_count: int = 0
    claimed_count: int = 0
    dispatched_count: int = 0
    failed_count: int = 0
    not_applicable_count: int = 0
    oldest_pending: datetime | None = None


__all__ = [
    "AggregateKey",
    "DispatchStats",
    "DispatchStatus",
    "EventRecord",
    "RelayEnvelope",
]
