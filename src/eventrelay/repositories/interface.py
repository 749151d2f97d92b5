"""
Repository and unit-of-work protocols for event records.

The EventRecordRepository is the only component allowed to change the
dispatch-state fields of an event record. Writes made by the event store go
through a UnitOfWork so they commit or roll back together with the caller's
business-state changes; dispatcher transitions (claim, complete, fail) run in
their own short transactions.
"""

from __future__ import annotations

from collections.abc import Sequence
from types import TracebackType
from typing import Protocol, Self, runtime_checkable
from uuid import UUID

from eventrelay.records import DispatchStats, DispatchStatus, EventRecord


@runtime_checkable
class UnitOfWork(Protocol):
    """
    A set of writes that commit or roll back together.

    Used as an async context manager: a clean exit commits, an exception
    rolls back. A finished unit of work cannot be reused.

    Example:
        >>> async with repository.begin() as uow:
        ...     await store.append(OrderPlaced(...), AppendContext(..., unit_of_work=uow))
    """

    @property
    def is_active(self) -> bool:
        """True until the unit of work is committed or rolled back."""
        ...

    async def commit(self) -> None:
        """
        Make every write of this unit of work durable.

        Raises:
            UnitOfWorkError: If the unit of work already finished
        """
        ...

    async def rollback(self) -> None:
        """Discard every write of this unit of work. No-op once finished."""
        ...

    async def __aenter__(self) -> Self: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


@runtime_checkable
class EventRecordRepository(Protocol):
    """
    Protocol for event record persistence and dispatch-state transitions.

    Implementations:
    - InMemoryEventRecordRepository: For tests and single-process use
    - SQLiteEventRecordRepository: aiosqlite-backed, serialized transactions
    - PostgreSQLEventRecordRepository: SQLAlchemy async, row-level locking
    """

    def begin(self) -> UnitOfWork:
        """Start a unit of work for appending records."""
        ...

    async def next_sequence(
        self,
        uow: UnitOfWork,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: str,
    ) -> int:
        """
        Allocate the next sequence number of an aggregate inside ``uow``.

        Concurrent units of work appending to the same aggregate are
        serialized: the second waits until the first commits or rolls back.

        Returns:
            1 for a new aggregate, otherwise the last sequence + 1
        """
        ...

    async def insert(self, record: EventRecord, uow: UnitOfWork) -> None:
        """
        Insert one record inside ``uow``.

        Raises:
            PersistenceError: If the record conflicts with an existing one
        """
        ...

    async def claim_batch(
        self,
        worker_id: str,
        batch_size: int,
        lease_duration: float,
    ) -> list[EventRecord]:
        """
        Atomically claim up to ``batch_size`` relayable records for dispatch.

        Claimable records are pending ones whose retry delay has passed, and
        claimed ones whose lease is at least ``lease_duration`` seconds old.
        A record is only claimed together with every earlier non-dispatched
        record of its aggregate, so an aggregate's events are never claimed
        out of order. Two concurrent callers never receive the same record.

        Returns:
            Claimed records ordered by (aggregate_type, aggregate_id, sequence)
        """
        ...

    async def mark_dispatched(self, record_id: UUID) -> bool:
        """
        Mark a record as accepted by the message bus. Idempotent.

        Returns:
            True if the state changed, False if it was already dispatched,
            audit-only or unknown
        """
        ...

    async def mark_failed(
        self,
        record_id: UUID,
        error: str,
        *,
        max_attempts: int,
        retry_delay: float = 0.0,
        worker_id: str | None = None,
    ) -> DispatchStatus:
        """
        Record a failed publish attempt of a claimed record.

        The attempt count is incremented and the lease cleared. The record
        returns to ``pending`` (claimable after ``retry_delay`` seconds) or,
        once ``max_attempts`` is reached, becomes ``failed``.

        With ``worker_id`` the update only applies while that worker still
        holds the claim.

        Returns:
            The record's status after the call (unchanged if it wasn't claimed
            and no ``worker_id`` was given)

        Raises:
            RecordNotFoundError: If no record has this id
            StaleClaimError: If ``worker_id`` is given and does not hold the claim
        """
        ...

    async def release(self, record_ids: Sequence[UUID], *, worker_id: str | None = None) -> int:
        """
        Give up claims without counting an attempt.

        With ``worker_id`` only claims held by that worker are released.

        Returns:
            Number of records returned to ``pending``
        """
        ...

    async def requeue(self, record_id: UUID) -> bool:
        """
        Reset a ``failed`` record to ``pending`` with attempt_count reset to zero.

        Returns:
            True if the record was requeued, False if it wasn't failed

        Raises:
            RecordNotFoundError: If no record has this id
        """
        ...

    async def get(self, record_id: UUID) -> EventRecord | None:
        """Get a record by id, or None."""
        ...

    async def get_by_aggregate(
        self,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: str,
    ) -> list[EventRecord]:
        """All records of one aggregate ordered by sequence. Read-only."""
        ...

    async def list_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[EventRecord]:
        """Most recent records of a tenant, newest first."""
        ...

    async def list_failed(self, limit: int = 100) -> list[EventRecord]:
        """Terminally failed records, oldest first, for operator triage."""
        ...

    async def get_stats(self, tenant_id: UUID | None = None) -> DispatchStats:
        """Dispatch state counts, optionally for a single tenant."""
        ...


__all__ = [
    "EventRecordRepository",
    "UnitOfWork",
]
