"""
In-memory event record repository.

Useful for tests and for single-process applications that don't need
durability. All data is lost when the process terminates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import TracebackType
from typing import Self
from uuid import UUID

from eventrelay.exceptions import (
    PersistenceError,
    RecordNotFoundError,
    StaleClaimError,
    UnitOfWorkError,
)
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_ATTEMPT_COUNT,
    ATTR_BATCH_SIZE,
    ATTR_DB_SYSTEM,
    ATTR_DISPATCH_STATUS,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_TYPE,
    ATTR_RECORD_ID,
    ATTR_SEQUENCE,
    ATTR_TENANT_ID,
    ATTR_WORKER_ID,
)
from eventrelay.records import AggregateKey, DispatchStats, DispatchStatus, EventRecord
from eventrelay.repositories._claims import claim_sort_key, is_claimable
from eventrelay.repositories.interface import UnitOfWork

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _held_by(record: EventRecord, worker_id: str | None) -> bool:
    """Claimed, and by ``worker_id`` when one is given."""
    if record.dispatch_status != DispatchStatus.CLAIMED:
        return False
    return worker_id is None or record.claimed_by == worker_id


class _UnitOfWorkState(Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class InMemoryUnitOfWork:
    """
    Unit of work of an InMemoryEventRecordRepository.

    Records are staged until commit. The first sequence allocation for an
    aggregate takes that aggregate's lock, which is held until the unit of
    work finishes, so concurrent appends to one aggregate run one after the
    other.
    """

    def __init__(self, repository: InMemoryEventRecordRepository) -> None:
        self._repository = repository
        self._state = _UnitOfWorkState.ACTIVE
        self._staged: list[EventRecord] = []
        self._sequences: dict[AggregateKey, int] = {}
        self._held_locks: dict[AggregateKey, asyncio.Lock] = {}

    @property
    def is_active(self) -> bool:
        return self._state is _UnitOfWorkState.ACTIVE

    @property
    def staged(self) -> list[EventRecord]:
        """Records written by this unit of work but not yet committed."""
        return list(self._staged)

    async def commit(self) -> None:
        if not self.is_active:
            raise UnitOfWorkError(f"Cannot commit a unit of work that is {self._state.value}")
        try:
            await self._repository._apply(self._staged)
        except BaseException:
            self._finish(_UnitOfWorkState.ROLLED_BACK)
            raise
        self._finish(_UnitOfWorkState.COMMITTED)

    async def rollback(self) -> None:
        if not self.is_active:
            return
        if self._staged:
            logger.debug(
                "Rolled back %d staged event record(s)",
                len(self._staged),
                extra={"event_count": len(self._staged)},
            )
        self._finish(_UnitOfWorkState.ROLLED_BACK)

    def _finish(self, state: _UnitOfWorkState) -> None:
        self._state = state
        self._staged.clear()
        self._sequences.clear()
        for lock in self._held_locks.values():
            lock.release()
        self._held_locks.clear()

    async def _allocate(self, key: AggregateKey) -> int:
        if key not in self._held_locks:
            lock = self._repository._aggregate_lock(key)
            await lock.acquire()
            self._held_locks[key] = lock
        current = self._sequences.get(key)
        if current is None:
            current = self._repository._last_sequence(key)
        self._sequences[key] = current + 1
        return current + 1

    def _stage(self, record: EventRecord) -> None:
        for staged in self._staged:
            if staged.id == record.id:
                raise PersistenceError(
                    f"Duplicate event record id {record.id}",
                    event_type=record.event_type,
                    aggregate_id=record.aggregate_id,
                )
            if staged.aggregate_key == record.aggregate_key and staged.sequence == record.sequence:
                raise PersistenceError(
                    f"Sequence {record.sequence} already used in this unit of work",
                    event_type=record.event_type,
                    aggregate_id=record.aggregate_id,
                )
        self._staged.append(replace(record))

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()
        elif self.is_active:
            await self.commit()


class InMemoryEventRecordRepository:
    """
    In-memory implementation of EventRecordRepository.

    Example:
        >>> repo = InMemoryEventRecordRepository()
        >>> async with repo.begin() as uow:
        ...     await store.append(event, AppendContext(..., unit_of_work=uow))
        >>> claimed = await repo.claim_batch("worker-1", 10, lease_duration=30.0)
        >>> await repo.mark_dispatched(claimed[0].id)
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize an empty in-memory repository.

        Args:
            clock: Returns the current UTC time (defaults to datetime.now(UTC))
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or _utcnow
        self._records: dict[UUID, EventRecord] = {}
        self._streams: dict[AggregateKey, list[UUID]] = {}
        self._aggregate_locks: dict[AggregateKey, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def begin(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)

    def _check_uow(self, uow: object) -> InMemoryUnitOfWork:
        if not isinstance(uow, InMemoryUnitOfWork) or uow._repository is not self:
            raise UnitOfWorkError("Unit of work was not started by this repository")
        if not uow.is_active:
            raise UnitOfWorkError("Unit of work is no longer active")
        return uow

    def _aggregate_lock(self, key: AggregateKey) -> asyncio.Lock:
        lock = self._aggregate_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._aggregate_locks[key] = lock
        return lock

    def _last_sequence(self, key: AggregateKey) -> int:
        stream = self._streams.get(key)
        if not stream:
            return 0
        return self._records[stream[-1]].sequence

    async def next_sequence(
        self,
        uow: UnitOfWork,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: str,
    ) -> int:
        with self._tracer.span(
            "eventrelay.repository.next_sequence",
            {
                ATTR_TENANT_ID: str(tenant_id),
                ATTR_AGGREGATE_TYPE: aggregate_type,
                ATTR_AGGREGATE_ID: aggregate_id,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            active = self._check_uow(uow)
            return await active._allocate((tenant_id, aggregate_type, aggregate_id))

    async def insert(self, record: EventRecord, uow: UnitOfWork) -> None:
        with self._tracer.span(
            "eventrelay.repository.insert",
            {
                ATTR_RECORD_ID: str(record.id),
                ATTR_EVENT_TYPE: record.event_type,
                ATTR_AGGREGATE_ID: record.aggregate_id,
                ATTR_SEQUENCE: record.sequence,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            active = self._check_uow(uow)
            if record.id in self._records:
                raise PersistenceError(
                    f"Duplicate event record id {record.id}",
                    event_type=record.event_type,
                    aggregate_id=record.aggregate_id,
                )
            active._stage(record)

    async def _apply(self, records: list[EventRecord]) -> None:
        async with self._lock:
            # A failed commit applies nothing
            last: dict[AggregateKey, int] = {}
            for record in records:
                key = record.aggregate_key
                if record.id in self._records:
                    raise PersistenceError(
                        f"Duplicate event record id {record.id}",
                        event_type=record.event_type,
                        aggregate_id=record.aggregate_id,
                    )
                previous = last.get(key, self._last_sequence(key))
                if record.sequence != previous + 1:
                    raise PersistenceError(
                        f"Sequence {record.sequence} does not follow {previous} for aggregate "
                        f"{record.aggregate_type}/{record.aggregate_id}",
                        event_type=record.event_type,
                        aggregate_id=record.aggregate_id,
                    )
                last[key] = record.sequence

            for record in records:
                self._records[record.id] = record
                self._streams.setdefault(record.aggregate_key, []).append(record.id)

    async def claim_batch(
        self,
        worker_id: str,
        batch_size: int,
        lease_duration: float,
    ) -> list[EventRecord]:
        with self._tracer.span(
            "eventrelay.repository.claim_batch",
            {
                ATTR_WORKER_ID: worker_id,
                ATTR_BATCH_SIZE: batch_size,
                ATTR_DB_SYSTEM: "memory",
            },
        ) as span:
            now = self._clock()
            lease_cutoff = now - timedelta(seconds=lease_duration)
            claimed: list[EventRecord] = []
            reclaimed = 0

            async with self._lock:
                for key in sorted(self._streams, key=claim_sort_key):
                    if len(claimed) >= batch_size:
                        break
                    for record_id in self._streams[key]:
                        record = self._records[record_id]
                        if not record.relayable:
                            continue
                        if record.dispatch_status == DispatchStatus.DISPATCHED:
                            continue
                        # Stop at the first unfinished record that can't be taken
                        if not is_claimable(record, now, lease_cutoff):
                            break
                        if record.dispatch_status == DispatchStatus.CLAIMED:
                            reclaimed += 1
                        record.dispatch_status = DispatchStatus.CLAIMED
                        record.claimed_by = worker_id
                        record.claimed_at = now
                        record.next_attempt_at = None
                        claimed.append(replace(record))
                        if len(claimed) >= batch_size:
                            break

            if reclaimed:
                logger.warning(
                    "Reclaimed %d event record(s) with expired leases",
                    reclaimed,
                    extra={"worker_id": worker_id, "reclaimed": reclaimed},
                )
            if span:
                span.set_attribute(ATTR_EVENT_COUNT, len(claimed))
            return claimed

    async def mark_dispatched(self, record_id: UUID) -> bool:
        with self._tracer.span(
            "eventrelay.repository.mark_dispatched",
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                record = self._records.get(record_id)
                if (
                    record is None
                    or not record.relayable
                    or record.dispatch_status == DispatchStatus.DISPATCHED
                ):
                    return False
                record.dispatch_status = DispatchStatus.DISPATCHED
                record.dispatched_at = self._clock()
                record.claimed_by = None
                record.claimed_at = None
                record.next_attempt_at = None
                return True

    async def mark_failed(
        self,
        record_id: UUID,
        error: str,
        *,
        max_attempts: int,
        retry_delay: float = 0.0,
        worker_id: str | None = None,
    ) -> DispatchStatus:
        with self._tracer.span(
            "eventrelay.repository.mark_failed",
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "memory"},
        ) as span:
            async with self._lock:
                record = self._records.get(record_id)
                if record is None:
                    raise RecordNotFoundError(record_id)
                if not _held_by(record, worker_id):
                    if worker_id is not None:
                        raise StaleClaimError(
                            record_id, worker_id, record.dispatch_status.value, record.claimed_by
                        )
                    return record.dispatch_status

                now = self._clock()
                record.attempt_count += 1
                record.last_error = error
                record.claimed_by = None
                record.claimed_at = None
                if record.attempt_count >= max_attempts:
                    record.dispatch_status = DispatchStatus.FAILED
                    record.next_attempt_at = None
                else:
                    record.dispatch_status = DispatchStatus.PENDING
                    record.next_attempt_at = (
                        now + timedelta(seconds=retry_delay) if retry_delay > 0 else None
                    )

                if span:
                    span.set_attribute(ATTR_ATTEMPT_COUNT, record.attempt_count)
                    span.set_attribute(ATTR_DISPATCH_STATUS, record.dispatch_status.value)
                return record.dispatch_status

    async def release(self, record_ids: Sequence[UUID], *, worker_id: str | None = None) -> int:
        with self._tracer.span(
            "eventrelay.repository.release",
            {ATTR_EVENT_COUNT: len(record_ids), ATTR_DB_SYSTEM: "memory"},
        ):
            released = 0
            async with self._lock:
                for record_id in record_ids:
                    record = self._records.get(record_id)
                    if record is None or not _held_by(record, worker_id):
                        continue
                    record.dispatch_status = DispatchStatus.PENDING
                    record.claimed_by = None
                    record.claimed_at = None
                    released += 1
            return released

    async def requeue(self, record_id: UUID) -> bool:
        with self._tracer.span(
            "eventrelay.repository.requeue",
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                record = self._records.get(record_id)
                if record is None:
                    raise RecordNotFoundError(record_id)
                if record.dispatch_status != DispatchStatus.FAILED:
                    return False
                record.dispatch_status = DispatchStatus.PENDING
                record.attempt_count = 0
                record.next_attempt_at = None
                logger.info(
                    "Requeued failed event record %s",
                    record_id,
                    extra={"record_id": str(record_id)},
                )
                return True

    async def get(self, record_id: UUID) -> EventRecord | None:
        async with self._lock:
            record = self._records.get(record_id)
            return replace(record) if record is not None else None

    async def get_by_aggregate(
        self,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: str,
    ) -> list[EventRecord]:
        with self._tracer.span(
            "eventrelay.repository.get_by_aggregate",
            {
                ATTR_TENANT_ID: str(tenant_id),
                ATTR_AGGREGATE_TYPE: aggregate_type,
                ATTR_AGGREGATE_ID: aggregate_id,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                stream = self._streams.get((tenant_id, aggregate_type, aggregate_id), [])
                return [replace(self._records[record_id]) for record_id in stream]

    async def list_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[EventRecord]:
        async with self._lock:
            records = [r for r in self._records.values() if r.tenant_id == tenant_id]
            records.sort(key=lambda r: r.occurred_at, reverse=True)
            return [replace(r) for r in records[:limit]]

    async def list_failed(self, limit: int = 100) -> list[EventRecord]:
        async with self._lock:
            failed = [
                r for r in self._records.values() if r.dispatch_status == DispatchStatus.FAILED
            ]
            failed.sort(key=lambda r: r.occurred_at)
            return [replace(r) for r in failed[:limit]]

    async def get_stats(self, tenant_id: UUID | None = None) -> DispatchStats:
        with self._tracer.span(
            "eventrelay.repository.get_stats",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                records = [
                    r
                    for r in self._records.values()
                    if tenant_id is None or r.tenant_id == tenant_id
                ]

            pending = [r for r in records if r.dispatch_status == DispatchStatus.PENDING]

            def count(status: DispatchStatus) -> int:
                return sum(1 for r in records if r.dispatch_status == status)

            return DispatchStats(
                pending_count=len(pending),
                retrying_count=sum(1 for r in pending if r.attempt_count > 0),
                claimed_count=count(DispatchStatus.CLAIMED),
                dispatched_count=count(DispatchStatus.DISPATCHED),
                failed_count=count(DispatchStatus.FAILED),
                not_applicable_count=count(DispatchStatus.NOT_APPLICABLE),
                oldest_pending=min((r.occurred_at for r in pending), default=None),
            )

    async def clear(self) -> None:
        """Clear all records. Useful for test setup/teardown."""
        async with self._lock:
            self._records.clear()
            self._streams.clear()


__all__ = [
    "InMemoryEventRecordRepository",
    "InMemoryUnitOfWork",
]
