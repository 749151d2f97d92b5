"""
SQLite event record repository.

Lightweight repository using SQLite with async support via aiosqlite.

This implementation is suitable for:
- Development and testing environments
- Single-instance deployments
- Embedded applications

SQLite allows one writer at a time, so every operation of a repository
instance runs in its own ``BEGIN IMMEDIATE`` transaction serialized on the
shared connection. A unit of work holds that serialization from its first
write until it commits or rolls back: don't call other methods of the same
repository from the task that has a unit of work open.

For multiple dispatcher processes, use PostgreSQLEventRecordRepository.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import TracebackType
from typing import Any, Self
from uuid import UUID

import aiosqlite

from eventrelay.exceptions import (
    PersistenceError,
    RecordNotFoundError,
    StaleClaimError,
    UnitOfWorkError,
)
from eventrelay.migrations import get_schema
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
from eventrelay.records import DispatchStats, DispatchStatus, EventRecord
from eventrelay.repositories._claims import (
    CLAIM_CANDIDATES_SQL,
    RECORD_COLUMNS,
    ClaimCandidate,
    select_head_runs,
)
from eventrelay.repositories.interface import UnitOfWork

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_text(value: datetime | None) -> str | None:
    """Format a timestamp so that text comparison matches time order."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _row_to_record(row: Sequence[Any]) -> EventRecord:
    occurred_at = _parse_datetime(row[7])
    assert occurred_at is not None
    return EventRecord(
        id=UUID(row[0]),
        tenant_id=UUID(row[1]),
        aggregate_type=row[2],
        aggregate_id=row[3],
        event_type=row[4],
        payload=row[5],
        relayable=bool(row[6]),
        occurred_at=occurred_at,
        sequence=row[8],
        dispatch_status=DispatchStatus(row[9]),
        claimed_by=row[10],
        claimed_at=_parse_datetime(row[11]),
        attempt_count=row[12] or 0,
        last_error=row[13],
        next_attempt_at=_parse_datetime(row[14]),
        dispatched_at=_parse_datetime(row[15]),
        actor_id=row[16],
        actor_name=row[17],
        correlation_id=row[18],
        ip_address=row[19],
    )


class _UnitOfWorkState(Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class SQLiteUnitOfWork:
    """
    Unit of work of a SQLiteEventRecordRepository.

    The transaction starts lazily with the first write. Business-state
    writes that must commit together with the appended events go through
    get_connection().

    Example:
        >>> async with repo.begin() as uow:
        ...     conn = await uow.get_connection()
        ...     await conn.execute("UPDATE orders SET status = 'placed' WHERE id = ?", (order_id,))
        ...     await store.append(OrderPlaced(...), AppendContext(..., unit_of_work=uow))
    """

    def __init__(self, repository: SQLiteEventRecordRepository) -> None:
        self._repository = repository
        self._state = _UnitOfWorkState.ACTIVE
        self._started = False

    @property
    def is_active(self) -> bool:
        return self._state is _UnitOfWorkState.ACTIVE

    async def get_connection(self) -> aiosqlite.Connection:
        """Start the transaction if needed and return its connection."""
        if not self.is_active:
            raise UnitOfWorkError("Unit of work is no longer active")
        if not self._started:
            await self._repository._begin_immediate()
            self._started = True
        return self._repository._connection

    async def commit(self) -> None:
        if not self.is_active:
            raise UnitOfWorkError(f"Cannot commit a unit of work that is {self._state.value}")
        if not self._started:
            self._state = _UnitOfWorkState.COMMITTED
            return
        try:
            await self._repository._connection.commit()
        except BaseException:
            await self._end(_UnitOfWorkState.ROLLED_BACK)
            raise
        self._state = _UnitOfWorkState.COMMITTED
        self._repository._release_write_lock()

    async def rollback(self) -> None:
        if not self.is_active:
            return
        await self._end(_UnitOfWorkState.ROLLED_BACK)

    async def _end(self, state: _UnitOfWorkState) -> None:
        self._state = state
        if not self._started:
            return
        try:
            await self._repository._connection.rollback()
        finally:
            self._repository._release_write_lock()

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


class SQLiteEventRecordRepository:
    """
    SQLite implementation of EventRecordRepository.

    SQLite-specific adaptations:
    - UUIDs stored as TEXT (36 characters, hyphenated format)
    - Timestamps stored as TEXT in ISO 8601 format, normalized to UTC
    - Booleans stored as INTEGER 0/1
    - Uses `SUM(CASE WHEN ... THEN 1 ELSE 0 END)` instead of `COUNT(*) FILTER`

    Example:
        >>> async with aiosqlite.connect("events.db") as db:
        ...     repo = SQLiteEventRecordRepository(db)
        ...     await repo.initialize()
        ...     async with repo.begin() as uow:
        ...         await store.append(event, AppendContext(..., unit_of_work=uow))
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            connection: aiosqlite database connection
            clock: Returns the current UTC time (defaults to datetime.now(UTC))
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or _utcnow
        self._connection = connection
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the event_records table and its indexes if they don't exist."""
        async with self._write_lock:
            await self._connection.executescript(get_schema("sqlite"))
            await self._connection.commit()
        logger.info("Initialized SQLite event record schema")

    async def _begin_immediate(self) -> None:
        await self._write_lock.acquire()
        try:
            await self._connection.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._write_lock.release()
            raise

    def _release_write_lock(self) -> None:
        self._write_lock.release()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run one repository operation in its own transaction."""
        await self._begin_immediate()
        try:
            yield self._connection
        except BaseException:
            await self._connection.rollback()
            raise
        else:
            await self._connection.commit()
        finally:
            self._release_write_lock()

    def _check_uow(self, uow: object) -> SQLiteUnitOfWork:
        if not isinstance(uow, SQLiteUnitOfWork) or uow._repository is not self:
            raise UnitOfWorkError("Unit of work was not started by this repository")
        if not uow.is_active:
            raise UnitOfWorkError("Unit of work is no longer active")
        return uow

    def begin(self) -> SQLiteUnitOfWork:
        return SQLiteUnitOfWork(self)

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
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            conn = await self._check_uow(uow).get_connection()
            cursor = await conn.execute(
                """
                SELECT COALESCE(MAX(sequence), 0)
                FROM event_records
                WHERE tenant_id = ? AND aggregate_type = ? AND aggregate_id = ?
                """,
                (str(tenant_id), aggregate_type, aggregate_id),
            )
            row = await cursor.fetchone()
            return (row[0] if row else 0) + 1

    async def insert(self, record: EventRecord, uow: UnitOfWork) -> None:
        with self._tracer.span(
            "eventrelay.repository.insert",
            {
                ATTR_RECORD_ID: str(record.id),
                ATTR_EVENT_TYPE: record.event_type,
                ATTR_AGGREGATE_ID: record.aggregate_id,
                ATTR_SEQUENCE: record.sequence,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            conn = await self._check_uow(uow).get_connection()
            try:
                await conn.execute(
                    f"""
                    INSERT INTO event_records ({RECORD_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(record.id),
                        str(record.tenant_id),
                        record.aggregate_type,
                        record.aggregate_id,
                        record.event_type,
                        record.payload,
                        1 if record.relayable else 0,
                        _to_text(record.occurred_at),
                        record.sequence,
                        record.dispatch_status.value,
                        record.claimed_by,
                        _to_text(record.claimed_at),
                        record.attempt_count,
                        record.last_error,
                        _to_text(record.next_attempt_at),
                        _to_text(record.dispatched_at),
                        record.actor_id,
                        record.actor_name,
                        record.correlation_id,
                        record.ip_address,
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise PersistenceError(
                    f"Event record {record.id} violates a constraint: {e}",
                    event_type=record.event_type,
                    aggregate_id=record.aggregate_id,
                ) from e

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
                ATTR_DB_SYSTEM: "sqlite",
            },
        ) as span:
            now = self._clock()
            lease_cutoff = now - timedelta(seconds=lease_duration)

            async with self._transaction() as conn:
                cursor = await conn.execute(
                    CLAIM_CANDIDATES_SQL.format(lock_clause=""),
                    {
                        "now": _to_text(now),
                        "lease_cutoff": _to_text(lease_cutoff),
                        "limit": batch_size,
                    },
                )
                rows = await cursor.fetchall()
                statuses = {row[0]: row[5] for row in rows}
                ids = select_head_runs(
                    (
                        ClaimCandidate(row[0], (row[1], row[2], row[3]), row[4], row[6])
                        for row in rows
                    ),
                    batch_size,
                )
                if not ids:
                    return []

                placeholders = ", ".join("?" for _ in ids)
                await conn.execute(
                    f"""
                    UPDATE event_records
                    SET dispatch_status = 'claimed',
                        claimed_by = ?,
                        claimed_at = ?,
                        next_attempt_at = NULL
                    WHERE id IN ({placeholders})
                    """,
                    (worker_id, _to_text(now), *ids),
                )
                cursor = await conn.execute(
                    f"""
                    SELECT {RECORD_COLUMNS}
                    FROM event_records
                    WHERE id IN ({placeholders})
                    ORDER BY aggregate_type, aggregate_id, tenant_id, sequence
                    """,
                    ids,
                )
                claimed = [_row_to_record(row) for row in await cursor.fetchall()]

            reclaimed = sum(1 for record_id in ids if statuses[record_id] == "claimed")
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
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    UPDATE event_records
                    SET dispatch_status = 'dispatched',
                        dispatched_at = ?,
                        claimed_by = NULL,
                        claimed_at = NULL,
                        next_attempt_at = NULL
                    WHERE id = ?
                      AND relayable = 1
                      AND dispatch_status <> 'dispatched'
                    """,
                    (_to_text(self._clock()), str(record_id)),
                )
                return cursor.rowcount > 0

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
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            now = self._clock()
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    SELECT dispatch_status, attempt_count, claimed_by
                    FROM event_records
                    WHERE id = ?
                    """,
                    (str(record_id),),
                )
                row = await cursor.fetchone()
                if row is None:
                    raise RecordNotFoundError(record_id)
                status = DispatchStatus(row[0])
                held = status == DispatchStatus.CLAIMED and worker_id in (None, row[2])
                if not held:
                    if worker_id is not None:
                        raise StaleClaimError(record_id, worker_id, status.value, row[2])
                    return status

                attempt_count = (row[1] or 0) + 1
                if attempt_count >= max_attempts:
                    status = DispatchStatus.FAILED
                    next_attempt_at = None
                else:
                    status = DispatchStatus.PENDING
                    next_attempt_at = (
                        now + timedelta(seconds=retry_delay) if retry_delay > 0 else None
                    )

                await conn.execute(
                    """
                    UPDATE event_records
                    SET dispatch_status = ?,
                        attempt_count = ?,
                        last_error = ?,
                        next_attempt_at = ?,
                        claimed_by = NULL,
                        claimed_at = NULL
                    WHERE id = ?
                    """,
                    (
                        status.value,
                        attempt_count,
                        error,
                        _to_text(next_attempt_at),
                        str(record_id),
                    ),
                )

            if span:
                span.set_attribute(ATTR_ATTEMPT_COUNT, attempt_count)
                span.set_attribute(ATTR_DISPATCH_STATUS, status.value)
            return status

    async def release(self, record_ids: Sequence[UUID], *, worker_id: str | None = None) -> int:
        with self._tracer.span(
            "eventrelay.repository.release",
            {ATTR_EVENT_COUNT: len(record_ids), ATTR_DB_SYSTEM: "sqlite"},
        ):
            if not record_ids:
                return 0
            placeholders = ", ".join("?" for _ in record_ids)
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    f"""
                    UPDATE event_records
                    SET dispatch_status = 'pending',
                        claimed_by = NULL,
                        claimed_at = NULL
                    WHERE dispatch_status = 'claimed'
                      AND (? IS NULL OR claimed_by = ?)
                      AND id IN ({placeholders})
                    """,
                    [worker_id, worker_id, *(str(record_id) for record_id in record_ids)],
                )
                return cursor.rowcount

    async def requeue(self, record_id: UUID) -> bool:
        with self._tracer.span(
            "eventrelay.repository.requeue",
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    UPDATE event_records
                    SET dispatch_status = 'pending',
                        attempt_count = 0,
                        next_attempt_at = NULL
                    WHERE id = ? AND dispatch_status = 'failed'
                    """,
                    (str(record_id),),
                )
                if cursor.rowcount > 0:
                    logger.info(
                        "Requeued failed event record %s",
                        record_id,
                        extra={"record_id": str(record_id)},
                    )
                    return True
                cursor = await conn.execute(
                    "SELECT 1 FROM event_records WHERE id = ?", (str(record_id),)
                )
                if await cursor.fetchone() is None:
                    raise RecordNotFoundError(record_id)
                return False

    async def _select(self, where: str, params: Sequence[Any]) -> list[EventRecord]:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"SELECT {RECORD_COLUMNS} FROM event_records {where}", params
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def get(self, record_id: UUID) -> EventRecord | None:
        records = await self._select("WHERE id = ?", (str(record_id),))
        return records[0] if records else None

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
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            return await self._select(
                """
                WHERE tenant_id = ? AND aggregate_type = ? AND aggregate_id = ?
                ORDER BY sequence ASC
                """,
                (str(tenant_id), aggregate_type, aggregate_id),
            )

    async def list_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[EventRecord]:
        return await self._select(
            "WHERE tenant_id = ? ORDER BY occurred_at DESC LIMIT ?",
            (str(tenant_id), limit),
        )

    async def list_failed(self, limit: int = 100) -> list[EventRecord]:
        return await self._select(
            "WHERE dispatch_status = 'failed' ORDER BY occurred_at ASC LIMIT ?",
            (limit,),
        )

    async def get_stats(self, tenant_id: UUID | None = None) -> DispatchStats:
        with self._tracer.span(
            "eventrelay.repository.get_stats",
            {ATTR_DB_SYSTEM: "sqlite"},
        ):
            where = "WHERE tenant_id = ?" if tenant_id is not None else ""
            params = (str(tenant_id),) if tenant_id is not None else ()
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    f"""
                    SELECT
                        SUM(CASE WHEN dispatch_status = 'pending' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN dispatch_status = 'pending' AND attempt_count > 0
                            THEN 1 ELSE 0 END),
                        SUM(CASE WHEN dispatch_status = 'claimed' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN dispatch_status = 'dispatched' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN dispatch_status = 'failed' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN dispatch_status = 'not_applicable' THEN 1 ELSE 0 END),
                        MIN(CASE WHEN dispatch_status = 'pending' THEN occurred_at END)
                    FROM event_records
                    {where}
                    """,
                    params,
                )
                row = await cursor.fetchone()

            # Aggregate query always returns a row
            if row is None:
                return DispatchStats()

            return DispatchStats(
                pending_count=row[0] or 0,
                retrying_count=row[1] or 0,
                claimed_count=row[2] or 0,
                dispatched_count=row[3] or 0,
                failed_count=row[4] or 0,
                not_applicable_count=row[5] or 0,
                oldest_pending=_parse_datetime(row[6]),
            )


__all__ = [
    "SQLiteEventRecordRepository",
    "SQLiteUnitOfWork",
]
