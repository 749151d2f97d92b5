"""
PostgreSQL event record repository.

Uses SQLAlchemy async Core with raw SQL (``text()``). Sequence numbers come
from an upsert on ``event_record_sequences``: the counter row stays locked
until the appending transaction ends, which serializes appends to one
aggregate, and a rollback undoes the increment. Claims lock candidate rows
with ``FOR UPDATE SKIP LOCKED`` so concurrent dispatchers never pick the same
record.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import TracebackType
from typing import Any, Self
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

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
from eventrelay.records import DispatchStats, DispatchStatus, EventRecord
from eventrelay.repositories._claims import (
    CLAIM_CANDIDATES_SQL,
    RECORD_COLUMNS,
    ClaimCandidate,
    claim_sort_key,
    select_head_runs,
)
from eventrelay.repositories.interface import UnitOfWork

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _row_to_record(row: Sequence[Any]) -> EventRecord:
    return EventRecord(
        id=row[0],
        tenant_id=row[1],
        aggregate_type=row[2],
        aggregate_id=row[3],
        event_type=row[4],
        payload=row[5],
        relayable=row[6],
        occurred_at=row[7],
        sequence=row[8],
        dispatch_status=DispatchStatus(row[9]),
        claimed_by=row[10],
        claimed_at=row[11],
        attempt_count=row[12] or 0,
        last_error=row[13],
        next_attempt_at=row[14],
        dispatched_at=row[15],
        actor_id=row[16],
        actor_name=row[17],
        correlation_id=row[18],
        ip_address=row[19],
    )


class _UnitOfWorkState(Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class PostgreSQLUnitOfWork:
    """
    Unit of work of a PostgreSQLEventRecordRepository.

    Owns a connection and transaction opened from the repository's engine on
    first use. When built around an existing connection, the caller owns
    that connection's transaction and commit()/rollback() only end the unit
    of work.

    Example:
        >>> async with repo.begin() as uow:
        ...     conn = await uow.get_connection()
        ...     await conn.execute(text("UPDATE orders SET ..."), params)
        ...     await store.append(OrderPlaced(...), AppendContext(..., unit_of_work=uow))
    """

    def __init__(
        self,
        repository: PostgreSQLEventRecordRepository,
        connection: AsyncConnection | None = None,
    ) -> None:
        self._repository = repository
        self._state = _UnitOfWorkState.ACTIVE
        self._external = connection is not None
        self._connection = connection
        self._transaction: AsyncTransaction | None = None

    @property
    def is_active(self) -> bool:
        return self._state is _UnitOfWorkState.ACTIVE

    async def get_connection(self) -> AsyncConnection:
        """Open the connection and transaction if needed and return the connection."""
        if not self.is_active:
            raise UnitOfWorkError("Unit of work is no longer active")
        if self._connection is None:
            engine = self._repository._engine
            if engine is None:
                raise UnitOfWorkError("Repository has no engine to open a connection from")
            self._connection = await engine.connect()
            try:
                self._transaction = await self._connection.begin()
            except BaseException:
                await self._connection.close()
                self._connection = None
                raise
        return self._connection

    async def commit(self) -> None:
        if not self.is_active:
            raise UnitOfWorkError(f"Cannot commit a unit of work that is {self._state.value}")
        if self._transaction is None:
            self._state = _UnitOfWorkState.COMMITTED
            return
        try:
            await self._transaction.commit()
        except BaseException:
            await self._end(_UnitOfWorkState.ROLLED_BACK)
            raise
        self._state = _UnitOfWorkState.COMMITTED
        await self._close()

    async def rollback(self) -> None:
        if not self.is_active:
            return
        await self._end(_UnitOfWorkState.ROLLED_BACK)

    async def _end(self, state: _UnitOfWorkState) -> None:
        self._state = state
        if self._transaction is None:
            return
        try:
            await self._transaction.rollback()
        finally:
            await self._close()

    async def _close(self) -> None:
        if self._connection is not None and not self._external:
            await self._connection.close()
        self._connection = None
        self._transaction = None

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


class PostgreSQLEventRecordRepository:
    """
    PostgreSQL implementation of EventRecordRepository.

    Stores records in the `event_records` table (see eventrelay.migrations).

    Dispatcher operations each run in their own transaction when the
    repository is given an AsyncEngine. With an AsyncConnection they run on
    that connection and the caller is responsible for transaction management.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
        >>> repo = PostgreSQLEventRecordRepository(engine)
        >>> async with repo.begin() as uow:
        ...     await store.append(event, AppendContext(..., unit_of_work=uow))
        >>> claimed = await repo.claim_batch("worker-1", 100, lease_duration=30.0)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            conn: Database engine, or a connection whose transaction the caller manages
            clock: Returns the current UTC time (defaults to datetime.now(UTC))
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or _utcnow
        self.conn = conn
        self._engine = conn if isinstance(conn, AsyncEngine) else None

    @asynccontextmanager
    async def _connect(self, transactional: bool = True) -> AsyncIterator[AsyncConnection]:
        """Yield a connection for one operation; own transaction only with an engine."""
        if self._engine is None:
            yield self.conn  # type: ignore[misc]
        elif transactional:
            async with self._engine.begin() as connection:
                yield connection
        else:
            async with self._engine.connect() as connection:
                yield connection

    def begin(self, connection: AsyncConnection | None = None) -> PostgreSQLUnitOfWork:
        """
        Start a unit of work.

        Args:
            connection: Existing connection to append on. Defaults to the
                repository's connection if it was built with one.
        """
        if connection is None and self._engine is None:
            connection = self.conn  # type: ignore[assignment]
        return PostgreSQLUnitOfWork(self, connection)

    def _check_uow(self, uow: object) -> PostgreSQLUnitOfWork:
        if not isinstance(uow, PostgreSQLUnitOfWork) or uow._repository is not self:
            raise UnitOfWorkError("Unit of work was not started by this repository")
        if not uow.is_active:
            raise UnitOfWorkError("Unit of work is no longer active")
        return uow

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
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            conn = await self._check_uow(uow).get_connection()
            result = await conn.execute(
                text("""
                    INSERT INTO event_record_sequences
                        (tenant_id, aggregate_type, aggregate_id, last_sequence)
                    VALUES (:tenant_id, :aggregate_type, :aggregate_id, 1)
                    ON CONFLICT (tenant_id, aggregate_type, aggregate_id)
                    DO UPDATE SET last_sequence = event_record_sequences.last_sequence + 1
                    RETURNING last_sequence
                """),
                {
                    "tenant_id": tenant_id,
                    "aggregate_type": aggregate_type,
                    "aggregate_id": aggregate_id,
                },
            )
            return int(result.scalar_one())

    async def insert(self, record: EventRecord, uow: UnitOfWork) -> None:
        with self._tracer.span(
            "eventrelay.repository.insert",
            {
                ATTR_RECORD_ID: str(record.id),
                ATTR_EVENT_TYPE: record.event_type,
                ATTR_AGGREGATE_ID: record.aggregate_id,
                ATTR_SEQUENCE: record.sequence,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            conn = await self._check_uow(uow).get_connection()
            try:
                await conn.execute(
                    text(f"""
                        INSERT INTO event_records ({RECORD_COLUMNS})
                        VALUES (:id, :tenant_id, :aggregate_type, :aggregate_id, :event_type,
                                :payload, :relayable, :occurred_at, :sequence, :dispatch_status,
                                :claimed_by, :claimed_at, :attempt_count, :last_error,
                                :next_attempt_at, :dispatched_at, :actor_id, :actor_name,
                                :correlation_id, :ip_address)
                    """),
                    {
                        "id": record.id,
                        "tenant_id": record.tenant_id,
                        "aggregate_type": record.aggregate_type,
                        "aggregate_id": record.aggregate_id,
                        "event_type": record.event_type,
                        "payload": record.payload,
                        "relayable": record.relayable,
                        "occurred_at": record.occurred_at,
                        "sequence": record.sequence,
                        "dispatch_status": record.dispatch_status.value,
                        "claimed_by": record.claimed_by,
                        "claimed_at": record.claimed_at,
                        "attempt_count": record.attempt_count,
                        "last_error": record.last_error,
                        "next_attempt_at": record.next_attempt_at,
                        "dispatched_at": record.dispatched_at,
                        "actor_id": record.actor_id,
                        "actor_name": record.actor_name,
                        "correlation_id": record.correlation_id,
                        "ip_address": record.ip_address,
                    },
                )
            except IntegrityError as e:
                raise PersistenceError(
                    f"Event record {record.id} violates a constraint: {e.orig}",
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
                ATTR_DB_SYSTEM: "postgresql",
            },
        ) as span:
            now = self._clock()
            lease_cutoff = now - timedelta(seconds=lease_duration)

            async with self._connect(transactional=True) as conn:
                result = await conn.execute(
                    text(CLAIM_CANDIDATES_SQL.format(lock_clause="FOR UPDATE OF r SKIP LOCKED")),
                    {"now": now, "lease_cutoff": lease_cutoff, "limit": batch_size},
                )
                rows = result.fetchall()
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

                result = await conn.execute(
                    text(f"""
                        UPDATE event_records
                        SET dispatch_status = 'claimed',
                            claimed_by = :worker_id,
                            claimed_at = :now,
                            next_attempt_at = NULL
                        WHERE id = ANY(:ids)
                        RETURNING {RECORD_COLUMNS}
                    """),
                    {"worker_id": worker_id, "now": now, "ids": ids},
                )
                claimed = [_row_to_record(row) for row in result.fetchall()]

            claimed.sort(key=lambda r: (claim_sort_key(r.aggregate_key), r.sequence))
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
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            async with self._connect(transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        UPDATE event_records
                        SET dispatch_status = 'dispatched',
                            dispatched_at = :now,
                            claimed_by = NULL,
                            claimed_at = NULL,
                            next_attempt_at = NULL
                        WHERE id = :id
                          AND relayable
                          AND dispatch_status <> 'dispatched'
                    """),
                    {"id": record_id, "now": self._clock()},
                )
                return result.rowcount > 0

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
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            now = self._clock()
            next_attempt_at = now + timedelta(seconds=retry_delay) if retry_delay > 0 else None

            async with self._connect(transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        UPDATE event_records
                        SET attempt_count = attempt_count + 1,
                            last_error = :error,
                            claimed_by = NULL,
                            claimed_at = NULL,
                            dispatch_status = CASE
                                WHEN attempt_count + 1 >= :max_attempts THEN 'failed'
                                ELSE 'pending'
                            END,
                            next_attempt_at = CASE
                                WHEN attempt_count + 1 >= :max_attempts THEN NULL
                                ELSE CAST(:next_attempt_at AS TIMESTAMPTZ)
                            END
                        WHERE id = :id
                          AND dispatch_status = 'claimed'
                          AND (CAST(:worker_id AS TEXT) IS NULL OR claimed_by = :worker_id)
                        RETURNING dispatch_status, attempt_count
                    """),
                    {
                        "id": record_id,
                        "error": error,
                        "max_attempts": max_attempts,
                        "next_attempt_at": next_attempt_at,
                        "worker_id": worker_id,
                    },
                )
                row = result.fetchone()
                if row is None:
                    result = await conn.execute(
                        text(
                            "SELECT dispatch_status, claimed_by FROM event_records WHERE id = :id"
                        ),
                        {"id": record_id},
                    )
                    current = result.fetchone()
                    if current is None:
                        raise RecordNotFoundError(record_id)
                    if worker_id is not None:
                        raise StaleClaimError(record_id, worker_id, current[0], current[1])
                    return DispatchStatus(current[0])

            status = DispatchStatus(row[0])
            if span:
                span.set_attribute(ATTR_ATTEMPT_COUNT, row[1])
                span.set_attribute(ATTR_DISPATCH_STATUS, status.value)
            return status

    async def release(self, record_ids: Sequence[UUID], *, worker_id: str | None = None) -> int:
        with self._tracer.span(
            "eventrelay.repository.release",
            {ATTR_EVENT_COUNT: len(record_ids), ATTR_DB_SYSTEM: "postgresql"},
        ):
            if not record_ids:
                return 0
            async with self._connect(transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        UPDATE event_records
                        SET dispatch_status = 'pending',
                            claimed_by = NULL,
                            claimed_at = NULL
                        WHERE dispatch_status = 'claimed'
                          AND (CAST(:worker_id AS TEXT) IS NULL OR claimed_by = :worker_id)
                          AND id = ANY(:ids)
                    """),
                    {"ids": list(record_ids), "worker_id": worker_id},
                )
                return result.rowcount

    async def requeue(self, record_id: UUID) -> bool:
        with self._tracer.span(
            "eventrelay.repository.requeue",
            {ATTR_RECORD_ID: str(record_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            async with self._connect(transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        UPDATE event_records
                        SET dispatch_status = 'pending',
                            attempt_count = 0,
                            next_attempt_at = NULL
                        WHERE id = :id AND dispatch_status = 'failed'
                    """),
                    {"id": record_id},
                )
                if result.rowcount > 0:
                    logger.info(
                        "Requeued failed event record %s",
                        record_id,
                        extra={"record_id": str(record_id)},
                    )
                    return True
                result = await conn.execute(
                    text("SELECT 1 FROM event_records WHERE id = :id"),
                    {"id": record_id},
                )
                if result.fetchone() is None:
                    raise RecordNotFoundError(record_id)
                return False

    async def _select(self, where: str, params: dict[str, Any]) -> list[EventRecord]:
        async with self._connect(transactional=False) as conn:
            result = await conn.execute(
                text(f"SELECT {RECORD_COLUMNS} FROM event_records {where}"),
                params,
            )
            rows = result.fetchall()
        return [_row_to_record(row) for row in rows]

    async def get(self, record_id: UUID) -> EventRecord | None:
        records = await self._select("WHERE id = :id", {"id": record_id})
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
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            return await self._select(
                """
                WHERE tenant_id = :tenant_id
                  AND aggregate_type = :aggregate_type
                  AND aggregate_id = :aggregate_id
                ORDER BY sequence ASC
                """,
                {
                    "tenant_id": tenant_id,
                    "aggregate_type": aggregate_type,
                    "aggregate_id": aggregate_id,
                },
            )

    async def list_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[EventRecord]:
        return await self._select(
            "WHERE tenant_id = :tenant_id ORDER BY occurred_at DESC LIMIT :limit",
            {"tenant_id": tenant_id, "limit": limit},
        )

    async def list_failed(self, limit: int = 100) -> list[EventRecord]:
        return await self._select(
            "WHERE dispatch_status = 'failed' ORDER BY occurred_at ASC LIMIT :limit",
            {"limit": limit},
        )

    async def get_stats(self, tenant_id: UUID | None = None) -> DispatchStats:
        with self._tracer.span(
            "eventrelay.repository.get_stats",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            where = "WHERE tenant_id = :tenant_id" if tenant_id is not None else ""
            async with self._connect(transactional=False) as conn:
                result = await conn.execute(
                    text(f"""
                        SELECT
                            COUNT(*) FILTER (WHERE dispatch_status = 'pending'),
                            COUNT(*) FILTER (
                                WHERE dispatch_status = 'pending' AND attempt_count > 0
                            ),
                            COUNT(*) FILTER (WHERE dispatch_status = 'claimed'),
                            COUNT(*) FILTER (WHERE dispatch_status = 'dispatched'),
                            COUNT(*) FILTER (WHERE dispatch_status = 'failed'),
                            COUNT(*) FILTER (WHERE dispatch_status = 'not_applicable'),
                            MIN(occurred_at) FILTER (WHERE dispatch_status = 'pending')
                        FROM event_records
                        {where}
                    """),
                    {"tenant_id": tenant_id} if tenant_id is not None else {},
                )
                row = result.fetchone()

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
                oldest_pending=row[6],
            )


__all__ = [
    "PostgreSQLEventRecordRepository",
    "PostgreSQLUnitOfWork",
]
