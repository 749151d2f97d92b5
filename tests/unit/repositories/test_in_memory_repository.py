"""
Unit tests specific to InMemoryEventRecordRepository.

Backend-independent behavior is covered in test_repository_conformance.py.
"""

import asyncio
from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest

from eventrelay.exceptions import PersistenceError, UnitOfWorkError
from eventrelay.observability import MockTracer
from eventrelay.records import DispatchStatus, EventRecord
from eventrelay.repositories.in_memory import InMemoryEventRecordRepository
from tests.fixtures import FakeClock


def make_record(tenant_id: UUID, sequence: int = 1, **overrides) -> EventRecord:
    values = {
        "id": uuid4(),
        "tenant_id": tenant_id,
        "aggregate_type": "Order",
        "aggregate_id": "42",
        "event_type": "OrderPlaced",
        "payload": "{}",
        "relayable": True,
        "occurred_at": datetime(2026, 1, 1, tzinfo=UTC),
        "sequence": sequence,
        "dispatch_status": DispatchStatus.PENDING,
    }
    values.update(overrides)
    return EventRecord(**values)


class TestInMemoryUnitOfWork:
    @pytest.fixture
    def repo(self, clock: FakeClock) -> InMemoryEventRecordRepository:
        return InMemoryEventRecordRepository(clock=clock, enable_tracing=False)

    @pytest.mark.asyncio
    async def test_staged_records_are_invisible_until_commit(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        uow = repo.begin()
        sequence = await repo.next_sequence(uow, tenant_id, "Order", "42")
        record = make_record(tenant_id, sequence)
        await repo.insert(record, uow)

        assert [r.id for r in uow.staged] == [record.id]
        assert await repo.get(record.id) is None

        await uow.commit()

        assert await repo.get(record.id) is not None
        assert uow.staged == []

    @pytest.mark.asyncio
    async def test_second_unit_of_work_waits_for_the_aggregate(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        first = repo.begin()
        assert await repo.next_sequence(first, tenant_id, "Order", "42") == 1
        await repo.insert(make_record(tenant_id, 1), first)

        second = repo.begin()
        waiting = asyncio.create_task(repo.next_sequence(second, tenant_id, "Order", "42"))
        await asyncio.sleep(0.01)
        assert not waiting.done()

        await first.commit()

        assert await waiting == 2
        await second.rollback()

    @pytest.mark.asyncio
    async def test_other_aggregates_are_not_blocked(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        first = repo.begin()
        await repo.next_sequence(first, tenant_id, "Order", "42")

        second = repo.begin()
        sequence = await asyncio.wait_for(
            repo.next_sequence(second, tenant_id, "Order", "43"), timeout=1.0
        )

        assert sequence == 1
        await first.rollback()
        await second.rollback()

    @pytest.mark.asyncio
    async def test_finished_unit_of_work_cannot_be_used(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        uow = repo.begin()
        await uow.commit()

        with pytest.raises(UnitOfWorkError):
            await repo.next_sequence(uow, tenant_id, "Order", "42")
        with pytest.raises(UnitOfWorkError):
            await uow.commit()

    @pytest.mark.asyncio
    async def test_rollback_after_commit_is_a_no_op(self, repo: InMemoryEventRecordRepository):
        uow = repo.begin()
        await uow.commit()

        await uow.rollback()

        assert not uow.is_active

    @pytest.mark.asyncio
    async def test_foreign_unit_of_work_is_rejected(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        other = InMemoryEventRecordRepository(enable_tracing=False)

        with pytest.raises(UnitOfWorkError, match="not started by this repository"):
            await repo.next_sequence(other.begin(), tenant_id, "Order", "42")

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        record = make_record(tenant_id)
        async with repo.begin() as uow:
            await repo.insert(record, uow)

        async with repo.begin() as uow:
            with pytest.raises(PersistenceError, match="Duplicate"):
                await repo.insert(make_record(tenant_id, 2, id=record.id), uow)

    @pytest.mark.asyncio
    async def test_gap_in_sequence_fails_commit(
        self, repo: InMemoryEventRecordRepository, tenant_id: UUID
    ):
        uow = repo.begin()
        await repo.insert(make_record(tenant_id, 2), uow)

        with pytest.raises(PersistenceError, match="does not follow"):
            await uow.commit()

        assert not uow.is_active
        assert await repo.get_by_aggregate(tenant_id, "Order", "42") == []


class TestInMemoryRepository:
    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, tenant_id: UUID):
        repo = InMemoryEventRecordRepository(enable_tracing=False)
        record = make_record(tenant_id)
        async with repo.begin() as uow:
            await repo.insert(record, uow)

        fetched = await repo.get(record.id)
        assert fetched is not None
        fetched.dispatch_status = DispatchStatus.FAILED

        stored = await repo.get(record.id)
        assert stored is not None
        assert stored.dispatch_status == DispatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_clear(self, tenant_id: UUID):
        repo = InMemoryEventRecordRepository(enable_tracing=False)
        async with repo.begin() as uow:
            await repo.insert(make_record(tenant_id), uow)

        await repo.clear()

        assert await repo.get_by_aggregate(tenant_id, "Order", "42") == []

    @pytest.mark.asyncio
    async def test_operations_open_spans(self, tenant_id: UUID):
        tracer = MockTracer()
        repo = InMemoryEventRecordRepository(tracer=tracer)
        record = make_record(tenant_id)
        async with repo.begin() as uow:
            await repo.next_sequence(uow, tenant_id, "Order", "42")
            await repo.insert(record, uow)

        await repo.claim_batch("worker-1", 10, 30.0)
        await repo.mark_dispatched(record.id)

        assert tracer.span_names == [
            "eventrelay.repository.next_sequence",
            "eventrelay.repository.insert",
            "eventrelay.repository.claim_batch",
            "eventrelay.repository.mark_dispatched",
        ]
        assert tracer.spans[2][1]["eventrelay.worker.id"] == "worker-1"
