"""
Shared pytest fixtures for the eventrelay library tests.

This module provides:
- Sample data fixtures (tenant_id)
- A controllable clock shared by the store and the repositories
- An isolated event registry with the test events classified
- Repository fixtures (memory_repository, sqlite_repository, and the
  parametrized ``repository`` that runs a test against both backends)
- Event store, message bus and ``append`` helper fixtures
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import aiosqlite
import pytest
import pytest_asyncio

from eventrelay.bus.memory import InMemoryMessageBus
from eventrelay.events.base import DomainEvent
from eventrelay.events.registry import EventRegistry
from eventrelay.repositories.in_memory import InMemoryEventRecordRepository
from eventrelay.repositories.interface import EventRecordRepository
from eventrelay.repositories.sqlite import SQLiteEventRecordRepository
from eventrelay.stores.store import AppendContext, EventStore
from tests.fixtures import (
    AppendFn,
    FakeClock,
    OrderCancelled,
    OrderPlaced,
    OrderShipped,
    PasswordChanged,
)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def tenant_id() -> UUID:
    """A random tenant ID."""
    return uuid4()


@pytest.fixture
def clock() -> FakeClock:
    """Clock shared by the store and the repository of a test."""
    return FakeClock()


@pytest.fixture
def registry() -> EventRegistry:
    """
    Isolated registry with the test events classified.

    Order events are relayable, PasswordChanged is audit-only and
    LoginAttempted is left unregistered.
    """
    registry = EventRegistry()
    registry.register(OrderPlaced, relayable=True)
    registry.register(OrderShipped, relayable=True)
    registry.register(OrderCancelled, relayable=True)
    registry.register(PasswordChanged)
    return registry


# =============================================================================
# Repository Fixtures
# =============================================================================


@pytest.fixture
def memory_repository(clock: FakeClock) -> InMemoryEventRecordRepository:
    return InMemoryEventRecordRepository(clock=clock, enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """In-memory SQLite database, closed after the test."""
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest_asyncio.fixture
async def sqlite_repository(
    sqlite_connection: aiosqlite.Connection, clock: FakeClock
) -> SQLiteEventRecordRepository:
    repo = SQLiteEventRecordRepository(sqlite_connection, clock=clock, enable_tracing=False)
    await repo.initialize()
    return repo


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def repository(
    request: pytest.FixtureRequest, clock: FakeClock
) -> AsyncGenerator[EventRecordRepository, None]:
    """Runs the requesting test once per local backend."""
    if request.param == "memory":
        yield InMemoryEventRecordRepository(clock=clock, enable_tracing=False)
        return

    async with aiosqlite.connect(":memory:") as conn:
        repo = SQLiteEventRecordRepository(conn, clock=clock, enable_tracing=False)
        await repo.initialize()
        yield repo


# =============================================================================
# Store and Bus Fixtures
# =============================================================================


@pytest.fixture
def store(
    repository: EventRecordRepository, registry: EventRegistry, clock: FakeClock
) -> EventStore:
    return EventStore(repository, registry, clock=clock, enable_tracing=False)


@pytest.fixture
def bus() -> InMemoryMessageBus:
    return InMemoryMessageBus(enable_tracing=False)


@pytest.fixture
def append(store: EventStore, repository: EventRecordRepository, tenant_id: UUID) -> AppendFn:
    """
    Append one event in its own unit of work.

    Usage:
        record_id = await append(OrderPlaced(), aggregate_id="42")
    """

    async def _append(
        event: DomainEvent,
        aggregate_id: str = "42",
        aggregate_type: str = "Order",
        tenant: UUID | None = None,
    ) -> UUID:
        async with repository.begin() as uow:
            return await store.append(
                event,
                AppendContext(
                    tenant_id=tenant or tenant_id,
                    aggregate_type=aggregate_type,
                    aggregate_id=aggregate_id,
                    unit_of_work=uow,
                ),
            )

    return _append
