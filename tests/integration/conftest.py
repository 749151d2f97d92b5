"""
Shared pytest fixtures for integration tests.

PostgreSQL comes from EVENTRELAY_TEST_POSTGRES_URL when it is set, otherwise
from a testcontainers-managed container. Without either, the tests are
skipped.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from eventrelay.migrations import get_schema, split_statements
from eventrelay.repositories.postgresql import PostgreSQLEventRecordRepository
from tests.fixtures import FakeClock

# ============================================================================
# Infrastructure Detection
# ============================================================================

POSTGRES_URL = os.environ.get("EVENTRELAY_TEST_POSTGRES_URL")

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(["docker", "info"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


POSTGRES_AVAILABLE = bool(POSTGRES_URL) or (TESTCONTAINERS_AVAILABLE and is_docker_available())

skip_if_no_postgres = pytest.mark.skipif(
    not POSTGRES_AVAILABLE,
    reason="PostgreSQL not available (set EVENTRELAY_TEST_POSTGRES_URL or install testcontainers)",
)


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_connection_url() -> Generator[str, None, None]:
    """asyncpg connection URL, from the environment or a session-wide container."""
    if POSTGRES_URL:
        yield POSTGRES_URL
        return
    if not POSTGRES_AVAILABLE:
        pytest.skip("PostgreSQL test infrastructure not available")

    container: Any = PostgresContainer("postgres:16")
    container.start()
    try:
        # testcontainers returns a psycopg2 URL
        url = container.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql+asyncpg://").replace(
            "postgresql://", "postgresql+asyncpg://"
        )
    finally:
        container.stop()


@pytest_asyncio.fixture
async def postgres_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine with the schema applied and event tables emptied."""
    engine = create_async_engine(postgres_connection_url, pool_size=5, max_overflow=10)

    async with engine.begin() as conn:
        # One statement per execute for asyncpg
        for statement in split_statements(get_schema("postgresql")):
            await conn.execute(text(statement))
        await conn.execute(text("TRUNCATE TABLE event_records, event_record_sequences"))

    yield engine

    await engine.dispose()


@pytest.fixture
def postgres_repository(
    postgres_engine: AsyncEngine, clock: FakeClock
) -> PostgreSQLEventRecordRepository:
    return PostgreSQLEventRecordRepository(postgres_engine, clock=clock, enable_tracing=False)
