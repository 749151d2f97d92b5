"""
Event record repositories for the eventrelay library.

The repository is the only component that changes the dispatch state of an
event record. Each backend provides:

- A unit of work the event store appends through
- Sequence allocation serialized per aggregate
- An atomic, ordering-preserving claim for dispatchers
- Completion, failure, release and requeue transitions
- Read-side queries for audit trails and monitoring

Backends:
    - InMemoryEventRecordRepository: tests and single-process use
    - SQLiteEventRecordRepository: lightweight deployments (aiosqlite)
    - PostgreSQLEventRecordRepository: production (SQLAlchemy async)
"""

from eventrelay.repositories.in_memory import (
    InMemoryEventRecordRepository,
    InMemoryUnitOfWork,
)
from eventrelay.repositories.interface import EventRecordRepository, UnitOfWork
from eventrelay.repositories.postgresql import (
    PostgreSQLEventRecordRepository,
    PostgreSQLUnitOfWork,
)
from eventrelay.repositories.sqlite import SQLiteEventRecordRepository, SQLiteUnitOfWork

__all__ = [
    # Protocols
    "EventRecordRepository",
    "UnitOfWork",
    # In-memory
    "InMemoryEventRecordRepository",
    "InMemoryUnitOfWork",
    # SQLite
    "SQLiteEventRecordRepository",
    "SQLiteUnitOfWork",
    # PostgreSQL
    "PostgreSQLEventRecordRepository",
    "PostgreSQLUnitOfWork",
]
