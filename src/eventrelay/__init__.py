"""
eventrelay - Transactional outbox event store for Python.

This library provides:
- Domain Event base class with Pydantic models and relay classification
- Event Store that appends events inside the caller's unit of work
- Event record repositories for In-Memory, SQLite and PostgreSQL backends
- Dispatcher that relays pending records to a message bus with leases,
  per-aggregate ordering, retry backoff and dead-lettering
- Message bus publishers for In-Memory and Kafka
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("eventrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Message bus
from eventrelay.bus.interface import MessagePublisher
from eventrelay.bus.kafka import (
    KAFKA_AVAILABLE,
    KafkaMessagePublisher,
    KafkaNotAvailableError,
    KafkaPublisherConfig,
)
from eventrelay.bus.memory import InMemoryMessageBus

# Configuration
from eventrelay.config import BackoffPolicy, DispatcherConfig

# Dispatcher
from eventrelay.dispatch.dispatcher import (
    DispatchCycleResult,
    Dispatcher,
    DispatcherState,
    DispatcherStats,
    OutcomeKind,
    RecordOutcome,
)

# Events and classification
from eventrelay.events.base import DomainEvent
from eventrelay.events.registry import (
    DuplicateEventTypeError,
    EventClassification,
    EventRegistry,
    EventTypeConflictError,
    EventTypeNotFoundError,
    default_registry,
    get_event_class,
    is_relayable,
    register_event,
    relayable_event,
)
from eventrelay.exceptions import (
    EventRelayError,
    PersistenceError,
    PublishError,
    RecordNotFoundError,
    StaleClaimError,
    TerminalDispatchFailure,
    UnitOfWorkError,
)

# Records
from eventrelay.records import (
    AggregateKey,
    DispatchStats,
    DispatchStatus,
    EventRecord,
    RelayEnvelope,
)

# Repositories
from eventrelay.repositories import (
    EventRecordRepository,
    InMemoryEventRecordRepository,
    InMemoryUnitOfWork,
    PostgreSQLEventRecordRepository,
    PostgreSQLUnitOfWork,
    SQLiteEventRecordRepository,
    SQLiteUnitOfWork,
    UnitOfWork,
)

# Event store
from eventrelay.stores import AppendContext, EventStore

__all__ = [
    "__version__",
    # Exceptions
    "EventRelayError",
    "PersistenceError",
    "PublishError",
    "RecordNotFoundError",
    "StaleClaimError",
    "TerminalDispatchFailure",
    "UnitOfWorkError",
    # Events
    "DomainEvent",
    "EventRegistry",
    "EventClassification",
    "EventTypeConflictError",
    "EventTypeNotFoundError",
    "DuplicateEventTypeError",
    "default_registry",
    "get_event_class",
    "is_relayable",
    "register_event",
    "relayable_event",
    # Records
    "AggregateKey",
    "DispatchStatus",
    "DispatchStats",
    "EventRecord",
    "RelayEnvelope",
    # Configuration
    "BackoffPolicy",
    "DispatcherConfig",
    # Repositories
    "EventRecordRepository",
    "UnitOfWork",
    "InMemoryEventRecordRepository",
    "InMemoryUnitOfWork",
    "SQLiteEventRecordRepository",
    "SQLiteUnitOfWork",
    "PostgreSQLEventRecordRepository",
    "PostgreSQLUnitOfWork",
    # Event store
    "AppendContext",
    "EventStore",
    # Message bus
    "MessagePublisher",
    "InMemoryMessageBus",
    "KAFKA_AVAILABLE",
    "KafkaMessagePublisher",
    "KafkaNotAvailableError",
    "KafkaPublisherConfig",
    # Dispatcher
    "Dispatcher",
    "DispatcherState",
    "DispatcherStats",
    "DispatchCycleResult",
    "OutcomeKind",
    "RecordOutcome",
]
