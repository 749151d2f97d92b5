"""
Observability utilities for eventrelay.

Provides the composition-based tracer and the standard span attribute
names used by the event store, the repositories and the dispatcher.

Example:
    >>> from eventrelay.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...
    ...     async def work(self) -> None:
    ...         with self._tracer.span("my_component.work"):
    ...             ...
"""

from eventrelay.observability.attributes import (
    ATTR_ACTOR_ID,
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_ATTEMPT_COUNT,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DISPATCH_STATUS,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_TYPE,
    ATTR_LEASE_DURATION,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RECORD_ID,
    ATTR_RELAYABLE,
    ATTR_SEQUENCE,
    ATTR_TENANT_ID,
    ATTR_WORKER_ID,
)
from eventrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes - Aggregate
    "ATTR_AGGREGATE_ID",
    "ATTR_AGGREGATE_TYPE",
    "ATTR_SEQUENCE",
    # Attributes - Record
    "ATTR_RECORD_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_EVENT_COUNT",
    "ATTR_RELAYABLE",
    "ATTR_DISPATCH_STATUS",
    "ATTR_ATTEMPT_COUNT",
    # Attributes - Tenant/Actor
    "ATTR_TENANT_ID",
    "ATTR_ACTOR_ID",
    # Attributes - Dispatcher
    "ATTR_WORKER_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_LEASE_DURATION",
    "ATTR_ERROR_TYPE",
    # Attributes - Semantic conventions
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
]
