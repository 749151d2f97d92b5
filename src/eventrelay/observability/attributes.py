"""
Standard span attributes for eventrelay.

Attribute constants shared by the store, repositories and dispatcher so
spans from every component can be filtered the same way. Messaging and
database attributes follow OpenTelemetry semantic conventions.
"""

# =============================================================================
# Aggregate Attributes
# =============================================================================

ATTR_AGGREGATE_ID = "eventrelay.aggregate.id"
"""Identifier of the aggregate instance (string)."""

ATTR_AGGREGATE_TYPE = "eventrelay.aggregate.type"
"""Type name of the aggregate (e.g., 'Order')."""

ATTR_SEQUENCE = "eventrelay.aggregate.sequence"
"""Per-aggregate sequence number of an event record (integer)."""

# =============================================================================
# Event Record Attributes
# =============================================================================

ATTR_RECORD_ID = "eventrelay.record.id"
"""Unique identifier of the event record (UUID string)."""

ATTR_EVENT_TYPE = "eventrelay.event.type"
"""Type name of the event (e.g., 'OrderPlaced')."""

ATTR_EVENT_COUNT = "eventrelay.event.count"
"""Number of event records in an operation (integer)."""

ATTR_RELAYABLE = "eventrelay.event.relayable"
"""Whether the event is relayed to the message bus (boolean)."""

ATTR_DISPATCH_STATUS = "eventrelay.dispatch.status"
"""Dispatch status after the operation (string)."""

ATTR_ATTEMPT_COUNT = "eventrelay.dispatch.attempt_count"
"""Publish attempts made so far (integer)."""

# =============================================================================
# Tenant and Actor Attributes
# =============================================================================

ATTR_TENANT_ID = "eventrelay.tenant.id"
"""Owning tenant identifier (UUID string)."""

ATTR_ACTOR_ID = "eventrelay.actor.id"
"""User or process that caused the event (string)."""

# =============================================================================
# Dispatcher Attributes
# =============================================================================

ATTR_WORKER_ID = "eventrelay.worker.id"
"""Lease holder identifier of a dispatcher instance (string)."""

ATTR_BATCH_SIZE = "eventrelay.batch.size"
"""Requested claim batch size (integer)."""

ATTR_LEASE_DURATION = "eventrelay.lease.duration_seconds"
"""Claim lease duration in seconds (float)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name of a failure (string)."""

# =============================================================================
# OpenTelemetry Semantic Conventions
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier ('postgresql', 'sqlite', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'INSERT', 'UPDATE')."""

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier ('kafka', 'memory')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Topic the message is published to (string)."""


__all__ = [
    "ATTR_AGGREGATE_ID",
    "ATTR_AGGREGATE_TYPE",
    "ATTR_SEQUENCE",
    "ATTR_RECORD_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_EVENT_COUNT",
    "ATTR_RELAYABLE",
    "ATTR_DISPATCH_STATUS",
    "ATTR_ATTEMPT_COUNT",
    "ATTR_TENANT_ID",
    "ATTR_ACTOR_ID",
    "ATTR_WORKER_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_LEASE_DURATION",
    "ATTR_ERROR_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
]
