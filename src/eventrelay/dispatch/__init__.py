"""
Dispatcher that relays pending event records to a message bus.
"""

from eventrelay.dispatch.dispatcher import (
    DispatchCycleResult,
    Dispatcher,
    DispatcherState,
    DispatcherStats,
    OutcomeKind,
    RecordOutcome,
    TopicResolver,
    default_worker_id,
)

__all__ = [
    "DispatchCycleResult",
    "Dispatcher",
    "DispatcherState",
    "DispatcherStats",
    "OutcomeKind",
    "RecordOutcome",
    "TopicResolver",
    "default_worker_id",
]
