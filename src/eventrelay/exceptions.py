"""Library exceptions for the eventrelay package."""

from uuid import UUID


class EventRelayError(Exception):
    """Base exception for eventrelay library."""

    pass


class PersistenceError(EventRelayError):
    """
    Raised when writing an event record fails.

    The enclosing unit of work must be rolled back: the business state
    change and its events are committed together or not at all.

    Attributes:
        event_type: Type of the event that could not be written (if known)
        aggregate_id: Aggregate the event belonged to (if known)
    """

    def __init__(
        self,
        message: str,
        event_type: str | None = None,
        aggregate_id: str | None = None,
    ) -> None:
        self.event_type = event_type
        self.aggregate_id = aggregate_id
        super().__init__(message)


class PublishError(EventRelayError):
    """
    Raised by a message publisher when a message could not be delivered.

    Attributes:
        topic: Destination topic
        retryable: Whether the failure is transient (the default)
    """

    def __init__(self, message: str, topic: str | None = None, retryable: bool = True) -> None:
        self.topic = topic
        self.retryable = retryable
        super().__init__(message)


class TerminalDispatchFailure(EventRelayError):
    """
    Describes an event record that exhausted its publish attempts.

    The record stays in the ``failed`` state until an operator requeues it.
    """

    def __init__(self, record_id: UUID, attempts: int, last_error: str | None) -> None:
        self.record_id = record_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Event record {record_id} failed permanently after {attempts} attempt(s): "
            f"{last_error}"
        )


class RecordNotFoundError(EventRelayError):
    """Raised when an event record cannot be found."""

    def __init__(self, record_id: UUID) -> None:
        self.record_id = record_id
        super().__init__(f"Event record not found: {record_id}")


class UnitOfWorkError(EventRelayError):
    """Raised when a unit of work is used after completion or with the wrong repository."""

    pass


class StaleClaimError(EventRelayError):
    """
    Raised when a worker completes a record it no longer holds.

    The worker's lease expired and the record was reclaimed, released or
    finished by someone else in the meantime. Nothing was written.
    """

    def __init__(
        self, record_id: UUID, worker_id: str, status: str, claimed_by: str | None
    ) -> None:
        self.record_id = record_id
        self.worker_id = worker_id
        self.status = status
        self.claimed_by = claimed_by
        holder = f" by {claimed_by}" if claimed_by else ""
        super().__init__(
            f"Event record {record_id} is no longer claimed by {worker_id} "
            f"(now {status}{holder})"
        )
