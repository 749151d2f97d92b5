"""Unit tests for the exception hierarchy."""

from uuid import uuid4

from eventrelay.exceptions import (
    EventRelayError,
    PersistenceError,
    PublishError,
    RecordNotFoundError,
    TerminalDispatchFailure,
    UnitOfWorkError,
)


class TestExceptions:
    def test_all_derive_from_base(self):
        for exc_type in (
            PersistenceError,
            PublishError,
            RecordNotFoundError,
            TerminalDispatchFailure,
            UnitOfWorkError,
        ):
            assert issubclass(exc_type, EventRelayError)

    def test_persistence_error_context(self):
        error = PersistenceError("boom", event_type="OrderPlaced", aggregate_id="42")

        assert error.event_type == "OrderPlaced"
        assert error.aggregate_id == "42"
        assert str(error) == "boom"

    def test_publish_error_defaults_to_retryable(self):
        error = PublishError("broker down", topic="orders")

        assert error.retryable is True
        assert error.topic == "orders"

    def test_terminal_failure_message(self):
        record_id = uuid4()

        error = TerminalDispatchFailure(record_id, 5, "timeout")

        assert error.record_id == record_id
        assert error.attempts == 5
        assert str(record_id) in str(error)
        assert "5 attempt(s)" in str(error)
        assert "timeout" in str(error)

    def test_record_not_found_message(self):
        record_id = uuid4()

        assert str(record_id) in str(RecordNotFoundError(record_id))
