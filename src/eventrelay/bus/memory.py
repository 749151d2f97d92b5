"""In-memory message bus.

Records every published envelope and hands it to in-process subscribers.
Failures and latency can be injected, which makes it the bus of choice for
tests and local demos of retry and dead-lettering behavior.
"""

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from collections.abc import Awaitable, Callable

from eventrelay.bus.interface import MessagePublisher
from eventrelay.exceptions import PublishError
from eventrelay.observability import SpanKindEnum, Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_AGGREGATE_ID,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RECORD_ID,
)
from eventrelay.records import RelayEnvelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[RelayEnvelope], Awaitable[None] | None]
FailurePredicate = Callable[[str, RelayEnvelope], bool]


class InMemoryMessageBus(MessagePublisher):
    """
    In-memory message bus for tests and single-process use.

    Features:
    - Published envelopes kept per topic, in publish order
    - Sync and async subscribers per topic
    - Failure injection: fail the next N publishes or any matching publish
    - Optional artificial latency to exercise publish timeouts

    Example:
        >>> bus = InMemoryMessageBus()
        >>> bus.fail_next(1)
        >>> await bus.publish("orders", envelope)  # raises PublishError
        >>> await bus.publish("orders", envelope)  # accepted
        >>> bus.messages("orders")
        [RelayEnvelope(...)]

    Thread Safety:
        - Subscription and failure-injection methods are thread-safe
        - Publishing should only be called from async context
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._published: list[tuple[str, RelayEnvelope]] = []
        self._subscribers: dict[str, list[EnvelopeHandler]] = defaultdict(list)
        self._lock = threading.RLock()
        self._fail_remaining = 0
        self._fail_error: str = "injected publish failure"
        self._fail_predicates: list[FailurePredicate] = []
        self._delay = 0.0
        self._attempts = 0
        self._handler_errors = 0
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def publish(self, topic: str, envelope: RelayEnvelope) -> None:
        with self._tracer.span_with_kind(
            "eventrelay.bus.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_MESSAGING_SYSTEM: "memory",
                ATTR_MESSAGING_DESTINATION: topic,
                ATTR_RECORD_ID: str(envelope.id),
                ATTR_EVENT_TYPE: envelope.event_type,
                ATTR_AGGREGATE_ID: envelope.aggregate_id,
            },
        ):
            with self._lock:
                self._attempts += 1
                delay = self._delay
                error = self._injected_failure(topic, envelope)

            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise PublishError(error, topic=topic)

            with self._lock:
                self._published.append((topic, envelope))
                handlers = list(self._subscribers.get(topic, ()))

            logger.debug(
                "Published %s (%s) to %s",
                envelope.id,
                envelope.event_type,
                topic,
                extra={"record_id": str(envelope.id), "topic": topic},
            )

            for handler in handlers:
                await self._safe_handle(handler, topic, envelope)

    async def _safe_handle(
        self, handler: EnvelopeHandler, topic: str, envelope: RelayEnvelope
    ) -> None:
        # The envelope is already accepted; a subscriber error is not a publish failure
        try:
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            with self._lock:
                self._handler_errors += 1
            logger.error(
                "Subscriber %s failed handling %s on %s: %s",
                getattr(handler, "__qualname__", repr(handler)),
                envelope.id,
                topic,
                e,
                exc_info=True,
                extra={"record_id": str(envelope.id), "topic": topic},
            )

    def _injected_failure(self, topic: str, envelope: RelayEnvelope) -> str | None:
        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            return self._fail_error
        for predicate in self._fail_predicates:
            if predicate(topic, envelope):
                return f"injected publish failure for {envelope.event_type}"
        return None

    def subscribe(self, topic: str, handler: EnvelopeHandler) -> None:
        """Call ``handler`` with every envelope accepted on ``topic``."""
        with self._lock:
            self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: EnvelopeHandler) -> bool:
        with self._lock:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def fail_next(self, count: int = 1, error: str = "injected publish failure") -> None:
        """Make the next ``count`` publishes raise PublishError."""
        with self._lock:
            self._fail_remaining = count
            self._fail_error = error

    def fail_when(self, predicate: FailurePredicate) -> None:
        """Make every publish matching ``predicate(topic, envelope)`` raise PublishError."""
        with self._lock:
            self._fail_predicates.append(predicate)

    def set_delay(self, seconds: float) -> None:
        """Sleep this long in every publish."""
        with self._lock:
            self._delay = seconds

    def reset_failures(self) -> None:
        """Remove all injected failures and latency."""
        with self._lock:
            self._fail_remaining = 0
            self._fail_predicates.clear()
            self._delay = 0.0

    @property
    def published(self) -> list[tuple[str, RelayEnvelope]]:
        """All accepted (topic, envelope) pairs in publish order."""
        with self._lock:
            return list(self._published)

    @property
    def attempts(self) -> int:
        """Number of publish calls, including failed ones."""
        return self._attempts

    @property
    def handler_errors(self) -> int:
        """Number of subscriber calls that raised."""
        return self._handler_errors

    def messages(self, topic: str) -> list[RelayEnvelope]:
        """Envelopes accepted on one topic, in publish order."""
        with self._lock:
            return [envelope for t, envelope in self._published if t == topic]

    def clear(self) -> None:
        """Forget published envelopes and injected failures. Subscribers are kept."""
        with self._lock:
            self._published.clear()
            self._attempts = 0
            self._handler_errors = 0
        self.reset_failures()
