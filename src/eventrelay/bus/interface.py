"""Message bus interface used by the dispatcher.

The dispatcher is the only component that talks to the message bus. It hands
each relay envelope to a MessagePublisher; delivery downstream is
at-least-once, so consumers deduplicate on the envelope id.
"""

from abc import ABC, abstractmethod
from types import TracebackType
from typing import Self

from eventrelay.records import RelayEnvelope


class MessagePublisher(ABC):
    """
    Abstract client for publishing relay envelopes to a message bus.

    Implementations raise PublishError for failures the dispatcher should
    retry. Any other exception is treated the same way: the record is marked
    failed and retried after backoff until its attempts run out.

    Tracing Support:
        Implementations SHOULD use the composition-based ``Tracer`` from
        ``eventrelay.observability``:

        1. ``self._tracer = tracer or create_tracer(__name__, enable_tracing)``
        2. Span name ``eventrelay.bus.publish`` with ``ATTR_MESSAGING_SYSTEM``
           and ``ATTR_MESSAGING_DESTINATION``

    Example:
        >>> publisher = InMemoryMessageBus()
        >>> await publisher.publish("domain-events", record.to_envelope())
    """

    @abstractmethod
    async def publish(self, topic: str, envelope: RelayEnvelope) -> None:
        """
        Publish one envelope and wait until the bus has accepted it.

        Args:
            topic: Destination topic
            envelope: The message to publish

        Raises:
            PublishError: If the bus did not accept the message
        """
        pass

    async def connect(self) -> None:  # noqa: B027
        """Open connections to the bus. Default: nothing to do."""

    async def close(self) -> None:  # noqa: B027
        """Close connections to the bus. Default: nothing to do."""

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
