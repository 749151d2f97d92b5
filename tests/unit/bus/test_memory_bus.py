"""Tests for InMemoryMessageBus."""

import asyncio
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from eventrelay.bus import InMemoryMessageBus, MessagePublisher
from eventrelay.exceptions import PublishError
from eventrelay.observability import MockTracer
from eventrelay.records import RelayEnvelope


def make_envelope(event_type: str = "OrderPlaced", aggregate_id: str = "42") -> RelayEnvelope:
    return RelayEnvelope(
        id=uuid4(),
        event_type=event_type,
        payload='{"total_cents": 1250}',
        occurred_at=datetime(2026, 1, 1, tzinfo=UTC),
        tenant_id=uuid4(),
        aggregate_type="Order",
        aggregate_id=aggregate_id,
    )


@pytest.fixture
def bus() -> InMemoryMessageBus:
    return InMemoryMessageBus(enable_tracing=False)


class TestPublish:
    def test_is_a_message_publisher(self, bus: InMemoryMessageBus):
        assert isinstance(bus, MessagePublisher)

    @pytest.mark.asyncio
    async def test_keeps_publish_order_per_topic(self, bus: InMemoryMessageBus):
        first, second, other = make_envelope(), make_envelope(), make_envelope()

        await bus.publish("orders", first)
        await bus.publish("audit", other)
        await bus.publish("orders", second)

        assert bus.messages("orders") == [first, second]
        assert bus.messages("audit") == [other]
        assert bus.published == [("orders", first), ("audit", other), ("orders", second)]
        assert bus.attempts == 3

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self, bus: InMemoryMessageBus):
        seen: list[str] = []

        def sync_handler(envelope: RelayEnvelope) -> None:
            seen.append(f"sync:{envelope.event_type}")

        async def async_handler(envelope: RelayEnvelope) -> None:
            seen.append(f"async:{envelope.event_type}")

        bus.subscribe("orders", sync_handler)
        bus.subscribe("orders", async_handler)

        await bus.publish("orders", make_envelope())
        await bus.publish("audit", make_envelope())

        assert seen == ["sync:OrderPlaced", "async:OrderPlaced"]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_fail_the_publish(self, bus: InMemoryMessageBus):
        seen: list[RelayEnvelope] = []

        async def broken_handler(envelope: RelayEnvelope) -> None:
            raise RuntimeError("projection crashed")

        bus.subscribe("orders", broken_handler)
        bus.subscribe("orders", seen.append)
        envelope = make_envelope()

        await bus.publish("orders", envelope)

        assert bus.messages("orders") == [envelope]
        assert seen == [envelope]
        assert bus.handler_errors == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: InMemoryMessageBus):
        seen: list[RelayEnvelope] = []
        bus.subscribe("orders", seen.append)

        assert bus.unsubscribe("orders", seen.append) is True
        assert bus.unsubscribe("orders", seen.append) is False
        await bus.publish("orders", make_envelope())

        assert seen == []

    @pytest.mark.asyncio
    async def test_tracing(self):
        tracer = MockTracer()
        bus = InMemoryMessageBus(tracer=tracer)
        envelope = make_envelope()

        await bus.publish("orders", envelope)

        assert tracer.span_names == ["eventrelay.bus.publish"]
        _, attributes = tracer.spans[0]
        assert attributes["messaging.system"] == "memory"
        assert attributes["messaging.destination.name"] == "orders"
        assert attributes["eventrelay.record.id"] == str(envelope.id)


class TestFailureInjection:
    @pytest.mark.asyncio
    async def test_fail_next(self, bus: InMemoryMessageBus):
        envelope = make_envelope()
        bus.fail_next(2, error="broker down")

        for _ in range(2):
            with pytest.raises(PublishError, match="broker down") as exc_info:
                await bus.publish("orders", envelope)
            assert exc_info.value.topic == "orders"
        await bus.publish("orders", envelope)

        assert bus.messages("orders") == [envelope]
        assert bus.attempts == 3

    @pytest.mark.asyncio
    async def test_fail_when(self, bus: InMemoryMessageBus):
        bus.fail_when(lambda topic, envelope: envelope.event_type == "OrderShipped")

        await bus.publish("orders", make_envelope("OrderPlaced"))
        with pytest.raises(PublishError, match="OrderShipped"):
            await bus.publish("orders", make_envelope("OrderShipped"))

        assert len(bus.messages("orders")) == 1

    @pytest.mark.asyncio
    async def test_failed_publish_skips_subscribers(self, bus: InMemoryMessageBus):
        seen: list[RelayEnvelope] = []
        bus.subscribe("orders", seen.append)
        bus.fail_next()

        with pytest.raises(PublishError):
            await bus.publish("orders", make_envelope())

        assert seen == []

    @pytest.mark.asyncio
    async def test_delay_can_be_cancelled(self, bus: InMemoryMessageBus):
        bus.set_delay(5.0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(bus.publish("orders", make_envelope()), timeout=0.05)

        assert bus.published == []

    @pytest.mark.asyncio
    async def test_reset_failures(self, bus: InMemoryMessageBus):
        bus.fail_next(5)
        bus.fail_when(lambda topic, envelope: True)
        bus.set_delay(5.0)

        bus.reset_failures()
        await asyncio.wait_for(bus.publish("orders", make_envelope()), timeout=1.0)

        assert len(bus.published) == 1

    @pytest.mark.asyncio
    async def test_clear_keeps_subscribers(self, bus: InMemoryMessageBus):
        seen: list[RelayEnvelope] = []
        bus.subscribe("orders", seen.append)
        await bus.publish("orders", make_envelope())
        bus.fail_next()

        bus.clear()
        await bus.publish("orders", make_envelope())

        assert len(bus.published) == 1
        assert bus.attempts == 1
        assert len(seen) == 2
