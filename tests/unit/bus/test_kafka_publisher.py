"""
Tests for KafkaMessagePublisher.

The producer is injected as a mock, so these tests run without a broker.
Tests that need aiokafka's own error types are skipped when it is missing.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from eventrelay.bus import kafka as kafka_module
from eventrelay.bus.kafka import (
    KafkaMessagePublisher,
    KafkaNotAvailableError,
    KafkaPublisherConfig,
)
from eventrelay.exceptions import PublishError
from eventrelay.observability import MockTracer
from eventrelay.records import RelayEnvelope


@pytest.fixture
def envelope() -> RelayEnvelope:
    return RelayEnvelope(
        id=uuid4(),
        event_type="OrderPlaced",
        payload='{"total_cents": 1250}',
        occurred_at=datetime(2026, 1, 1, tzinfo=UTC),
        tenant_id=uuid4(),
        aggregate_type="Order",
        aggregate_id="42",
    )


@pytest.fixture
def producer() -> AsyncMock:
    producer = AsyncMock()
    producer.send_and_wait.return_value = MagicMock(topic="orders", partition=3, offset=117)
    return producer


@pytest.fixture
def publisher(producer: AsyncMock) -> KafkaMessagePublisher:
    return KafkaMessagePublisher(producer=producer, enable_tracing=False)


class TestKafkaPublisherConfig:
    def test_defaults(self):
        config = KafkaPublisherConfig()

        assert config.bootstrap_servers == "localhost:9092"
        assert config.acks == "all"
        assert config.enable_idempotence is True

    def test_invalid_security_protocol(self):
        with pytest.raises(ValueError, match="Invalid security_protocol"):
            KafkaPublisherConfig(security_protocol="TLS")

    def test_sasl_requires_mechanism(self):
        with pytest.raises(ValueError, match="sasl_mechanism required"):
            KafkaPublisherConfig(security_protocol="SASL_SSL")

    def test_sasl_requires_credentials(self):
        with pytest.raises(ValueError, match="sasl_username and sasl_password"):
            KafkaPublisherConfig(security_protocol="SASL_SSL", sasl_mechanism="PLAIN")

    def test_producer_config_maps_sasl_settings(self):
        config = KafkaPublisherConfig(
            security_protocol="SASL_SSL",
            sasl_mechanism="SCRAM-SHA-256",
            sasl_username="relay",
            sasl_password="s3cret",
        )

        producer_config = config.get_producer_config()

        assert producer_config["sasl_mechanism"] == "SCRAM-SHA-256"
        assert producer_config["sasl_plain_username"] == "relay"
        assert producer_config["sasl_plain_password"] == "s3cret"

    def test_sanitized_config_masks_password(self):
        config = KafkaPublisherConfig(
            security_protocol="SASL_PLAINTEXT",
            sasl_mechanism="PLAIN",
            sasl_username="relay",
            sasl_password="s3cret",
        )

        sanitized = config.get_sanitized_config()

        assert sanitized["sasl_plain_password"] == "***"
        assert config.get_producer_config()["sasl_plain_password"] == "s3cret"

    def test_plaintext_has_no_sasl_keys(self):
        assert "sasl_mechanism" not in KafkaPublisherConfig().get_producer_config()


class TestConstruction:
    def test_missing_aiokafka_raises(self):
        with patch.object(kafka_module, "KAFKA_AVAILABLE", False):
            with pytest.raises(KafkaNotAvailableError, match=r"eventrelay\[kafka\]"):
                KafkaMessagePublisher()

    def test_injected_producer_needs_no_aiokafka(self, producer: AsyncMock):
        with patch.object(kafka_module, "KAFKA_AVAILABLE", False):
            publisher = KafkaMessagePublisher(producer=producer, enable_tracing=False)

        assert publisher.is_connected is True

    @pytest.mark.asyncio
    async def test_injected_producer_is_not_stopped(
        self, publisher: KafkaMessagePublisher, producer: AsyncMock
    ):
        await publisher.close()

        producer.stop.assert_not_awaited()
        assert publisher.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_creates_and_starts_producer(self):
        created = AsyncMock()
        factory = MagicMock(return_value=created)
        config = KafkaPublisherConfig(bootstrap_servers="kafka:9092", client_id="relay-1")

        with (
            patch.object(kafka_module, "KAFKA_AVAILABLE", True),
            patch.object(kafka_module, "AIOKafkaProducer", factory),
        ):
            publisher = KafkaMessagePublisher(config, enable_tracing=False)
            async with publisher:
                assert publisher.is_connected is True
                await publisher.connect()

        factory.assert_called_once()
        assert factory.call_args.kwargs["bootstrap_servers"] == "kafka:9092"
        assert factory.call_args.kwargs["client_id"] == "relay-1"
        created.start.assert_awaited_once()
        created.stop.assert_awaited_once()
        assert publisher.is_connected is False

    @pytest.mark.asyncio
    async def test_failed_start_leaves_publisher_disconnected(self):
        created = AsyncMock()
        created.start.side_effect = ConnectionRefusedError("no brokers")

        with (
            patch.object(kafka_module, "KAFKA_AVAILABLE", True),
            patch.object(kafka_module, "AIOKafkaProducer", MagicMock(return_value=created)),
        ):
            publisher = KafkaMessagePublisher(enable_tracing=False)
            with pytest.raises(ConnectionRefusedError):
                await publisher.connect()

        assert publisher.is_connected is False


class TestPublish:
    @pytest.mark.asyncio
    async def test_sends_json_keyed_by_aggregate(
        self, publisher: KafkaMessagePublisher, producer: AsyncMock, envelope: RelayEnvelope
    ):
        await publisher.publish("orders", envelope)

        call = producer.send_and_wait.call_args
        assert call.args == ("orders",)
        assert RelayEnvelope.from_json(call.kwargs["value"]) == envelope
        assert call.kwargs["key"] == f"{envelope.tenant_id}:Order:42".encode()

    @pytest.mark.asyncio
    async def test_headers_carry_metadata(
        self, publisher: KafkaMessagePublisher, producer: AsyncMock, envelope: RelayEnvelope
    ):
        await publisher.publish("orders", envelope)

        headers = dict(producer.send_and_wait.call_args.kwargs["headers"])
        assert headers["event_id"] == str(envelope.id).encode()
        assert headers["event_type"] == b"OrderPlaced"
        assert headers["tenant_id"] == str(envelope.tenant_id).encode()
        assert headers["aggregate_type"] == b"Order"
        assert headers["aggregate_id"] == b"42"

    @pytest.mark.asyncio
    async def test_not_connected_raises(self, envelope: RelayEnvelope):
        with patch.object(kafka_module, "KAFKA_AVAILABLE", True):
            publisher = KafkaMessagePublisher(enable_tracing=False)

        with pytest.raises(PublishError, match="not connected") as exc_info:
            await publisher.publish("orders", envelope)

        assert exc_info.value.topic == "orders"

    @pytest.mark.asyncio
    async def test_kafka_error_becomes_publish_error(
        self, publisher: KafkaMessagePublisher, producer: AsyncMock, envelope: RelayEnvelope
    ):
        errors = pytest.importorskip("aiokafka.errors")
        error = errors.KafkaTimeoutError()
        producer.send_and_wait.side_effect = error

        with pytest.raises(PublishError) as exc_info:
            await publisher.publish("orders", envelope)

        assert exc_info.value.topic == "orders"
        assert exc_info.value.retryable == getattr(error, "retriable", True)
        assert isinstance(exc_info.value.__cause__, errors.KafkaTimeoutError)

    @pytest.mark.asyncio
    async def test_publish_span(self, producer: AsyncMock, envelope: RelayEnvelope):
        tracer = MockTracer()
        publisher = KafkaMessagePublisher(producer=producer, tracer=tracer)

        await publisher.publish("orders", envelope)

        assert tracer.span_names == ["eventrelay.bus.publish"]
        _, attributes = tracer.spans[0]
        assert attributes["messaging.system"] == "kafka"
        assert attributes["messaging.destination.name"] == "orders"
