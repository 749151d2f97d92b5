"""Kafka message publisher using aiokafka.

Envelopes are keyed by aggregate, so every event of one aggregate lands on
the same partition and consumers see them in sequence order. Metadata is
also carried in message headers, which lets consumers route and filter
without decoding the body.

Example:
    >>> config = KafkaPublisherConfig(bootstrap_servers="localhost:9092")
    >>> async with KafkaMessagePublisher(config) as publisher:
    ...     dispatcher = Dispatcher(repository, publisher)
    ...     await dispatcher.run()

Requires the ``kafka`` extra: ``pip install eventrelay[kafka]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry.propagate import inject

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

# Optional aiokafka import - fail gracefully if not installed
try:
    from aiokafka import AIOKafkaProducer
    from aiokafka.errors import KafkaError

    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    AIOKafkaProducer = None
    KafkaError = Exception

logger = logging.getLogger(__name__)


class KafkaNotAvailableError(ImportError):
    """Raised when aiokafka package is not installed."""

    def __init__(self) -> None:
        super().__init__(
            "aiokafka package is not installed. Install it with: pip install eventrelay[kafka]"
        )


_SECURITY_PROTOCOLS = frozenset({"PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"})


@dataclass(frozen=True)
class KafkaPublisherConfig:
    """
    Configuration for KafkaMessagePublisher.

    Attributes:
        bootstrap_servers: Kafka broker addresses (comma-separated)
        client_id: Client identifier reported to the brokers
        acks: Acknowledgement level; "all" waits for every in-sync replica
        enable_idempotence: Let the broker drop producer retries it already has
        compression_type: Message compression (None, "gzip", "snappy", "lz4", "zstd")
        linger_ms: Time the producer waits to fill a batch
        request_timeout_ms: Broker request timeout
        security_protocol: PLAINTEXT, SSL, SASL_PLAINTEXT or SASL_SSL
        sasl_mechanism: PLAIN, SCRAM-SHA-256 or SCRAM-SHA-512
        sasl_username: SASL username
        sasl_password: SASL password
    """

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "eventrelay"
    acks: str | int = "all"
    enable_idempotence: bool = True
    compression_type: str | None = None
    linger_ms: int = 0
    request_timeout_ms: int = 30000
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None

    def __post_init__(self) -> None:
        protocol = self.security_protocol
        if protocol not in _SECURITY_PROTOCOLS:
            raise ValueError(
                f"Invalid security_protocol {protocol!r}, "
                f"expected one of {sorted(_SECURITY_PROTOCOLS)}"
            )
        if not protocol.startswith("SASL_"):
            return
        if not self.sasl_mechanism:
            raise ValueError(f"sasl_mechanism required when security_protocol is {protocol}")
        if not (self.sasl_username and self.sasl_password):
            raise ValueError(f"sasl_username and sasl_password must both be set for {protocol}")

    def get_producer_config(self) -> dict[str, Any]:
        """Keyword arguments for AIOKafkaProducer."""
        config = {
            field: getattr(self, field)
            for field in (
                "bootstrap_servers",
                "client_id",
                "acks",
                "enable_idempotence",
                "compression_type",
                "linger_ms",
                "request_timeout_ms",
                "security_protocol",
            )
        }
        if self.sasl_mechanism:
            config.update(
                sasl_mechanism=self.sasl_mechanism,
                sasl_plain_username=self.sasl_username,
                sasl_plain_password=self.sasl_password,
            )
        return config

    def get_sanitized_config(self) -> dict[str, Any]:
        """Producer configuration safe to log."""
        config = self.get_producer_config()
        if "sasl_plain_password" in config:
            config["sasl_plain_password"] = "***"
        return config


class KafkaMessagePublisher(MessagePublisher):
    """
    Publishes relay envelopes to Kafka.

    Each publish waits for the broker acknowledgement (``send_and_wait``), so
    a record is only marked dispatched once Kafka has it. Broker errors are
    raised as PublishError.
    """

    def __init__(
        self,
        config: KafkaPublisherConfig | None = None,
        *,
        producer: Any | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the publisher.

        Args:
            config: Connection and producer settings
            producer: Pre-built producer (used instead of creating one on connect)
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)

        Raises:
            KafkaNotAvailableError: If aiokafka is not installed and no producer is given
        """
        if producer is None and not KAFKA_AVAILABLE:
            raise KafkaNotAvailableError()

        self._config = config or KafkaPublisherConfig()
        self._producer = producer
        self._owns_producer = producer is None
        self._started = producer is not None
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def is_connected(self) -> bool:
        return self._started

    async def connect(self) -> None:
        """Create and start the producer. Safe to call more than once."""
        if self._started:
            return

        logger.info("Connecting to Kafka", extra=self._config.get_sanitized_config())
        self._producer = AIOKafkaProducer(**self._config.get_producer_config())
        try:
            await self._producer.start()
        except Exception:
            logger.error("Failed to connect to Kafka", exc_info=True)
            self._producer = None
            raise
        self._started = True
        logger.info(
            "Connected to Kafka",
            extra={"bootstrap_servers": self._config.bootstrap_servers},
        )

    async def close(self) -> None:
        """Flush and stop the producer if this publisher created it."""
        if not self._started:
            return
        if self._owns_producer and self._producer is not None:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning("Error stopping producer: %s", e)
            self._producer = None
        self._started = False
        logger.info("Disconnected from Kafka")

    async def publish(self, topic: str, envelope: RelayEnvelope) -> None:
        if not self._started or self._producer is None:
            raise PublishError("Kafka producer not connected", topic=topic)

        with self._tracer.span_with_kind(
            "eventrelay.bus.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_MESSAGING_SYSTEM: "kafka",
                ATTR_MESSAGING_DESTINATION: topic,
                ATTR_RECORD_ID: str(envelope.id),
                ATTR_EVENT_TYPE: envelope.event_type,
                ATTR_AGGREGATE_ID: envelope.aggregate_id,
            },
        ) as span:
            headers = self._create_headers(envelope)
            try:
                metadata = await self._producer.send_and_wait(
                    topic,
                    value=envelope.to_json().encode("utf-8"),
                    key=self._message_key(envelope),
                    headers=headers,
                )
            except KafkaError as e:
                raise PublishError(
                    f"Kafka rejected {envelope.id}: {e}",
                    topic=topic,
                    retryable=getattr(e, "retriable", True),
                ) from e

            if span:
                span.set_attribute("messaging.kafka.partition", metadata.partition)
                span.set_attribute("messaging.kafka.offset", metadata.offset)

            logger.debug(
                "Published %s to %s",
                envelope.id,
                topic,
                extra={
                    "record_id": str(envelope.id),
                    "topic": metadata.topic,
                    "partition": metadata.partition,
                    "offset": metadata.offset,
                },
            )

    @staticmethod
    def _message_key(envelope: RelayEnvelope) -> bytes:
        """Partition key: one aggregate always maps to one partition."""
        return (
            f"{envelope.tenant_id}:{envelope.aggregate_type}:{envelope.aggregate_id}"
        ).encode("utf-8")

    @staticmethod
    def _create_headers(envelope: RelayEnvelope) -> list[tuple[str, bytes]]:
        headers: list[tuple[str, bytes]] = [
            ("event_id", str(envelope.id).encode("utf-8")),
            ("event_type", envelope.event_type.encode("utf-8")),
            ("tenant_id", str(envelope.tenant_id).encode("utf-8")),
            ("aggregate_type", envelope.aggregate_type.encode("utf-8")),
            ("aggregate_id", envelope.aggregate_id.encode("utf-8")),
        ]

        # Trace context for consumers
        carrier: dict[str, str] = {}
        inject(carrier)
        headers.extend((key, value.encode("utf-8")) for key, value in carrier.items())
        return headers


__all__ = [
    "KAFKA_AVAILABLE",
    "KafkaMessagePublisher",
    "KafkaNotAvailableError",
    "KafkaPublisherConfig",
]
