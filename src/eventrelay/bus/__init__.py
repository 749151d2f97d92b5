"""
Message bus clients used by the dispatcher.

- MessagePublisher: abstract publisher interface
- InMemoryMessageBus: in-process bus with failure injection, for tests
- KafkaMessagePublisher: Kafka via aiokafka (``eventrelay[kafka]``)
"""

from eventrelay.bus.interface import MessagePublisher
from eventrelay.bus.kafka import (
    KAFKA_AVAILABLE,
    KafkaMessagePublisher,
    KafkaNotAvailableError,
    KafkaPublisherConfig,
)
from eventrelay.bus.memory import EnvelopeHandler, InMemoryMessageBus

__all__ = [
    "MessagePublisher",
    "InMemoryMessageBus",
    "EnvelopeHandler",
    "KAFKA_AVAILABLE",
    "KafkaMessagePublisher",
    "KafkaNotAvailableError",
    "KafkaPublisherConfig",
]
