"""
Tracers injected into the store, repositories, dispatcher and buses.

Every component takes an optional ``tracer`` argument and otherwise builds
one with ``create_tracer(__name__, enable_tracing)``. Tests pass a
``MockTracer`` and assert on the recorded span names.

Example:
    >>> from eventrelay.observability import create_tracer, NullTracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>>
    >>> class MyRepository:
    ...     def __init__(self, tracer: Tracer | None = None):
    ...         self._tracer = tracer or NullTracer()
    ...
    ...     async def save(self, item_id: str) -> None:
    ...         with self._tracer.span("my_repository.save", {"item.id": item_id}):
    ...             await self._do_save(item_id)
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

Attributes = dict[str, Any]


class SpanKindEnum(Enum):
    """
    Role of a span. Publish spans are PRODUCER, everything else INTERNAL.
    """

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"
    CLIENT = "client"
    SERVER = "server"


_OTEL_SPAN_KINDS = {kind: getattr(trace.SpanKind, kind.name) for kind in SpanKindEnum}


@runtime_checkable
class Tracer(Protocol):
    """
    What components need from a tracer.

    ``NullTracer`` does nothing, ``OpenTelemetryTracer`` forwards to the
    configured TracerProvider and ``MockTracer`` records spans in memory.
    """

    def span(
        self,
        name: str,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open an INTERNAL span around a block.

        Args:
            name: Span name, ``eventrelay.<component>.<operation>``
            attributes: Initial span attributes

        Returns:
            Context manager yielding the span, or None when nothing is recorded
        """
        ...

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """Same as span(), with the span kind given explicitly."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans are actually produced."""
        ...


class NullTracer:
    """Tracer used when tracing is switched off. Yields None for every span."""

    def span(self, name: str, attributes: Attributes | None = None) -> AbstractContextManager[None]:
        return contextlib.nullcontext()

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[None]:
        return contextlib.nullcontext()

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Forwards spans to ``opentelemetry.trace``.

    Without a configured TracerProvider the API returns non-recording
    spans, so this is safe to use unconditionally.
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self.span_with_kind(name, SpanKindEnum.INTERNAL, attributes)

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            kind=_OTEL_SPAN_KINDS[kind],
            attributes=attributes or {},
        )

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Records ``(name, attributes)`` for every span opened, in order.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("eventrelay.store.append", {"eventrelay.event.type": "OrderPlaced"}):
        ...     pass
        >>> tracer.span_names
        ['eventrelay.store.append']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, Attributes | None]] = []
        self.kinds: list[SpanKindEnum] = []

    def span(self, name: str, attributes: Attributes | None = None) -> AbstractContextManager[None]:
        return self.span_with_kind(name, SpanKindEnum.INTERNAL, attributes)

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
    ) -> Iterator[None]:
        self.spans.append((name, attributes))
        self.kinds.append(kind)
        yield None

    @property
    def enabled(self) -> bool:
        # Components skip building attributes when the tracer is disabled
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()
        self.kinds.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the tracer a component uses when none is injected.

    Returns an OpenTelemetryTracer named ``name``, or a NullTracer when
    ``enable_tracing`` is False.
    """
    return OpenTelemetryTracer(name) if enable_tracing else NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
]
