"""
Dispatcher: relays committed event records to the message bus.

A dispatcher claims a batch of pending records under a lease, publishes them
in claim order and records each outcome. Any number of dispatchers can share
one repository; they coordinate only through ``claim_batch``, which never
hands the same record to two of them and never hands out a record while an
earlier one of its aggregate is still outstanding.

Delivery is at least once. A record whose publish succeeded but whose
completion could not be written stays claimed until its lease expires and is
then published again, so consumers deduplicate on the envelope id.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import TracebackType
from typing import Any, Self
from uuid import UUID, uuid4

from eventrelay.bus.interface import MessagePublisher
from eventrelay.config import DispatcherConfig
from eventrelay.exceptions import PublishError, StaleClaimError, TerminalDispatchFailure
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_ATTEMPT_COUNT,
    ATTR_BATCH_SIZE,
    ATTR_DISPATCH_STATUS,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_TYPE,
    ATTR_LEASE_DURATION,
    ATTR_MESSAGING_DESTINATION,
    ATTR_RECORD_ID,
    ATTR_SEQUENCE,
    ATTR_WORKER_ID,
)
from eventrelay.records import AggregateKey, DispatchStatus, EventRecord
from eventrelay.repositories.interface import EventRecordRepository

logger = logging.getLogger(__name__)

TopicResolver = Callable[[EventRecord], str]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_worker_id() -> str:
    """host:pid:random, unique per dispatcher instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class DispatcherState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    PUBLISHING = "publishing"
    COMPLETING = "completing"
    STOPPED = "stopped"


class OutcomeKind(str, Enum):
    """What happened to one claimed record during a cycle."""

    DISPATCHED = "dispatched"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    RELEASED = "released"
    STALE_CLAIM = "stale_claim"
    COMPLETION_FAILED = "completion_failed"


@dataclass(frozen=True)
class RecordOutcome:
    record_id: UUID
    event_type: str
    aggregate_key: AggregateKey
    kind: OutcomeKind
    error: str | None = None


@dataclass(frozen=True)
class DispatchCycleResult:
    """
    Result of one claim/publish/complete cycle.

    Attributes:
        worker_id: Dispatcher that ran the cycle
        outcomes: One entry per claimed record; released records come last
        terminal_failures: Records that went dead during this cycle
        aborted: True if the cycle could not claim
        error: Why the cycle was aborted
    """

    worker_id: str
    outcomes: list[RecordOutcome] = field(default_factory=list)
    terminal_failures: list[TerminalDispatchFailure] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None

    @property
    def claimed_count(self) -> int:
        return len(self.outcomes)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind == kind)

    @property
    def dispatched_count(self) -> int:
        return self.count(OutcomeKind.DISPATCHED)

    @property
    def failed_count(self) -> int:
        """Publish failures, whether retried or dead."""
        return self.count(OutcomeKind.RETRY_SCHEDULED) + self.count(OutcomeKind.DEAD)

    @property
    def released_count(self) -> int:
        return self.count(OutcomeKind.RELEASED)


@dataclass
class DispatcherStats:
    """
    Running totals for one dispatcher.

    Attributes:
        cycles: Cycles run, including empty and aborted ones
        cycles_aborted: Cycles whose claim failed
        records_claimed: Records handed to this dispatcher
        records_dispatched: Records published and marked dispatched
        publish_failures: Publish attempts that failed or timed out
        records_dead: Records that reached max_attempts
        records_released: Claims given back unpublished
        stale_claims: Failures not recorded because the claim had moved on
        completion_errors: Outcomes that could not be written
        last_cycle_at: When the last cycle finished
    """

    cycles: int = 0
    cycles_aborted: int = 0
    records_claimed: int = 0
    records_dispatched: int = 0
    publish_failures: int = 0
    records_dead: int = 0
    records_released: int = 0
    stale_claims: int = 0
    completion_errors: int = 0
    last_cycle_at: datetime | None = None


class Dispatcher:
    """
    Claims pending event records and publishes them.

    Within a batch, records are published one at a time in claim order. When
    a publish fails, every later record of the same aggregate in the batch is
    released unpublished; they are claimed again once the failed record has
    been dispatched.

    The lease covers the whole batch. A record is only published while the
    publish is sure to end before the lease does; once that is no longer
    true the rest of the batch is released for another cycle.

    Example:
        >>> dispatcher = Dispatcher(repository, bus, DispatcherConfig(batch_size=50))
        >>> result = await dispatcher.run_once()
        >>> result.dispatched_count
        3

        >>> async with Dispatcher(repository, bus) as dispatcher:
        ...     ...  # polls in the background until the block exits
    """

    def __init__(
        self,
        repository: EventRecordRepository,
        publisher: MessagePublisher,
        config: DispatcherConfig | None = None,
        *,
        worker_id: str | None = None,
        topic_resolver: TopicResolver | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            repository: Where records are claimed from and completed in
            publisher: Message bus client
            config: Batch, lease, retry and polling settings
            worker_id: Identity recorded in claimed_by (generated if omitted)
            topic_resolver: Chooses the topic per record (defaults to config.topic)
            clock: Returns the current UTC time, used to track the batch lease
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._repository = repository
        self._publisher = publisher
        self._config = config or DispatcherConfig()
        self._worker_id = worker_id or default_worker_id()
        self._topic_resolver = topic_resolver
        self._clock = clock or _utcnow
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._state = DispatcherState.IDLE
        self._stats = DispatcherStats()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    def _topic_for(self, record: EventRecord) -> str:
        if self._topic_resolver is not None:
            return self._topic_resolver(record)
        return self._config.topic

    async def run_once(self) -> DispatchCycleResult:
        """
        Run one claim/publish/complete cycle.

        Never raises for claim, publish or completion failures; they are
        logged and reported in the result.
        """
        config = self._config
        with self._tracer.span(
            "eventrelay.dispatcher.run_once",
            {
                ATTR_WORKER_ID: self._worker_id,
                ATTR_BATCH_SIZE: config.batch_size,
                ATTR_LEASE_DURATION: config.lease_duration,
            },
        ) as span:
            self._state = DispatcherState.CLAIMING
            # The lease can only have started after this point
            lease_deadline = self._clock() + timedelta(seconds=config.lease_duration)
            try:
                records = await self._repository.claim_batch(
                    self._worker_id, config.batch_size, config.lease_duration
                )
            except Exception as e:
                logger.error(
                    "Dispatch cycle aborted, claim failed: %s",
                    e,
                    exc_info=True,
                    extra={"worker_id": self._worker_id},
                )
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                self._finish_cycle(aborted=True)
                return DispatchCycleResult(
                    worker_id=self._worker_id,
                    aborted=True,
                    error=f"{type(e).__name__}: {e}",
                )

            if span:
                span.set_attribute(ATTR_EVENT_COUNT, len(records))
            if records:
                logger.debug(
                    "Claimed %d records",
                    len(records),
                    extra={"worker_id": self._worker_id, "claimed": len(records)},
                )
            self._stats.records_claimed += len(records)

            result = DispatchCycleResult(worker_id=self._worker_id)
            blocked: set[AggregateKey] = set()
            to_release: list[EventRecord] = []

            publish_window = timedelta(seconds=config.publish_timeout)
            for index, record in enumerate(records):
                if record.aggregate_key in blocked:
                    to_release.append(record)
                    continue
                if self._clock() + publish_window >= lease_deadline:
                    remaining = records[index:]
                    logger.warning(
                        "Lease too short to publish %d more record(s); releasing them",
                        len(remaining),
                        extra={"worker_id": self._worker_id, "remaining": len(remaining)},
                    )
                    to_release.extend(remaining)
                    break
                outcome = await self._dispatch_record(record, result)
                if outcome.kind is not OutcomeKind.DISPATCHED:
                    blocked.add(record.aggregate_key)
                result.outcomes.append(outcome)

            if to_release:
                result.outcomes.extend(await self._release(to_release))

            self._finish_cycle(aborted=False)
            return result

    def _finish_cycle(self, aborted: bool) -> None:
        self._stats.cycles += 1
        if aborted:
            self._stats.cycles_aborted += 1
        self._stats.last_cycle_at = datetime.now(UTC)
        self._state = DispatcherState.STOPPED if self._stop_event.is_set() else DispatcherState.IDLE

    async def _dispatch_record(
        self, record: EventRecord, result: DispatchCycleResult
    ) -> RecordOutcome:
        attributes: dict[str, Any] = {
            ATTR_WORKER_ID: self._worker_id,
            ATTR_RECORD_ID: str(record.id),
            ATTR_EVENT_TYPE: record.event_type,
            ATTR_AGGREGATE_TYPE: record.aggregate_type,
            ATTR_AGGREGATE_ID: record.aggregate_id,
            ATTR_SEQUENCE: record.sequence,
            ATTR_ATTEMPT_COUNT: record.attempt_count,
        }
        topic: str | None = None
        error: str | None = None
        error_type: str | None = None
        retryable = True
        try:
            topic = self._topic_for(record)
            envelope = record.to_envelope()
        except Exception as e:
            # Resolver and envelope errors fail this record only
            error_type = type(e).__name__
            error = f"{error_type}: {e}"
        else:
            attributes[ATTR_MESSAGING_DESTINATION] = topic

        with self._tracer.span("eventrelay.dispatcher.dispatch", attributes) as span:
            self._state = DispatcherState.PUBLISHING
            if topic is not None and error is None:
                try:
                    await asyncio.wait_for(
                        self._publisher.publish(topic, envelope),
                        timeout=self._config.publish_timeout,
                    )
                except TimeoutError:
                    error_type = "TimeoutError"
                    error = f"publish timed out after {self._config.publish_timeout}s"
                except PublishError as e:
                    error_type = type(e).__name__
                    error = f"{error_type}: {e}"
                    retryable = e.retryable
                except Exception as e:
                    error_type = type(e).__name__
                    error = f"{error_type}: {e}"

            self._state = DispatcherState.COMPLETING
            if error is None:
                outcome = await self._complete_dispatched(record)
            else:
                self._stats.publish_failures += 1
                if span and error_type:
                    span.set_attribute(ATTR_ERROR_TYPE, error_type)
                outcome = await self._complete_failed(record, error, result, retryable)

            if span:
                span.set_attribute(ATTR_DISPATCH_STATUS, outcome.kind.value)
            return outcome

    async def _complete_dispatched(self, record: EventRecord) -> RecordOutcome:
        try:
            await self._repository.mark_dispatched(record.id)
        except Exception as e:
            self._stats.completion_errors += 1
            logger.error(
                "Published %s but could not mark it dispatched; it will be republished "
                "after its lease expires: %s",
                record.id,
                e,
                extra={"record_id": str(record.id), "worker_id": self._worker_id},
            )
            return self._outcome(record, OutcomeKind.COMPLETION_FAILED, str(e))

        self._stats.records_dispatched += 1
        logger.debug(
            "Dispatched %s (%s) %s/%s#%d",
            record.id,
            record.event_type,
            record.aggregate_type,
            record.aggregate_id,
            record.sequence,
            extra={
                "record_id": str(record.id),
                "event_type": record.event_type,
                "worker_id": self._worker_id,
            },
        )
        return self._outcome(record, OutcomeKind.DISPATCHED)

    async def _complete_failed(
        self,
        record: EventRecord,
        error: str,
        result: DispatchCycleResult,
        retryable: bool = True,
    ) -> RecordOutcome:
        attempt = record.attempt_count + 1
        retry_delay = self._config.backoff.delay_for(attempt)
        # A permanent rejection dead-letters the record on this attempt
        max_attempts = self._config.max_attempts if retryable else 1
        try:
            status = await self._repository.mark_failed(
                record.id,
                error,
                max_attempts=max_attempts,
                retry_delay=retry_delay,
                worker_id=self._worker_id,
            )
        except StaleClaimError as e:
            return self._stale_claim(record, error, e.status, e.claimed_by)
        except Exception as e:
            self._stats.completion_errors += 1
            logger.error(
                "Publish of %s failed and the failure could not be recorded: %s",
                record.id,
                e,
                extra={"record_id": str(record.id), "worker_id": self._worker_id},
            )
            return self._outcome(record, OutcomeKind.COMPLETION_FAILED, error)

        if status == DispatchStatus.FAILED:
            failure = TerminalDispatchFailure(record.id, attempt, error)
            result.terminal_failures.append(failure)
            self._stats.records_dead += 1
            logger.error(
                "%s%s",
                failure,
                "" if retryable else " (not retryable)",
                extra={
                    "record_id": str(record.id),
                    "event_type": record.event_type,
                    "aggregate_type": record.aggregate_type,
                    "aggregate_id": record.aggregate_id,
                    "attempts": attempt,
                    "retryable": retryable,
                    "worker_id": self._worker_id,
                },
            )
            return self._outcome(record, OutcomeKind.DEAD, error)
        if status != DispatchStatus.PENDING:
            return self._stale_claim(record, error, status.value, None)

        logger.warning(
            "Publish of %s failed (attempt %d of %d), retrying in %.1fs: %s",
            record.id,
            attempt,
            self._config.max_attempts,
            retry_delay,
            error,
            extra={
                "record_id": str(record.id),
                "event_type": record.event_type,
                "attempt": attempt,
                "retry_delay": retry_delay,
                "worker_id": self._worker_id,
            },
        )
        return self._outcome(record, OutcomeKind.RETRY_SCHEDULED, error)

    def _stale_claim(
        self, record: EventRecord, error: str, status: str, claimed_by: str | None
    ) -> RecordOutcome:
        self._stats.stale_claims += 1
        logger.warning(
            "Publish of %s failed but the claim is gone (now %s, held by %s); "
            "leaving the record to its current owner: %s",
            record.id,
            status,
            claimed_by or "nobody",
            error,
            extra={
                "record_id": str(record.id),
                "status": status,
                "claimed_by": claimed_by,
                "worker_id": self._worker_id,
            },
        )
        return self._outcome(record, OutcomeKind.STALE_CLAIM, error)

    async def _release(self, records: list[EventRecord]) -> list[RecordOutcome]:
        self._state = DispatcherState.COMPLETING
        ids = [record.id for record in records]
        try:
            released = await self._repository.release(ids, worker_id=self._worker_id)
        except Exception as e:
            self._stats.completion_errors += len(records)
            logger.error(
                "Could not release %d claims; they will be reclaimed after lease expiry: %s",
                len(ids),
                e,
                extra={"worker_id": self._worker_id},
            )
            return [
                self._outcome(record, OutcomeKind.COMPLETION_FAILED, str(e)) for record in records
            ]

        self._stats.records_released += released
        logger.warning(
            "Released %d of %d unpublished records",
            released,
            len(ids),
            extra={"worker_id": self._worker_id, "record_ids": [str(i) for i in ids]},
        )
        return [self._outcome(record, OutcomeKind.RELEASED) for record in records]

    @staticmethod
    def _outcome(record: EventRecord, kind: OutcomeKind, error: str | None = None) -> RecordOutcome:
        return RecordOutcome(
            record_id=record.id,
            event_type=record.event_type,
            aggregate_key=record.aggregate_key,
            kind=kind,
            error=error,
        )

    async def run(self) -> None:
        """
        Poll until stop() is called.

        A full or partial batch is followed immediately by the next cycle;
        an empty or aborted cycle waits ``poll_interval`` first.
        """
        if self._running:
            raise RuntimeError(f"Dispatcher {self._worker_id} is already running")
        self._running = True
        self._state = DispatcherState.IDLE
        logger.info(
            "Dispatcher started",
            extra={
                "worker_id": self._worker_id,
                "batch_size": self._config.batch_size,
                "lease_duration": self._config.lease_duration,
            },
        )
        try:
            while not self._stop_event.is_set():
                result = await self.run_once()
                if result.aborted or result.claimed_count == 0:
                    await self._sleep(self._config.poll_interval)
        finally:
            self._running = False
            self._state = DispatcherState.STOPPED
            logger.info(
                "Dispatcher stopped",
                extra={
                    "worker_id": self._worker_id,
                    "stats": {
                        "cycles": self._stats.cycles,
                        "dispatched": self._stats.records_dispatched,
                        "publish_failures": self._stats.publish_failures,
                        "dead": self._stats.records_dead,
                        "released": self._stats.records_released,
                    },
                },
            )

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def start(self) -> asyncio.Task[None]:
        """Run the polling loop as a background task."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"dispatcher-{self._worker_id}")
        return self._task

    async def stop(self) -> None:
        """Stop polling and wait for the current cycle to finish."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            await task
        self._state = DispatcherState.STOPPED

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


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
