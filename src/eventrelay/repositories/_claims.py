"""
Claim selection shared by the event record repositories.

A record may only be claimed when every earlier non-dispatched relayable
record of its aggregate is claimed in the same batch. The SQL backends fetch
candidate rows together with ``prev_sequence``, the highest sequence of an
earlier non-dispatched relayable record of the same aggregate, and keep only
the head run of each aggregate with select_head_runs(). Audit-only records
leave holes in the relayable sequence, so contiguity is checked against
``prev_sequence`` rather than ``sequence - 1``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from eventrelay.records import AggregateKey, DispatchStatus, EventRecord

T = TypeVar("T")

# Column order of every SELECT returning whole records
RECORD_COLUMNS = (
    "id, tenant_id, aggregate_type, aggregate_id, event_type, payload, relayable, "
    "occurred_at, sequence, dispatch_status, claimed_by, claimed_at, attempt_count, "
    "last_error, next_attempt_at, dispatched_at, actor_id, actor_name, correlation_id, "
    "ip_address"
)

# Candidate rows for claim_batch, shared by SQLite and PostgreSQL.
# Parameters: :now, :lease_cutoff, :limit. {lock_clause} is empty for SQLite.
CLAIM_CANDIDATES_SQL = """
    SELECT r.id, r.tenant_id, r.aggregate_type, r.aggregate_id, r.sequence, r.dispatch_status,
           (
               SELECT MAX(p.sequence)
               FROM event_records p
               WHERE p.tenant_id = r.tenant_id
                 AND p.aggregate_type = r.aggregate_type
                 AND p.aggregate_id = r.aggregate_id
                 AND p.sequence < r.sequence
                 AND p.relayable
                 AND p.dispatch_status <> 'dispatched'
           ) AS prev_sequence
    FROM event_records r
    WHERE r.relayable
      AND (
          (r.dispatch_status = 'pending'
           AND (r.next_attempt_at IS NULL OR r.next_attempt_at <= :now))
          OR (r.dispatch_status = 'claimed' AND r.claimed_at <= :lease_cutoff)
      )
      AND NOT EXISTS (
          SELECT 1
          FROM event_records b
          WHERE b.tenant_id = r.tenant_id
            AND b.aggregate_type = r.aggregate_type
            AND b.aggregate_id = r.aggregate_id
            AND b.sequence < r.sequence
            AND b.relayable
            AND (
                b.dispatch_status = 'failed'
                OR (b.dispatch_status = 'claimed' AND b.claimed_at > :lease_cutoff)
                OR (b.dispatch_status = 'pending' AND b.next_attempt_at > :now)
            )
      )
    ORDER BY r.aggregate_type, r.aggregate_id, r.tenant_id, r.sequence
    LIMIT :limit
    {lock_clause}
"""


@dataclass(frozen=True)
class ClaimCandidate(Generic[T]):
    """A claimable row and the sequence of the record it must follow."""

    record_id: T
    aggregate_key: tuple[object, str, str]
    sequence: int
    prev_sequence: int | None


def select_head_runs(candidates: Iterable[ClaimCandidate[T]], batch_size: int) -> list[T]:
    """
    Keep the leading contiguous run of candidates of each aggregate.

    Candidates must arrive ordered by aggregate, then sequence. The first
    accepted record of an aggregate must have nothing unfinished before it;
    each further one must directly follow the previously accepted record.

    Returns:
        Accepted record ids in input order, at most ``batch_size`` of them
    """
    accepted: list[T] = []
    current_key: tuple[object, str, str] | None = None
    last_sequence: int | None = None
    blocked = False

    for candidate in candidates:
        if candidate.aggregate_key != current_key:
            current_key = candidate.aggregate_key
            last_sequence = None
            blocked = False
        if blocked:
            continue
        if candidate.prev_sequence != last_sequence:
            # An earlier record is claimed elsewhere or was skipped by the lock
            blocked = True
            continue
        accepted.append(candidate.record_id)
        last_sequence = candidate.sequence
        if len(accepted) >= batch_size:
            break

    return accepted


def is_claimable(record: EventRecord, now: datetime, lease_cutoff: datetime) -> bool:
    """True if the record itself may be claimed at ``now``."""
    if not record.relayable:
        return False
    if record.dispatch_status == DispatchStatus.PENDING:
        return record.next_attempt_at is None or record.next_attempt_at <= now
    if record.dispatch_status == DispatchStatus.CLAIMED:
        return record.claimed_at is not None and record.claimed_at <= lease_cutoff
    return False


def claim_sort_key(key: AggregateKey) -> tuple[str, str, str]:
    """Sort key matching the SQL ``ORDER BY aggregate_type, aggregate_id, tenant_id``."""
    tenant_id, aggregate_type, aggregate_id = key
    return (aggregate_type, aggregate_id, str(tenant_id))
