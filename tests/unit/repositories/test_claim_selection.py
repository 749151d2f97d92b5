"""
Unit tests for the head-run selection used by the SQL repositories.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

from eventrelay.records import DispatchStatus, EventRecord
from eventrelay.repositories._claims import (
    ClaimCandidate,
    claim_sort_key,
    is_claimable,
    select_head_runs,
)

TENANT = uuid4()
ORDER_42 = (TENANT, "Order", "42")
ORDER_43 = (TENANT, "Order", "43")


def candidate(key, sequence, prev):
    return ClaimCandidate(f"{key[2]}-{sequence}", key, sequence, prev)


class TestSelectHeadRuns:
    def test_contiguous_run_is_accepted(self):
        candidates = [
            candidate(ORDER_42, 1, None),
            candidate(ORDER_42, 2, 1),
            candidate(ORDER_42, 3, 2),
        ]

        assert select_head_runs(candidates, 10) == ["42-1", "42-2", "42-3"]

    def test_gap_stops_the_aggregate(self):
        # 42-2 is missing from the candidates (locked by another worker)
        candidates = [
            candidate(ORDER_42, 1, None),
            candidate(ORDER_42, 3, 2),
            candidate(ORDER_42, 4, 3),
        ]

        assert select_head_runs(candidates, 10) == ["42-1"]

    def test_first_candidate_with_unfinished_predecessor_is_skipped(self):
        candidates = [candidate(ORDER_42, 2, 1), candidate(ORDER_43, 1, None)]

        assert select_head_runs(candidates, 10) == ["43-1"]

    def test_audit_only_holes_do_not_break_the_run(self):
        # Sequence 2 is audit-only, so 3 follows 1 directly
        candidates = [candidate(ORDER_42, 1, None), candidate(ORDER_42, 3, 1)]

        assert select_head_runs(candidates, 10) == ["42-1", "42-3"]

    def test_batch_size_limits_result(self):
        candidates = [
            candidate(ORDER_42, 1, None),
            candidate(ORDER_42, 2, 1),
            candidate(ORDER_43, 1, None),
        ]

        assert select_head_runs(candidates, 2) == ["42-1", "42-2"]

    def test_empty(self):
        assert select_head_runs([], 5) == []


class TestIsClaimable:
    now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    cutoff = now - timedelta(seconds=30)

    def record(self, **overrides) -> EventRecord:
        values = {
            "id": uuid4(),
            "tenant_id": TENANT,
            "aggregate_type": "Order",
            "aggregate_id": "42",
            "event_type": "OrderPlaced",
            "payload": "{}",
            "relayable": True,
            "occurred_at": self.now,
            "sequence": 1,
            "dispatch_status": DispatchStatus.PENDING,
        }
        values.update(overrides)
        return EventRecord(**values)

    def test_pending(self):
        assert is_claimable(self.record(), self.now, self.cutoff)

    def test_pending_in_backoff(self):
        record = self.record(next_attempt_at=self.now + timedelta(seconds=1))

        assert not is_claimable(record, self.now, self.cutoff)

    def test_pending_backoff_elapsed(self):
        record = self.record(next_attempt_at=self.now)

        assert is_claimable(record, self.now, self.cutoff)

    def test_claimed_with_live_lease(self):
        record = self.record(
            dispatch_status=DispatchStatus.CLAIMED, claimed_at=self.now - timedelta(seconds=5)
        )

        assert not is_claimable(record, self.now, self.cutoff)

    def test_claimed_with_expired_lease(self):
        record = self.record(
            dispatch_status=DispatchStatus.CLAIMED, claimed_at=self.now - timedelta(seconds=31)
        )

        assert is_claimable(record, self.now, self.cutoff)

    def test_terminal_and_audit_only_records(self):
        assert not is_claimable(
            self.record(dispatch_status=DispatchStatus.FAILED), self.now, self.cutoff
        )
        assert not is_claimable(
            self.record(dispatch_status=DispatchStatus.DISPATCHED), self.now, self.cutoff
        )
        assert not is_claimable(
            self.record(relayable=False, dispatch_status=DispatchStatus.NOT_APPLICABLE),
            self.now,
            self.cutoff,
        )


def test_claim_sort_key_orders_by_type_then_id():
    keys = [(TENANT, "Order", "43"), (TENANT, "Invoice", "9"), (TENANT, "Order", "42")]

    assert sorted(keys, key=claim_sort_key) == [
        (TENANT, "Invoice", "9"),
        (TENANT, "Order", "42"),
        (TENANT, "Order", "43"),
    ]
