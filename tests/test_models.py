"""
Tests for ledger data models.

Tests cover:
- Bucket construction and validation
- Snapshot arithmetic
- Reservation state machine transitions
"""
import pytest

from quota_ledger.models import (
    BucketKey,
    ReservationState,
    Scope,
    UsageSnapshot,
    UsageWindow,
    build_buckets,
    unique_buckets,
)


# ============================================================
# Bucket Tests
# ============================================================


class TestBucketKey:
    """Test BucketKey."""

    def test_scope_string_coerced(self):
        """Test plain strings become Scope members."""
        bucket = BucketKey("user", 42)
        assert bucket.scope is Scope.USER
        assert bucket.key == "42"
        assert bucket == BucketKey.user("42")

    def test_label(self):
        assert BucketKey.topic("-100:7").label == "topic:-100:7"
        assert BucketKey.global_bucket().label == "global:global"

    def test_unknown_scope(self):
        with pytest.raises(ValueError, match="Unknown quota scope"):
            BucketKey("team", "x")

    def test_empty_key(self):
        with pytest.raises(ValueError):
            BucketKey(Scope.USER, "")

    def test_hashable(self):
        """Test buckets work as dict keys."""
        counts = {BucketKey.user("a"): 1}
        assert counts[BucketKey("user", "a")] == 1


class TestBuildBuckets:
    """Test bucket list construction."""

    def test_global_only(self):
        assert build_buckets() == [BucketKey.global_bucket()]

    def test_all_scopes_in_order(self):
        buckets = build_buckets(user_id=7, topic_id="t1")
        assert [b.scope for b in buckets] == [Scope.GLOBAL, Scope.USER, Scope.TOPIC]
        assert buckets[1].key == "7"

    def test_blank_ids_skipped(self):
        assert build_buckets(user_id="", topic_id=None) == [BucketKey.global_bucket()]

    def test_unique_buckets_keeps_order(self):
        a, b = BucketKey.user("a"), BucketKey.topic("b")
        assert unique_buckets([a, b, a, b]) == [a, b]


# ============================================================
# Snapshot Tests
# ============================================================


class TestUsageSnapshot:
    """Test UsageSnapshot arithmetic."""

    def test_remaining(self):
        snapshot = UsageSnapshot(
            bucket=BucketKey.user("u1"),
            window=UsageWindow.daily("2024-01-01"),
            limit_tokens=1000,
            used_tokens=350,
            reserved_tokens=100,
        )
        assert snapshot.remaining_tokens == 550
        assert snapshot.unlimited is False

    def test_unlimited_has_no_remaining(self):
        snapshot = UsageSnapshot(
            bucket=BucketKey.topic("t"),
            window=UsageWindow.daily("2024-01-01"),
            limit_tokens=None,
            used_tokens=10,
            reserved_tokens=5,
        )
        assert snapshot.remaining_tokens is None
        assert snapshot.unlimited is True


# ============================================================
# State Machine Tests
# ============================================================


class TestReservationState:
    """Test allowed transitions."""

    def test_terminal_states(self):
        assert ReservationState.COMMITTED.terminal
        assert ReservationState.RELEASED.terminal
        assert not ReservationState.RESERVED.terminal
        assert not ReservationState.UNRESERVED.terminal

    def test_reserved_outcomes(self):
        """Test a hold can be replaced, committed or released."""
        state = ReservationState.RESERVED
        assert state.can_transition(ReservationState.RESERVED)
        assert state.can_transition(ReservationState.COMMITTED)
        assert state.can_transition(ReservationState.RELEASED)

    def test_commit_requires_reservation(self):
        assert not ReservationState.UNRESERVED.can_transition(ReservationState.COMMITTED)

    @pytest.mark.parametrize("terminal", [ReservationState.COMMITTED, ReservationState.RELEASED])
    def test_no_way_out_of_terminal(self, terminal):
        """Test terminal states have no outgoing transitions."""
        for target in ReservationState:
            assert not terminal.can_transition(target)
