"""Tests for retry backoff and race-safe retry bookkeeping."""

from datetime import datetime, timedelta

import pytest

from subsync.config.settings import Settings
from subsync.database.models import EnhancedSubscriptionStatus
from subsync.services.retry_policy import (
    RetryPolicy,
    claim_retry,
    event_retry_policy,
    expire_exhausted,
    mark_for_retry,
    select_for_retry,
    sync_retry_policy,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)

POLICY = RetryPolicy(
    base_delay=timedelta(milliseconds=1000),
    max_delay=timedelta(milliseconds=10000),
    backoff_multiplier=2.0,
    max_retries=3,
)


def _add_status(db, owner_id, sync_status="retry_needed", retry_count=0, updated_at=None, **kwargs):
    status = EnhancedSubscriptionStatus(
        owner_id=owner_id,
        sync_status=sync_status,
        retry_count=retry_count,
        subscription_metadata=kwargs.pop("subscription_metadata", {}),
        updated_at=updated_at or NOW - timedelta(hours=1),
        **kwargs,
    )
    db.add(status)
    db.commit()


def _get_status(db, owner_id):
    return db.query(EnhancedSubscriptionStatus).filter_by(owner_id=owner_id).one()


class TestNextDelay:
    def test_doubles_until_capped(self):
        delays = [POLICY.next_delay(n).total_seconds() for n in range(6)]
        assert delays == [1, 2, 4, 8, 10, 10]

    def test_monotone(self):
        delays = [POLICY.next_delay(n) for n in range(50)]
        assert delays == sorted(delays)
        assert max(delays) == POLICY.max_delay

    def test_huge_retry_count_is_capped(self):
        assert POLICY.next_delay(100000) == POLICY.max_delay

    def test_negative_retry_count(self):
        with pytest.raises(ValueError):
            POLICY.next_delay(-1)

    def test_jitter_stays_within_cap(self):
        jittery = RetryPolicy(
            base_delay=timedelta(seconds=1),
            max_delay=timedelta(seconds=3),
            jitter=0.5,
        )
        for n in range(5):
            delay = jittery.next_delay(n)
            assert POLICY.next_delay(0) <= delay <= timedelta(seconds=3)

    def test_deterministic_without_jitter(self):
        assert POLICY.next_delay(2) == POLICY.next_delay(2)


class TestEligibility:
    def test_backoff_boundary(self):
        last_attempt = NOW - timedelta(milliseconds=1900)
        assert not POLICY.is_eligible(last_attempt, 1, now=NOW)

        last_attempt = NOW - timedelta(milliseconds=2100)
        assert POLICY.is_eligible(last_attempt, 1, now=NOW)

    def test_never_attempted_is_eligible(self):
        assert POLICY.is_eligible(None, 0, now=NOW)

    def test_exhausted_is_never_eligible(self):
        assert POLICY.is_exhausted(3)
        assert not POLICY.is_eligible(None, 3, now=NOW)
        assert not POLICY.is_eligible(NOW - timedelta(days=365), 3, now=NOW)


class TestPresets:
    def test_sync_preset(self):
        policy = sync_retry_policy(Settings())
        assert policy.base_delay == timedelta(seconds=1)
        assert policy.max_delay == timedelta(seconds=10)
        assert policy.max_retries == 3

    def test_event_preset(self):
        policy = event_retry_policy(Settings())
        assert policy.next_delay(0) == timedelta(minutes=1)
        assert policy.next_delay(3) == timedelta(minutes=8)
        assert policy.next_delay(10) == timedelta(minutes=60)


class TestSelectForRetry:
    def test_selects_due_records_oldest_first(self, db):
        _add_status(db, "user_new", updated_at=NOW - timedelta(minutes=5))
        _add_status(db, "user_old", updated_at=NOW - timedelta(hours=2))
        _add_status(db, "user_synced", sync_status="synced")
        _add_status(db, "user_exhausted", retry_count=3)

        selected = select_for_retry(db, POLICY, now=NOW)

        assert [s.owner_id for s in selected] == ["user_old", "user_new"]

    def test_skips_records_still_backing_off(self, db):
        _add_status(db, "user_1", retry_count=2, updated_at=NOW - timedelta(seconds=2))

        assert select_for_retry(db, POLICY, now=NOW) == []
        assert len(select_for_retry(db, POLICY, now=NOW + timedelta(seconds=5))) == 1

    def test_min_delay_filter(self, db):
        _add_status(db, "user_1", updated_at=NOW - timedelta(minutes=1))

        assert select_for_retry(db, POLICY, min_delay_since_last_attempt=timedelta(minutes=5), now=NOW) == []

    def test_batch_bound(self, db):
        for i in range(5):
            _add_status(db, f"user_{i}")

        assert len(select_for_retry(db, POLICY, batch_size=2, now=NOW)) == 2

    def test_due_record_behind_a_page_of_waiting_ones(self, db):
        slow = RetryPolicy(
            base_delay=timedelta(minutes=10),
            max_delay=timedelta(days=1),
            max_retries=10,
        )
        for i in range(7):
            _add_status(db, f"user_waiting_{i}", retry_count=8, updated_at=NOW - timedelta(hours=3, minutes=i))
        _add_status(db, "user_due", updated_at=NOW - timedelta(hours=1))

        selected = select_for_retry(db, slow, batch_size=1, now=NOW)

        assert [s.owner_id for s in selected] == ["user_due"]


class TestClaimRetry:
    def test_claim_increments_once(self, db):
        _add_status(db, "user_1", retry_count=1)

        assert claim_retry(db, "user_1", 1, now=NOW)
        assert not claim_retry(db, "user_1", 1, now=NOW)

        status = _get_status(db, "user_1")
        assert status.retry_count == 2
        assert status.sync_status == "retry_needed"
        assert status.updated_at == NOW

    def test_claim_requires_retry_needed(self, db):
        _add_status(db, "user_1", sync_status="synced")
        assert not claim_retry(db, "user_1", 0)


class TestMarkForRetry:
    def test_marks_and_counts(self, db):
        _add_status(db, "user_1", sync_status="synced", subscription_metadata={"plan_id": "price_1"})

        result = mark_for_retry(db, "user_1", error="Stripe timeout", policy=POLICY, now=NOW)

        assert result.success
        assert result.sync_status == "retry_needed"
        status = _get_status(db, "user_1")
        assert status.retry_count == 1
        assert status.sync_status == "retry_needed"
        assert status.subscription_metadata["last_error"] == "Stripe timeout"
        assert status.subscription_metadata["error_timestamp"] == NOW.isoformat()
        assert status.subscription_metadata["plan_id"] == "price_1"

    def test_reaching_bound_is_terminal(self, db):
        _add_status(db, "user_1", retry_count=2)

        result = mark_for_retry(db, "user_1", error="still failing", policy=POLICY, now=NOW)

        assert result.sync_status == "failed"
        status = _get_status(db, "user_1")
        assert status.retry_count == 3
        assert status.sync_status == "failed"
        assert status.subscription_metadata["requires_manual_intervention"] is True

    def test_without_increment_keeps_claimed_count(self, db):
        _add_status(db, "user_1", retry_count=1)

        mark_for_retry(db, "user_1", error="boom", policy=POLICY, increment=False, now=NOW)

        status = _get_status(db, "user_1")
        assert status.retry_count == 1
        assert status.sync_status == "retry_needed"

    def test_default_error_message(self, db):
        _add_status(db, "user_1")
        mark_for_retry(db, "user_1", policy=POLICY, now=NOW)
        assert _get_status(db, "user_1").subscription_metadata["last_error"] == "Unknown error"

    def test_unknown_owner(self, db):
        result = mark_for_retry(db, "nobody", error="boom", policy=POLICY)
        assert not result.success
        assert "nobody" in result.error


class TestExpireExhausted:
    def test_moves_exhausted_to_failed(self, db):
        _add_status(db, "user_stuck", retry_count=3)
        _add_status(db, "user_ok", retry_count=1)

        assert expire_exhausted(db, POLICY, now=NOW) == 1

        stuck = _get_status(db, "user_stuck")
        assert stuck.sync_status == "failed"
        assert stuck.subscription_metadata["requires_manual_intervention"] is True
        assert _get_status(db, "user_ok").sync_status == "retry_needed"

    def test_nothing_to_expire(self, db):
        assert expire_exhausted(db, POLICY) == 0
