"""Tests for sync health aggregates and outcome descriptions."""

from datetime import datetime, timedelta
from types import SimpleNamespace

from subsync.database.models import EnhancedSubscriptionStatus
from subsync.services.retry_policy import RetryPolicy
from subsync.services.sync_health import (
    SyncOutcome,
    aggregate,
    describe_outcome,
    find_stuck,
    get_sync_metrics,
    is_sync_healthy,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)

POLICY = RetryPolicy(
    base_delay=timedelta(seconds=1),
    max_delay=timedelta(seconds=10),
    max_retries=3,
)


def _status(sync_status="synced", retry_count=0, last_sync_at=NOW - timedelta(minutes=5)):
    return SimpleNamespace(sync_status=sync_status, retry_count=retry_count, last_sync_at=last_sync_at)


class TestAggregate:
    def test_empty(self):
        metrics = aggregate([])
        assert metrics.total == 0
        assert metrics.healthy_percentage == 0

    def test_counts_and_percentage(self):
        statuses = [_status(s) for s in ["synced", "synced", "synced", "pending", "failed", "retry_needed"]]

        metrics = aggregate(statuses)

        assert metrics.total == 6
        assert metrics.synced == 3
        assert metrics.pending == 1
        assert metrics.failed == 1
        assert metrics.retry_needed == 1
        assert metrics.healthy_percentage == 50

    def test_rounds_to_two_places(self):
        metrics = aggregate([_status("synced"), _status("failed"), _status("failed")])
        assert metrics.healthy_percentage == 33.33


class TestIsSyncHealthy:
    def test_recent_sync(self):
        assert is_sync_healthy(_status(), now=NOW)

    def test_stale_sync(self):
        assert not is_sync_healthy(_status(last_sync_at=NOW - timedelta(hours=25)), now=NOW)

    def test_boundary_24_hours(self):
        assert is_sync_healthy(_status(last_sync_at=NOW - timedelta(hours=24)), now=NOW)

    def test_too_many_retries(self):
        assert is_sync_healthy(_status(retry_count=2), now=NOW)
        assert not is_sync_healthy(_status(retry_count=3), now=NOW)

    def test_never_synced(self):
        assert not is_sync_healthy(_status(last_sync_at=None), now=NOW)

    def test_not_synced(self):
        assert not is_sync_healthy(_status("retry_needed"), now=NOW)
        assert not is_sync_healthy(None, now=NOW)


class TestDescribeOutcome:
    def test_healthy(self):
        report = describe_outcome(_status(), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.HEALTHY
        assert report.message == "Synced 5m ago"

    def test_stale_needs_attention(self):
        report = describe_outcome(_status(last_sync_at=NOW - timedelta(days=2)), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.NEEDS_ATTENTION

    def test_pending(self):
        report = describe_outcome(_status("pending"), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.PROCESSING
        assert not report.can_retry

    def test_retry_scheduled(self):
        report = describe_outcome(_status("retry_needed", retry_count=1), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.PROCESSING
        assert report.message == "Retry in 2s"
        assert report.next_retry_seconds == 2

    def test_retries_exhausted(self):
        report = describe_outcome(_status("retry_needed", retry_count=3), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.NEEDS_ATTENTION
        assert report.message == "Manual sync needed"

    def test_failed(self):
        report = describe_outcome(_status("failed", retry_count=3), POLICY, now=NOW)
        assert report.outcome is SyncOutcome.NEEDS_ATTENTION
        assert report.message == "Sync failed (3 attempts)"

    def test_no_status(self):
        assert describe_outcome(None, POLICY).outcome is SyncOutcome.NEEDS_ATTENTION


class TestDatabaseQueries:
    def _add(self, db, owner_id, sync_status, retry_count=0):
        db.add(EnhancedSubscriptionStatus(
            owner_id=owner_id, sync_status=sync_status, retry_count=retry_count, subscription_metadata={},
        ))
        db.commit()

    def test_get_sync_metrics(self, db):
        self._add(db, "user_1", "synced")
        self._add(db, "user_2", "synced")
        self._add(db, "user_3", "retry_needed", 1)
        self._add(db, "user_4", "failed", 3)

        metrics = get_sync_metrics(db)

        assert metrics.total == 4
        assert metrics.synced == 2
        assert metrics.healthy_percentage == 50

    def test_find_stuck(self, db):
        self._add(db, "user_ok", "synced")
        self._add(db, "user_retrying", "retry_needed", 1)
        self._add(db, "user_exhausted", "retry_needed", 3)
        self._add(db, "user_failed", "failed", 2)

        stuck = {s.owner_id for s in find_stuck(db, POLICY)}

        assert stuck == {"user_exhausted", "user_failed"}
