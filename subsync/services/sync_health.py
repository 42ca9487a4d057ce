"""Sync health aggregates over the enhanced status records."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from sqlalchemy.orm import Session

from subsync.database.models import EnhancedSubscriptionStatus, SyncStatus
from subsync.services.retry_policy import RetryPolicy, sync_retry_policy

MAX_HOURS_SINCE_SYNC = 24
MAX_HEALTHY_RETRY_COUNT = 2


@dataclass
class SyncMetrics:
    total: int = 0
    synced: int = 0
    pending: int = 0
    failed: int = 0
    retry_needed: int = 0
    healthy_percentage: float = 0


class SyncOutcome(str, Enum):
    HEALTHY = "healthy"
    PROCESSING = "processing"
    NEEDS_ATTENTION = "needs_attention"


@dataclass
class OutcomeReport:
    outcome: SyncOutcome
    message: str
    can_retry: bool = False
    next_retry_seconds: float | None = None


def aggregate(statuses: Iterable) -> SyncMetrics:
    """Count records per sync status. Anything with a ``sync_status`` works."""
    metrics = SyncMetrics()
    for status in statuses:
        metrics.total += 1
        sync_status = status.sync_status
        if sync_status == SyncStatus.SYNCED.value:
            metrics.synced += 1
        elif sync_status == SyncStatus.PENDING.value:
            metrics.pending += 1
        elif sync_status == SyncStatus.FAILED.value:
            metrics.failed += 1
        elif sync_status == SyncStatus.RETRY_NEEDED.value:
            metrics.retry_needed += 1

    if metrics.total:
        metrics.healthy_percentage = round(metrics.synced / metrics.total * 100, 2)
    return metrics


def is_sync_healthy(status, now: datetime | None = None) -> bool:
    if status is None or status.sync_status != SyncStatus.SYNCED.value:
        return False
    if (status.retry_count or 0) > MAX_HEALTHY_RETRY_COUNT:
        return False
    if status.last_sync_at is None:
        return False
    now = now or datetime.utcnow()
    return now - status.last_sync_at <= timedelta(hours=MAX_HOURS_SINCE_SYNC)


def get_sync_metrics(db: Session) -> SyncMetrics:
    rows = db.query(EnhancedSubscriptionStatus.sync_status).all()
    return aggregate(rows)


def describe_outcome(
    status,
    policy: RetryPolicy | None = None,
    now: datetime | None = None,
) -> OutcomeReport:
    """Classify one owner's sync state with a message for support staff."""
    policy = policy or sync_retry_policy()
    now = now or datetime.utcnow()

    if status is None:
        return OutcomeReport(SyncOutcome.NEEDS_ATTENTION, "No sync status recorded", can_retry=True)

    retry_count = status.retry_count or 0
    sync_status = status.sync_status

    if sync_status == SyncStatus.SYNCED.value:
        if status.last_sync_at is None:
            message = "Synced"
        else:
            minutes = int((now - status.last_sync_at).total_seconds() // 60)
            message = f"Synced {minutes}m ago"
        if is_sync_healthy(status, now=now):
            return OutcomeReport(SyncOutcome.HEALTHY, message)
        return OutcomeReport(SyncOutcome.NEEDS_ATTENTION, f"{message} (stale)", can_retry=True)

    if sync_status == SyncStatus.PENDING.value:
        return OutcomeReport(SyncOutcome.PROCESSING, "Sync pending...")

    if sync_status == SyncStatus.RETRY_NEEDED.value and not policy.is_exhausted(retry_count):
        delay = policy.next_delay(retry_count).total_seconds()
        return OutcomeReport(
            SyncOutcome.PROCESSING,
            f"Retry in {math.ceil(delay)}s",
            can_retry=True,
            next_retry_seconds=delay,
        )

    if sync_status == SyncStatus.RETRY_NEEDED.value:
        return OutcomeReport(SyncOutcome.NEEDS_ATTENTION, "Manual sync needed", can_retry=True)

    if sync_status == SyncStatus.FAILED.value:
        return OutcomeReport(
            SyncOutcome.NEEDS_ATTENTION,
            f"Sync failed ({retry_count} attempts)",
            can_retry=True,
        )

    return OutcomeReport(SyncOutcome.NEEDS_ATTENTION, "Sync status unknown", can_retry=True)


def find_stuck(db: Session, policy: RetryPolicy | None = None) -> list[EnhancedSubscriptionStatus]:
    """Records no automatic retry will pick up again."""
    policy = policy or sync_retry_policy()
    return (
        db.query(EnhancedSubscriptionStatus)
        .filter(
            (EnhancedSubscriptionStatus.sync_status == SyncStatus.FAILED.value)
            | (
                (EnhancedSubscriptionStatus.sync_status == SyncStatus.RETRY_NEEDED.value)
                & (EnhancedSubscriptionStatus.retry_count >= policy.max_retries)
            )
        )
        .order_by(EnhancedSubscriptionStatus.updated_at.asc())
        .all()
    )
