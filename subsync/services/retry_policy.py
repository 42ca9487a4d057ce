"""Retry scheduling: exponential backoff and bounded, race-safe retry claims.

``RetryPolicy`` is a pure value: ``next_delay`` depends only on the retry
count (jitter is opt-in). The database helpers below select records that are
due, and increment ``retry_count`` only through conditional UPDATEs
("increment if it still equals what I read") so concurrent retry workers
never lose or double-apply an attempt.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subsync.config.settings import Settings, get_settings
from subsync.database.models import EnhancedSubscriptionStatus, SyncStatus
from subsync.services.event_store import iter_in_pages
from subsync.services.status_projector import get_enhanced_status, merge_metadata

logger = logging.getLogger(__name__)

_CAS_ATTEMPTS = 3

# Rows read per page, in batches, while filtering on backoff
_SCAN_PAGE_FACTOR = 5


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: timedelta
    max_delay: timedelta
    backoff_multiplier: float = 2.0
    max_retries: int = 3
    jitter: float = 0.0

    def next_delay(self, retry_count: int) -> timedelta:
        """min(base * multiplier ** retry_count, max_delay)."""
        if retry_count < 0:
            raise ValueError("retry_count must be non-negative")

        cap = self.max_delay.total_seconds()
        try:
            seconds = min(self.base_delay.total_seconds() * self.backoff_multiplier ** retry_count, cap)
        except OverflowError:
            seconds = cap
        if self.jitter:
            seconds = min(seconds * (1 + random.uniform(0, self.jitter)), cap)
        return timedelta(seconds=seconds)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def is_eligible(
        self,
        last_attempt_at: datetime | None,
        retry_count: int,
        now: datetime | None = None,
    ) -> bool:
        if self.is_exhausted(retry_count):
            return False
        if last_attempt_at is None:
            return True
        now = now or datetime.utcnow()
        return now - last_attempt_at >= self.next_delay(retry_count)


def sync_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    """Backoff for subscription sync attempts (milliseconds scale)."""
    settings = settings or get_settings()
    return RetryPolicy(
        base_delay=timedelta(milliseconds=settings.sync_retry_base_delay_ms),
        max_delay=timedelta(milliseconds=settings.sync_retry_max_delay_ms),
        backoff_multiplier=settings.sync_retry_backoff_multiplier,
        max_retries=settings.sync_retry_max_retries,
        jitter=settings.retry_jitter,
    )


def event_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    """Backoff for reprocessing failed webhook events (minutes scale)."""
    settings = settings or get_settings()
    return RetryPolicy(
        base_delay=timedelta(minutes=settings.event_retry_base_delay_minutes),
        max_delay=timedelta(minutes=settings.event_retry_max_delay_minutes),
        backoff_multiplier=settings.event_retry_backoff_multiplier,
        max_retries=settings.event_retry_max_retries,
        jitter=settings.retry_jitter,
    )


@dataclass
class SyncResult:
    success: bool
    sync_status: str
    last_sync_at: datetime
    error: str | None = None
    result: str | None = None


def select_for_retry(
    db: Session,
    policy: RetryPolicy,
    max_retry_count: int | None = None,
    min_delay_since_last_attempt: timedelta | None = None,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> list[EnhancedSubscriptionStatus]:
    """Status records due for a sync retry, oldest attempt first."""
    now = now or datetime.utcnow()
    if max_retry_count is None:
        max_retry_count = policy.max_retries
    batch_size = batch_size or get_settings().retry_batch_size

    query = db.query(EnhancedSubscriptionStatus).filter(
        EnhancedSubscriptionStatus.sync_status == SyncStatus.RETRY_NEEDED.value,
        EnhancedSubscriptionStatus.retry_count < max_retry_count,
    )
    if min_delay_since_last_attempt is not None:
        query = query.filter(EnhancedSubscriptionStatus.updated_at <= now - min_delay_since_last_attempt)

    query = query.order_by(EnhancedSubscriptionStatus.updated_at.asc(), EnhancedSubscriptionStatus.id.asc())
    candidates = []
    for status in iter_in_pages(query, batch_size * _SCAN_PAGE_FACTOR):
        if policy.is_eligible(status.updated_at, status.retry_count, now=now):
            candidates.append(status)
            if len(candidates) >= batch_size:
                break
    return candidates


def claim_retry(
    db: Session,
    owner_id: str,
    expected_retry_count: int,
    now: datetime | None = None,
) -> bool:
    """Count one retry attempt, only if nobody else has claimed it first."""
    now = now or datetime.utcnow()
    try:
        result = db.execute(
            update(EnhancedSubscriptionStatus)
            .where(
                EnhancedSubscriptionStatus.owner_id == owner_id,
                EnhancedSubscriptionStatus.sync_status == SyncStatus.RETRY_NEEDED.value,
                EnhancedSubscriptionStatus.retry_count == expected_retry_count,
            )
            .values(retry_count=expected_retry_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.expire_all()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to claim sync retry for owner %s", owner_id)
        return False
    return result.rowcount == 1


def mark_for_retry(
    db: Session,
    owner_id: str,
    error: str | None = None,
    policy: RetryPolicy | None = None,
    increment: bool = True,
    now: datetime | None = None,
) -> SyncResult:
    """Record a failed sync attempt for ``owner_id``.

    With ``increment`` the attempt is counted here (compare-and-swap on the
    retry count); pass ``increment=False`` when ``claim_retry`` already
    counted it. Reaching the policy bound makes the record terminal
    ``failed`` and flags it for manual intervention.
    """
    policy = policy or sync_retry_policy()
    now = now or datetime.utcnow()
    error = error or "Unknown error"

    try:
        for _ in range(_CAS_ATTEMPTS):
            status = get_enhanced_status(db, owner_id)
            if status is None:
                return SyncResult(
                    success=False,
                    sync_status=SyncStatus.FAILED.value,
                    error=f"No enhanced status for owner {owner_id}",
                    last_sync_at=now,
                )

            observed = status.retry_count or 0
            new_count = observed + 1 if increment else observed
            exhausted = policy.is_exhausted(new_count)
            sync_status = SyncStatus.FAILED if exhausted else SyncStatus.RETRY_NEEDED
            metadata = merge_metadata(status.subscription_metadata, {
                "last_error": error,
                "error_timestamp": now.isoformat(),
            })
            if exhausted:
                metadata["requires_manual_intervention"] = True

            result = db.execute(
                update(EnhancedSubscriptionStatus)
                .where(
                    EnhancedSubscriptionStatus.owner_id == owner_id,
                    EnhancedSubscriptionStatus.retry_count == observed,
                )
                .values(
                    retry_count=new_count,
                    sync_status=sync_status.value,
                    subscription_metadata=metadata,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            db.expire_all()

            if result.rowcount == 1:
                if exhausted:
                    logger.warning("Owner %s exhausted sync retries (%d): %s", owner_id, new_count, error)
                return SyncResult(
                    success=True,
                    sync_status=sync_status.value,
                    error=error,
                    last_sync_at=now,
                )
            logger.info("Retry count for owner %s changed concurrently, re-reading", owner_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to mark owner %s for sync retry", owner_id)
        return SyncResult(success=False, sync_status=SyncStatus.FAILED.value, error=str(exc), last_sync_at=now)

    return SyncResult(
        success=False,
        sync_status=SyncStatus.RETRY_NEEDED.value,
        error="Concurrent retry updates; gave up",
        last_sync_at=now,
    )


def expire_exhausted(db: Session, policy: RetryPolicy, now: datetime | None = None) -> int:
    """Move retry_needed records at the retry bound to terminal ``failed``."""
    now = now or datetime.utcnow()
    stuck = db.query(EnhancedSubscriptionStatus).filter(
        EnhancedSubscriptionStatus.sync_status == SyncStatus.RETRY_NEEDED.value,
        EnhancedSubscriptionStatus.retry_count >= policy.max_retries,
    ).all()

    expired = 0
    for status in stuck:
        metadata = merge_metadata(status.subscription_metadata, {"requires_manual_intervention": True})
        result = db.execute(
            update(EnhancedSubscriptionStatus)
            .where(
                EnhancedSubscriptionStatus.id == status.id,
                EnhancedSubscriptionStatus.sync_status == SyncStatus.RETRY_NEEDED.value,
            )
            .values(sync_status=SyncStatus.FAILED.value, subscription_metadata=metadata, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            expired += 1
            logger.warning("Owner %s needs manual intervention after %d sync retries", status.owner_id, status.retry_count)
    db.expire_all()
    return expired
