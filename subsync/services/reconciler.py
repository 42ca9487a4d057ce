"""Cross-store reconciliation between user_subscriptions and the enhanced status.

``validate_consistency`` is a pure comparison. Repairs go through the status
projector (``apply_snapshot``); the canonical ``UserSubscription`` row is
never written here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy import select, union
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subsync.config.settings import get_settings
from subsync.database.models import (
    EnhancedSubscriptionStatus,
    PaymentMethodStatus,
    SyncStatus,
    UserSubscription,
)
from subsync.services import stripe_service
from subsync.services.retry_policy import RetryPolicy, SyncResult, mark_for_retry
from subsync.services.status_projector import (
    FetchSubscription,
    apply_snapshot,
    get_enhanced_status,
    upsert_enhanced_status,
)
from subsync.services.stripe_service import SubscriptionSnapshot

logger = logging.getLogger(__name__)


class RepairPolicy(str, Enum):
    PREFER_PROVIDER = "prefer_provider"
    PREFER_LOCAL = "prefer_local"


@dataclass
class ConsistencyReport:
    is_consistent: bool
    issues: list[str] = field(default_factory=list)


@dataclass
class SweepResult:
    checked: int = 0
    inconsistent: int = 0
    repaired: int = 0
    orphaned: int = 0
    failed: int = 0
    interrupted: bool = False


def validate_consistency(subscription, enhanced_status) -> ConsistencyReport:
    """Compare the canonical record against the projection. Never raises."""
    if subscription is None and enhanced_status is None:
        return ConsistencyReport(is_consistent=True)
    if enhanced_status is None:
        return ConsistencyReport(
            is_consistent=False,
            issues=["Enhanced status missing for existing subscription"],
        )
    if subscription is None:
        return ConsistencyReport(
            is_consistent=False,
            issues=["Enhanced status exists without base subscription"],
        )

    issues = []
    base_status = getattr(subscription, "status", None)
    projected_status = getattr(enhanced_status, "subscription_status", None)
    if base_status != projected_status:
        issues.append(f"Status mismatch: {base_status} vs {projected_status}")

    base_id = getattr(subscription, "external_subscription_id", None)
    projected_id = getattr(enhanced_status, "external_subscription_id", None)
    if base_id != projected_id:
        issues.append(f"Stripe ID mismatch: {base_id} vs {projected_id}")

    return ConsistencyReport(is_consistent=not issues, issues=issues)


def default_repair_policy() -> RepairPolicy:
    return RepairPolicy(get_settings().reconcile_repair_policy)


def _get_subscription(db: Session, owner_id: str) -> UserSubscription | None:
    return db.query(UserSubscription).filter(UserSubscription.owner_id == owner_id).first()


def _local_snapshot(subscription: UserSubscription, status: EnhancedSubscriptionStatus | None) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        external_subscription_id=subscription.external_subscription_id,
        status=subscription.status,
        plan_id=subscription.plan_id,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        payment_method_status=(
            status.payment_method_status if status else PaymentMethodStatus.VALID.value
        ),
    )


def _flag_orphaned(db: Session, owner_id: str, now: datetime) -> SyncResult:
    status = upsert_enhanced_status(
        db,
        owner_id,
        metadata={"orphaned": True, "orphaned_detected_at": now.isoformat()},
    )
    db.commit()
    logger.warning("Enhanced status for owner %s has no base subscription", owner_id)
    return SyncResult(
        success=True,
        sync_status=status.sync_status,
        last_sync_at=now,
        result="orphaned",
    )


def resync_owner(
    db: Session,
    owner_id: str,
    policy: RepairPolicy | None = None,
    fetch_subscription: FetchSubscription | None = None,
    retry_policy: RetryPolicy | None = None,
    increment: bool = True,
    now: datetime | None = None,
) -> SyncResult:
    """Re-project one owner's status from the provider or the local record.

    A failed attempt is recorded through ``mark_for_retry``; pass
    ``increment=False`` when the caller already claimed the attempt.
    """
    policy = RepairPolicy(policy) if policy else default_repair_policy()
    fetch = fetch_subscription or stripe_service.fetch_subscription
    now = now or datetime.utcnow()

    try:
        subscription = _get_subscription(db, owner_id)
        status = get_enhanced_status(db, owner_id)

        if subscription is None:
            if status is None:
                return SyncResult(
                    success=False,
                    sync_status=SyncStatus.FAILED.value,
                    error=f"No subscription found for owner {owner_id}",
                    last_sync_at=now,
                    result="not_found",
                )
            return _flag_orphaned(db, owner_id, now)

        if policy is RepairPolicy.PREFER_PROVIDER and subscription.external_subscription_id:
            snapshot = fetch(subscription.external_subscription_id)
            source = "provider"
        else:
            snapshot = _local_snapshot(subscription, status)
            source = "local"

        status = apply_snapshot(db, owner_id, snapshot, source=source, now=now)
    except Exception as exc:
        db.rollback()
        error = str(exc) or type(exc).__name__
        logger.exception("Resync failed for owner %s", owner_id)
        return _record_failure(db, owner_id, error, retry_policy, increment, now)

    result = f"repaired_from_{source}"
    report = validate_consistency(subscription, status)
    if not report.is_consistent:
        # The provider is ahead of (or behind) the canonical record
        result = "provider_diverges"
        logger.warning("Owner %s still diverges after provider resync: %s", owner_id, "; ".join(report.issues))

    logger.info("Resynced owner %s from %s: %s", owner_id, source, status.subscription_status)
    return SyncResult(
        success=True,
        sync_status=status.sync_status,
        last_sync_at=now,
        result=result,
    )


def _record_failure(
    db: Session,
    owner_id: str,
    error: str,
    retry_policy: RetryPolicy | None,
    increment: bool,
    now: datetime,
) -> SyncResult:
    try:
        if get_enhanced_status(db, owner_id) is None:
            upsert_enhanced_status(db, owner_id, sync_status=SyncStatus.RETRY_NEEDED.value)
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create status for owner %s", owner_id)

    marked = mark_for_retry(db, owner_id, error=error, policy=retry_policy, increment=increment, now=now)
    return SyncResult(
        success=False,
        sync_status=marked.sync_status,
        error=error,
        last_sync_at=now,
        result="failed",
    )


def _owner_ids(db: Session) -> list[str]:
    stmt = union(
        select(UserSubscription.owner_id),
        select(EnhancedSubscriptionStatus.owner_id),
    )
    return sorted(row[0] for row in db.execute(stmt))


def reconcile_all(
    db: Session,
    should_stop: Callable[[], bool] | None = None,
    batch_size: int | None = None,
    policy: RepairPolicy | None = None,
    fetch_subscription: FetchSubscription | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Check every owner and repair divergent ones, one owner at a time.

    At most ``batch_size`` owners are repaired per sweep; the rest are only
    counted. ``should_stop`` is checked between owners.
    """
    batch_size = batch_size or get_settings().reconcile_batch_size
    policy = RepairPolicy(policy) if policy else default_repair_policy()
    sweep = SweepResult()

    for owner_id in _owner_ids(db):
        if should_stop is not None and should_stop():
            sweep.interrupted = True
            logger.info("Reconciliation interrupted after %d owners", sweep.checked)
            break

        sweep.checked += 1
        try:
            report = validate_consistency(_get_subscription(db, owner_id), get_enhanced_status(db, owner_id))
        except SQLAlchemyError:
            db.rollback()
            sweep.failed += 1
            logger.exception("Failed to load records for owner %s", owner_id)
            continue

        if report.is_consistent:
            continue

        sweep.inconsistent += 1
        logger.info("Owner %s inconsistent: %s", owner_id, "; ".join(report.issues))
        if sweep.repaired + sweep.orphaned >= batch_size:
            continue

        result = resync_owner(
            db, owner_id, policy=policy, fetch_subscription=fetch_subscription, now=now,
        )
        if result.result == "orphaned":
            sweep.orphaned += 1
        elif result.success:
            sweep.repaired += 1
        else:
            sweep.failed += 1

    logger.info(
        "Reconciliation sweep: %d checked, %d inconsistent, %d repaired, %d orphaned, %d failed",
        sweep.checked, sweep.inconsistent, sweep.repaired, sweep.orphaned, sweep.failed,
    )
    return sweep
