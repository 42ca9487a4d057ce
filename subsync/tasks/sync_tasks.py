"""Celery tasks for subscription sync retries, reconciliation and health reports."""

import logging
import time
from dataclasses import asdict

from subsync.celery_app import app
from subsync.config.settings import get_settings
from subsync.database.db import SessionLocal
from subsync.services.event_store import get_event_stats
from subsync.services.reconciler import reconcile_all, resync_owner
from subsync.services.retry_policy import (
    claim_retry,
    expire_exhausted,
    select_for_retry,
    sync_retry_policy,
)
from subsync.services.sync_health import find_stuck, get_sync_metrics

logger = logging.getLogger(__name__)

settings = get_settings()


def _deadline_reached(budget_seconds: float):
    deadline = time.monotonic() + budget_seconds
    return lambda: time.monotonic() >= deadline


@app.task(bind=True, max_retries=1, default_retry_delay=60)
def retry_subscription_syncs(self):
    """Retry owners flagged retry_needed whose backoff has elapsed.

    Runs on beat schedule (every 5 minutes). Each owner is claimed with a
    compare-and-swap on its retry count before the resync, so two workers
    never spend the same attempt.
    """
    db = SessionLocal()
    should_stop = _deadline_reached(settings.reconcile_time_budget_seconds)
    policy = sync_retry_policy()
    try:
        due = [(s.owner_id, s.retry_count) for s in select_for_retry(db, policy)]

        synced = 0
        failed = 0
        skipped = 0
        for owner_id, retry_count in due:
            if should_stop():
                logger.info("Sync retry sweep out of time after %d owners", synced + failed + skipped)
                break
            if not claim_retry(db, owner_id, retry_count):
                skipped += 1
                continue
            result = resync_owner(db, owner_id, retry_policy=policy, increment=False)
            if result.success:
                synced += 1
            else:
                failed += 1

        expired = expire_exhausted(db, policy)
        logger.info(
            "Sync retry sweep: %d synced, %d failed, %d skipped, %d expired",
            synced, failed, skipped, expired,
        )
        return {"synced": synced, "failed": failed, "skipped": skipped, "expired": expired}
    except Exception as exc:
        logger.exception("Sync retry sweep failed")
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=1, default_retry_delay=300)
def reconcile_subscriptions(self):
    """Hourly cross-store consistency sweep with a bounded time budget."""
    db = SessionLocal()
    try:
        sweep = reconcile_all(
            db,
            should_stop=_deadline_reached(settings.reconcile_time_budget_seconds),
            batch_size=settings.reconcile_batch_size,
        )
        return asdict(sweep)
    except Exception as exc:
        logger.exception("Reconciliation sweep failed")
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=3, default_retry_delay=30)
def resync_owner_task(self, owner_id: str):
    """Manual "sync now" for one owner, run off the request path."""
    db = SessionLocal()
    try:
        result = resync_owner(db, owner_id)
        return {
            "owner_id": owner_id,
            "success": result.success,
            "sync_status": result.sync_status,
            "result": result.result,
            "error": result.error,
        }
    except Exception as exc:
        logger.exception("Resync task failed for owner %s", owner_id)
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task
def report_sync_health():
    """Log sync and event processing health for alerting."""
    db = SessionLocal()
    try:
        metrics = get_sync_metrics(db)
        stats = get_event_stats(db)
        stuck = find_stuck(db)

        logger.info(
            "Sync health: %.2f%% synced of %d owners (%d retry_needed, %d failed); "
            "events %.2f%% successful of %d (%d exhausted)",
            metrics.healthy_percentage, metrics.total, metrics.retry_needed, metrics.failed,
            stats.success_rate, stats.total, stats.exhausted,
        )
        if stuck:
            logger.warning(
                "%d owners need manual sync intervention: %s",
                len(stuck), ", ".join(s.owner_id for s in stuck[:20]),
            )
        return {
            "sync": asdict(metrics),
            "events": asdict(stats),
            "stuck_owners": [s.owner_id for s in stuck],
        }
    finally:
        db.close()
