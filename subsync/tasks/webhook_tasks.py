"""Celery tasks for projecting recorded Stripe webhook events."""

import logging
import time

from subsync.celery_app import app
from subsync.config.settings import get_settings
from subsync.database.db import SessionLocal
from subsync.database.models import ProcessingStatus
from subsync.services.event_store import get_event, get_events_for_retry
from subsync.services.retry_policy import event_retry_policy
from subsync.services.status_projector import project

logger = logging.getLogger(__name__)

settings = get_settings()


@app.task(bind=True, max_retries=3, default_retry_delay=30)
def process_webhook_event(self, event_id: str):
    """Project one recorded event. Failures are recorded on the event itself."""
    db = SessionLocal()
    try:
        event = get_event(db, event_id)
        if event is None:
            logger.warning("Webhook task got unknown event %s", event_id)
            return {"status": "missing", "event_id": event_id}
        if event.processing_status not in (ProcessingStatus.PENDING.value, ProcessingStatus.FAILED.value):
            return {"status": event.processing_status, "event_id": event_id}

        result = project(db, event)
        status = "skipped" if result.skipped else ("processed" if result.success else "failed")
        logger.info("Processed webhook event %s via Celery: %s", event_id, status)
        return {"status": status, "event_id": event_id, "error": result.error}
    except Exception as exc:
        logger.exception("Webhook task failed for event %s", event_id)
        raise self.retry(exc=exc)
    finally:
        db.close()


@app.task(bind=True, max_retries=1, default_retry_delay=60)
def retry_failed_events(self):
    """Reprocess failed events whose retry delay has elapsed.

    Runs on beat schedule (every 5 minutes), one batch per run.
    """
    db = SessionLocal()
    deadline = time.monotonic() + settings.reconcile_time_budget_seconds
    try:
        events = get_events_for_retry(
            db,
            max_retry_count=settings.event_retry_max_retries,
            retry_delay_minutes=settings.event_retry_delay_minutes,
            policy=event_retry_policy(settings),
        )

        processed = 0
        failed = 0
        for event in events:
            if time.monotonic() >= deadline:
                logger.info("Event retry sweep out of time after %d events", processed + failed)
                break
            result = project(db, event)
            if result.success:
                processed += 1
            else:
                failed += 1

        logger.info("Event retry sweep: %d processed, %d failed out of %d due", processed, failed, len(events))
        return {"processed": processed, "failed": failed, "total": len(events)}
    except Exception as exc:
        logger.exception("Event retry sweep failed")
        raise self.retry(exc=exc)
    finally:
        db.close()
