"""Stripe webhook endpoint: separate router for raw body parsing."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from subsync.config.settings import get_settings
from subsync.database.db import get_db
from subsync.services.event_store import get_event, record_event
from subsync.services.status_projector import project
from subsync.services.stripe_service import extract_owner_id, sanitize_event, verify_webhook
from subsync.tasks.webhook_tasks import process_webhook_event

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhook_router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events. No auth; verified by Stripe signature."""
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = verify_webhook(payload, sig_header)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Signature verification failed")

    if not event.get("id"):
        raise HTTPException(status_code=400, detail="Event has no id")

    # Recording and projecting block on the database and on Stripe lookups
    return await run_in_threadpool(_ingest_event, db, event)


def _ingest_event(db: Session, event: dict) -> dict:
    provider_event_id = event["id"]
    event_type = event.get("type", "")
    recorded = record_event(
        db,
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=sanitize_event(event),
        owner_id=extract_owner_id(event),
    )
    if not recorded.success:
        # Not stored: a 5xx makes Stripe redeliver later
        raise HTTPException(status_code=503, detail="Event could not be recorded")

    if recorded.is_duplicate:
        logger.info("Skipping duplicate webhook event: %s (%s)", provider_event_id, event_type)
        return {"received": True, "duplicate": True, "status": recorded.processing_status}

    if get_settings().process_webhooks_async:
        process_webhook_event.delay(recorded.event_id)
        return {"received": True, "duplicate": False, "status": recorded.processing_status}

    result = project(db, get_event(db, recorded.event_id))
    # Processing failures are retried from our side; Stripe need not redeliver
    return {
        "received": True,
        "duplicate": False,
        "status": "skipped" if result.skipped else ("processed" if result.success else "failed"),
    }
