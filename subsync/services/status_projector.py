"""Apply recorded webhook events to the enhanced subscription status.

Each known Stripe event type maps to one handler that turns the event's
object into a ``Projection``: the fields to write and the metadata to merge.
Handlers write the payload's current values (never accumulate), so applying
the same event twice leaves the same state as applying it once. The retry
counter is left to the retry scheduler.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from subsync.database.models import (
    EnhancedSubscriptionStatus,
    PaymentMethodStatus,
    ProcessingStatus,
    SubscriptionStatus,
    SyncStatus,
    UserSubscription,
    WebhookEvent,
)
from subsync.services.event_store import update_event_status
from subsync.services import stripe_service
from subsync.services.stripe_service import SubscriptionSnapshot, event_object, extract_owner_id

logger = logging.getLogger(__name__)

_MAX_ERROR_ENTRIES = 20


class ProjectionError(Exception):
    """Raised when an event cannot be mapped onto subscription state."""
    pass


class OwnerNotResolvedError(ProjectionError):
    """Raised when no owner can be found for an event (yet)."""
    pass


class EventKind(Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UNCOLLECTIBLE = "invoice.marked_uncollectible"
    UNKNOWN = "unknown"

    @classmethod
    def from_event_type(cls, event_type: str | None) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class Projection:
    fields: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    terminal_error: str | None = None
    skip_reason: str | None = None


@dataclass
class ProjectionResult:
    success: bool
    new_status: str | None = None
    sync_status: str | None = None
    skipped: bool = False
    error: str | None = None


FetchSubscription = Callable[[str], SubscriptionSnapshot]


# --- Metadata helpers ---

def merge_metadata(existing: dict | None, updates: dict | None) -> dict:
    """Shallow merge that never drops keys already present."""
    merged = dict(existing or {})
    merged.update(updates or {})
    return merged


def append_error_context(metadata: dict | None, entry: dict) -> dict:
    """Append an error entry to metadata["errors"], once per event_id."""
    merged = dict(metadata or {})
    errors = list(merged.get("errors") or [])
    if not any(e.get("event_id") == entry.get("event_id") for e in errors):
        errors.append(entry)
    merged["errors"] = errors[-_MAX_ERROR_ENTRIES:]
    return merged


def _coerce_subscription_status(raw_status) -> str:
    try:
        return SubscriptionStatus(raw_status).value
    except ValueError:
        raise ProjectionError(f"Unknown subscription status: {raw_status!r}")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# --- Handlers, one per EventKind ---

def _project_subscription_changed(obj: dict, fetch: FetchSubscription) -> Projection:
    snapshot = stripe_service.snapshot_from_subscription(obj)
    return Projection(
        fields={
            "subscription_status": _coerce_subscription_status(snapshot.status),
            "external_subscription_id": snapshot.external_subscription_id,
        },
        metadata={
            "plan_id": snapshot.plan_id,
            "current_period_end": _iso(snapshot.current_period_end),
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "canceled_at": obj.get("canceled_at"),
        },
    )


def _project_subscription_deleted(obj: dict, fetch: FetchSubscription) -> Projection:
    return Projection(
        fields={
            "subscription_status": SubscriptionStatus.CANCELED.value,
            "external_subscription_id": obj.get("id"),
        },
        metadata={
            "canceled_at": obj.get("canceled_at"),
            "ended_at": obj.get("ended_at"),
            "cancel_at_period_end": False,
        },
    )


def _project_checkout_completed(obj: dict, fetch: FetchSubscription) -> Projection:
    """The checkout session does not carry the subscription's status; look it up."""
    subscription_id = obj.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if obj.get("mode", "subscription") != "subscription" or not subscription_id:
        return Projection(skip_reason="checkout session without subscription")

    snapshot = fetch(subscription_id)
    return Projection(
        fields={
            "subscription_status": _coerce_subscription_status(snapshot.status),
            "external_subscription_id": snapshot.external_subscription_id,
            "payment_method_status": snapshot.payment_method_status,
        },
        metadata={
            "plan_id": snapshot.plan_id,
            "current_period_end": _iso(snapshot.current_period_end),
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "checkout_session_id": obj.get("id"),
        },
    )


def _invoice_subscription_id(obj: dict) -> str | None:
    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def _project_payment_succeeded(obj: dict, fetch: FetchSubscription) -> Projection:
    fields = {"payment_method_status": PaymentMethodStatus.VALID.value}
    subscription_id = _invoice_subscription_id(obj)
    if subscription_id:
        fields["external_subscription_id"] = subscription_id
    return Projection(
        fields=fields,
        metadata={
            "last_invoice_id": obj.get("id"),
            "last_payment_at": (obj.get("status_transitions") or {}).get("paid_at") or obj.get("created"),
            "last_payment_error": None,
        },
    )


def _project_payment_failed(obj: dict, fetch: FetchSubscription) -> Projection:
    intent = obj.get("payment_intent")
    payment_method_status = PaymentMethodStatus.DECLINED.value
    message = None
    if isinstance(intent, dict):
        if intent.get("status") == "requires_action":
            payment_method_status = PaymentMethodStatus.REQUIRES_ACTION.value
        message = (intent.get("last_payment_error") or {}).get("message")

    fields = {
        "subscription_status": SubscriptionStatus.PAST_DUE.value,
        "payment_method_status": payment_method_status,
    }
    subscription_id = _invoice_subscription_id(obj)
    if subscription_id:
        fields["external_subscription_id"] = subscription_id

    # Stripe clears next_payment_attempt once it has given up on the invoice
    terminal = "next_payment_attempt" in obj and obj["next_payment_attempt"] is None
    return Projection(
        fields=fields,
        metadata={
            "last_invoice_id": obj.get("id"),
            "last_payment_error": {
                "invoice_id": obj.get("id"),
                "attempt_count": obj.get("attempt_count"),
                "message": message,
            },
        },
        terminal_error="Payment retries exhausted by provider" if terminal else None,
    )


def _project_invoice_uncollectible(obj: dict, fetch: FetchSubscription) -> Projection:
    fields = {"payment_method_status": PaymentMethodStatus.DECLINED.value}
    subscription_id = _invoice_subscription_id(obj)
    if subscription_id:
        fields["external_subscription_id"] = subscription_id
    return Projection(
        fields=fields,
        metadata={"last_invoice_id": obj.get("id")},
        terminal_error="Invoice marked uncollectible",
    )


_HANDLERS: dict[EventKind, Callable[[dict, FetchSubscription], Projection]] = {
    EventKind.CHECKOUT_COMPLETED: _project_checkout_completed,
    EventKind.SUBSCRIPTION_CREATED: _project_subscription_changed,
    EventKind.SUBSCRIPTION_UPDATED: _project_subscription_changed,
    EventKind.SUBSCRIPTION_DELETED: _project_subscription_deleted,
    EventKind.PAYMENT_SUCCEEDED: _project_payment_succeeded,
    EventKind.PAYMENT_FAILED: _project_payment_failed,
    EventKind.INVOICE_UNCOLLECTIBLE: _project_invoice_uncollectible,
}

# Kinds whose subscription_status comes from the payload; applied in `created` order
_ORDERED_KINDS = (
    EventKind.SUBSCRIPTION_CREATED,
    EventKind.SUBSCRIPTION_UPDATED,
    EventKind.SUBSCRIPTION_DELETED,
    EventKind.PAYMENT_FAILED,
)


# --- Enhanced status persistence ---

def get_enhanced_status(db: Session, owner_id: str) -> EnhancedSubscriptionStatus | None:
    return db.query(EnhancedSubscriptionStatus).filter(
        EnhancedSubscriptionStatus.owner_id == owner_id
    ).first()


def upsert_enhanced_status(
    db: Session,
    owner_id: str,
    metadata: dict | None = None,
    **fields,
) -> EnhancedSubscriptionStatus:
    """Get-or-create the owner's status row and apply ``fields``.

    Metadata is merged into the stored map. The caller commits.
    """
    status = get_enhanced_status(db, owner_id)
    if status is None:
        status = EnhancedSubscriptionStatus(
            owner_id=owner_id,
            subscription_metadata={},
            retry_count=0,
        )
        db.add(status)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent writer created the row first; use theirs
            db.rollback()
            status = get_enhanced_status(db, owner_id)
            if status is None:
                raise

    for name, value in fields.items():
        setattr(status, name, value)
    if metadata:
        status.subscription_metadata = merge_metadata(status.subscription_metadata, metadata)
    return status


def apply_snapshot(
    db: Session,
    owner_id: str,
    snapshot: SubscriptionSnapshot,
    source: str,
    now: datetime | None = None,
) -> EnhancedSubscriptionStatus:
    """Project a full provider/local snapshot and mark the owner synced."""
    now = now or datetime.utcnow()
    status = upsert_enhanced_status(
        db,
        owner_id,
        metadata={
            "plan_id": snapshot.plan_id,
            "current_period_end": _iso(snapshot.current_period_end),
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "sync_source": source,
            "sync_timestamp": now.isoformat(),
        },
        subscription_status=_coerce_subscription_status(snapshot.status),
        external_subscription_id=snapshot.external_subscription_id,
        payment_method_status=snapshot.payment_method_status,
        sync_status=SyncStatus.SYNCED.value,
        last_sync_at=now,
        retry_count=0,
    )
    db.commit()
    return status


def resolve_owner_id(db: Session, event: WebhookEvent) -> str | None:
    """Owner for an event: recorded owner, payload metadata, then local lookup."""
    if event.owner_id:
        return event.owner_id

    payload = event.payload or {}
    owner_id = extract_owner_id(payload)
    if owner_id:
        return owner_id

    obj = event_object(payload)
    subscription_id = _invoice_subscription_id(obj)
    if not subscription_id and obj.get("object") == "subscription":
        subscription_id = obj.get("id")
    if subscription_id:
        sub = db.query(UserSubscription).filter(
            UserSubscription.external_subscription_id == subscription_id
        ).first()
        if sub:
            return sub.owner_id

    customer_id = obj.get("customer")
    if isinstance(customer_id, dict):
        customer_id = customer_id.get("id")
    if customer_id:
        sub = db.query(UserSubscription).filter(
            UserSubscription.stripe_customer_id == customer_id
        ).first()
        if sub:
            return sub.owner_id

    return None


def _is_stale(status: EnhancedSubscriptionStatus | None, event_created) -> bool:
    """True when a newer status-changing event has already been applied."""
    if status is None or not event_created:
        return False
    last_created = (status.subscription_metadata or {}).get("last_event_created")
    return bool(last_created) and last_created > event_created


def _seed_from_provider(projection: Projection, fetch: FetchSubscription, provider_event_id: str) -> None:
    """Fill in the subscription status for an owner's first status row.

    Invoice events carry no subscription status; the row must not start
    from a guessed one.
    """
    subscription_id = projection.fields.get("external_subscription_id")
    if not subscription_id:
        raise ProjectionError(
            f"Event {provider_event_id} has no subscription status or subscription to look it up from"
        )
    snapshot = fetch(subscription_id)
    projection.fields["subscription_status"] = _coerce_subscription_status(snapshot.status)
    projection.fields["external_subscription_id"] = snapshot.external_subscription_id
    projection.metadata.setdefault("plan_id", snapshot.plan_id)
    projection.metadata.setdefault("current_period_end", _iso(snapshot.current_period_end))
    projection.metadata.setdefault("cancel_at_period_end", snapshot.cancel_at_period_end)


def _apply_projection(
    db: Session,
    owner_id: str,
    projection: Projection,
    kind: EventKind,
    provider_event_id: str,
    event_created,
    now: datetime,
) -> EnhancedSubscriptionStatus:
    metadata = dict(projection.metadata)
    metadata.update({
        "last_event_id": provider_event_id,
        "last_event_type": kind.value,
        "sync_source": "webhook",
    })
    if kind in _ORDERED_KINDS and event_created:
        metadata["last_event_created"] = event_created

    fields = dict(projection.fields)
    fields["last_sync_at"] = now
    if projection.terminal_error:
        fields["sync_status"] = SyncStatus.FAILED.value
    else:
        fields["sync_status"] = SyncStatus.SYNCED.value
        fields["retry_count"] = 0

    status = upsert_enhanced_status(db, owner_id, metadata=metadata, **fields)
    if projection.terminal_error:
        status.subscription_metadata = append_error_context(status.subscription_metadata, {
            "event_id": provider_event_id,
            "event_type": kind.value,
            "error": projection.terminal_error,
            "at": now.isoformat(),
        })
    return status


def _record_retry_needed(db: Session, owner_id: str, error: str, now: datetime) -> None:
    """Flag the owner's status for retry; retry_count is the scheduler's."""
    try:
        upsert_enhanced_status(
            db,
            owner_id,
            metadata={"last_error": error, "error_timestamp": now.isoformat()},
            sync_status=SyncStatus.RETRY_NEEDED.value,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to flag owner %s for sync retry", owner_id)


def project(
    db: Session,
    event: WebhookEvent,
    fetch_subscription: FetchSubscription | None = None,
    now: datetime | None = None,
) -> ProjectionResult:
    """Apply one recorded event to its owner's enhanced status.

    Success marks the event ``processed`` (or ``skipped``); any failure is
    recorded on the event as ``failed`` with structured error details and
    flags the owner ``retry_needed``. Never raises.
    """
    now = now or datetime.utcnow()
    fetch = fetch_subscription or stripe_service.fetch_subscription

    event_id = event.id
    provider_event_id = event.provider_event_id
    attempt = (event.retry_count or 0) + 1
    kind = EventKind.from_event_type(event.event_type)

    if kind is EventKind.UNKNOWN:
        logger.info("Unhandled webhook event type: %s (id: %s)", event.event_type, provider_event_id)
        update_event_status(db, event_id, ProcessingStatus.SKIPPED, now=now)
        return ProjectionResult(success=True, skipped=True)

    owner_id = None
    try:
        owner_id = resolve_owner_id(db, event)
        if owner_id is None:
            raise OwnerNotResolvedError(f"No owner found for event {provider_event_id}")

        payload = event.payload or {}
        projection = _HANDLERS[kind](event_object(payload), fetch)
        current = get_enhanced_status(db, owner_id)
        if projection.skip_reason is None and kind in _ORDERED_KINDS:
            if _is_stale(current, payload.get("created")):
                projection.skip_reason = "stale event; a newer one was already applied"

        if projection.skip_reason:
            logger.info("Skipping webhook event %s: %s", provider_event_id, projection.skip_reason)
            update_event_status(db, event_id, ProcessingStatus.SKIPPED, now=now)
            return ProjectionResult(success=True, skipped=True)

        if current is None and "subscription_status" not in projection.fields:
            _seed_from_provider(projection, fetch, provider_event_id)

        status = _apply_projection(
            db, owner_id, projection, kind, provider_event_id, payload.get("created"), now,
        )
        db.commit()
        new_status = status.subscription_status
        sync_status = status.sync_status
    except Exception as exc:
        db.rollback()
        logger.exception("Projection failed for webhook event %s (%s)", provider_event_id, kind.value)
        error = str(exc) or type(exc).__name__
        update_event_status(
            db,
            event_id,
            ProcessingStatus.FAILED,
            error_details={
                "error": error,
                "type": type(exc).__name__,
                "at": now.isoformat(),
                "attempt": attempt,
            },
            now=now,
        )
        if owner_id:
            _record_retry_needed(db, owner_id, error, now)
        return ProjectionResult(success=False, sync_status=SyncStatus.RETRY_NEEDED.value, error=error)

    if not update_event_status(db, event_id, ProcessingStatus.PROCESSED, now=now):
        logger.info("Webhook event %s was already settled by another worker", provider_event_id)

    logger.info(
        "Projected webhook event %s (%s) for owner %s: %s/%s",
        provider_event_id, kind.value, owner_id, new_status, sync_status,
    )
    return ProjectionResult(success=True, new_status=new_status, sync_status=sync_status)
