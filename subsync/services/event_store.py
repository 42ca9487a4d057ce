"""Webhook event store and idempotency gate.

Every inbound Stripe notification is recorded once, keyed by the provider's
event ID. The unique constraint on ``provider_event_id`` is what makes
concurrent redelivery safe; the read before the insert is only a shortcut.

All status changes go through ``update_event_status``, which applies a
single conditional UPDATE (compare-and-swap on the observed status and
retry count) so concurrent workers cannot lose a retry increment.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from subsync.config.settings import get_settings
from subsync.database.models import WebhookEvent, ProcessingStatus, new_event_id

logger = logging.getLogger(__name__)

# Statuses a redelivered event must not be reprocessed from
_DONE_STATUSES = (ProcessingStatus.PROCESSED.value, ProcessingStatus.SKIPPED.value)

# Retry scans read this many batches per page while filtering on backoff
_SCAN_PAGE_FACTOR = 5

_ALLOWED_TRANSITIONS = {
    ProcessingStatus.PENDING.value: {
        ProcessingStatus.PROCESSED, ProcessingStatus.FAILED, ProcessingStatus.SKIPPED,
    },
    ProcessingStatus.FAILED.value: {
        ProcessingStatus.PROCESSED, ProcessingStatus.FAILED,
        ProcessingStatus.SKIPPED, ProcessingStatus.PENDING,
    },
    ProcessingStatus.PROCESSED.value: set(),
    ProcessingStatus.SKIPPED.value: set(),
}


@dataclass
class EventRecordResult:
    success: bool
    processing_status: str
    event_id: str | None = None
    is_duplicate: bool = False
    needs_processing: bool = False
    error: str | None = None


@dataclass
class EventStats:
    total: int = 0
    pending: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    success_rate: float = 0
    failure_rate: float = 0
    avg_retry_count: float = 0
    exhausted: int = 0


def get_event(db: Session, event_id: str) -> WebhookEvent | None:
    return db.get(WebhookEvent, event_id)


def get_event_by_provider_id(db: Session, provider_event_id: str) -> WebhookEvent | None:
    return db.query(WebhookEvent).filter(
        WebhookEvent.provider_event_id == provider_event_id
    ).first()


def record_event(
    db: Session,
    provider_event_id: str,
    event_type: str,
    payload: dict,
    owner_id: str | None = None,
) -> EventRecordResult:
    """Record an inbound notification, or report the existing record.

    Never raises: a storage failure comes back as ``success=False`` and the
    caller must not assume the event was stored.
    """
    try:
        existing = get_event_by_provider_id(db, provider_event_id)
        if existing is None:
            event_id = new_event_id()
            db.add(WebhookEvent(
                id=event_id,
                provider_event_id=provider_event_id,
                event_type=event_type,
                payload=payload or {},
                owner_id=owner_id,
                processing_status=ProcessingStatus.PENDING.value,
                retry_count=0,
            ))
            try:
                db.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent delivery of the same event
                db.rollback()
                existing = get_event_by_provider_id(db, provider_event_id)
                if existing is None:
                    raise
            else:
                logger.info("Recorded webhook event %s (%s) as %s", provider_event_id, event_type, event_id)
                return EventRecordResult(
                    success=True,
                    event_id=event_id,
                    is_duplicate=False,
                    needs_processing=True,
                    processing_status=ProcessingStatus.PENDING.value,
                )

        return _existing_event_result(db, existing, owner_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to record webhook event %s (%s)", provider_event_id, event_type)
        return EventRecordResult(
            success=False,
            error=str(exc),
            processing_status=ProcessingStatus.FAILED.value,
        )


def _existing_event_result(db: Session, event: WebhookEvent, owner_id: str | None) -> EventRecordResult:
    event_id = event.id
    status = event.processing_status

    if owner_id and event.owner_id is None:
        db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id, WebhookEvent.owner_id.is_(None))
            .values(owner_id=owner_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    if status in _DONE_STATUSES:
        logger.info("Duplicate webhook event %s (already %s)", event.provider_event_id, status)
        return EventRecordResult(
            success=True,
            event_id=event_id,
            is_duplicate=True,
            needs_processing=False,
            processing_status=status,
        )

    logger.info("Webhook event %s seen again while %s, resuming", event.provider_event_id, status)
    return EventRecordResult(
        success=True,
        event_id=event_id,
        is_duplicate=False,
        needs_processing=True,
        processing_status=status,
    )


def update_event_status(
    db: Session,
    event_id: str,
    status: ProcessingStatus | str,
    error_details: dict | None = None,
    now: datetime | None = None,
) -> bool:
    """Move an event to ``status`` in one conditional UPDATE.

    A transition into ``failed`` merges ``error_details`` and increments
    ``retry_count``. Returns False for unknown events, disallowed
    transitions, lost races and storage errors.
    """
    try:
        status = ProcessingStatus(status)
    except ValueError:
        logger.warning("Rejected unknown processing status %r for event %s", status, event_id)
        return False

    now = now or datetime.utcnow()
    try:
        event = get_event(db, event_id)
        if event is None:
            logger.warning("Cannot update status of unknown webhook event %s", event_id)
            return False

        observed_status = event.processing_status
        observed_retries = event.retry_count or 0
        if status not in _ALLOWED_TRANSITIONS.get(observed_status, set()):
            logger.warning(
                "Rejected transition %s -> %s for webhook event %s",
                observed_status, status.value, event_id,
            )
            return False

        values = {"processing_status": status.value, "updated_at": now}
        if status is ProcessingStatus.PROCESSED:
            values["processed_at"] = now
        if status is ProcessingStatus.FAILED:
            values["retry_count"] = observed_retries + 1
            if error_details is not None:
                values["error_details"] = {**(event.error_details or {}), **error_details}

        result = db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.processing_status == observed_status,
                WebhookEvent.retry_count == observed_retries,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.expire_all()

        if result.rowcount != 1:
            logger.warning("Concurrent update won for webhook event %s; %s not applied", event_id, status.value)
            return False
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update webhook event %s to %s", event_id, status.value)
        return False


def is_exhausted(event: WebhookEvent, max_retries: int) -> bool:
    """Failed for good: no further automatic retries."""
    return (
        event.processing_status == ProcessingStatus.FAILED.value
        and (event.retry_count or 0) >= max_retries
    )


def iter_in_pages(query, page_size: int):
    """Yield rows of an ordered ``query`` one LIMIT/OFFSET page at a time."""
    offset = 0
    while True:
        page = query.offset(offset).limit(page_size).all()
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


def get_events_for_retry(
    db: Session,
    max_retry_count: int = 3,
    retry_delay_minutes: int = 5,
    limit: int | None = None,
    now: datetime | None = None,
    policy=None,
) -> list[WebhookEvent]:
    """Failed events still under the retry bound, oldest attempt first.

    ``retry_delay_minutes`` is the minimum wait after any attempt. With a
    ``policy`` each candidate must also have waited out
    ``policy.next_delay(retry_count)`` since its last attempt.
    """
    settings = get_settings()
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=retry_delay_minutes)
    batch = min(limit or settings.retry_batch_size, settings.retry_batch_size)

    query = (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.processing_status == ProcessingStatus.FAILED.value,
            WebhookEvent.retry_count < max_retry_count,
            WebhookEvent.updated_at <= cutoff,
        )
        .order_by(WebhookEvent.updated_at.asc(), WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
    )
    try:
        if policy is None:
            return query.limit(batch).all()

        due = []
        for event in iter_in_pages(query, batch * _SCAN_PAGE_FACTOR):
            if policy.is_eligible(event.updated_at, event.retry_count or 0, now=now):
                due.append(event)
                if len(due) >= batch:
                    break
        return due
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to load webhook events for retry")
        return []


def get_event_stats(
    db: Session,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> EventStats:
    """Processing statistics over events created in [from_date, to_date]."""
    max_retries = get_settings().event_retry_max_retries

    query = db.query(WebhookEvent.processing_status, WebhookEvent.retry_count)
    if from_date:
        query = query.filter(WebhookEvent.created_at >= from_date)
    if to_date:
        query = query.filter(WebhookEvent.created_at <= to_date)

    try:
        rows = query.all()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to load webhook event stats")
        return EventStats()

    total = len(rows)
    counts = {s.value: 0 for s in ProcessingStatus}
    total_retries = 0
    exhausted = 0
    for status, retry_count in rows:
        counts[status] = counts.get(status, 0) + 1
        total_retries += retry_count or 0
        if status == ProcessingStatus.FAILED.value and (retry_count or 0) >= max_retries:
            exhausted += 1

    processed = counts[ProcessingStatus.PROCESSED.value]
    skipped = counts[ProcessingStatus.SKIPPED.value]
    failed = counts[ProcessingStatus.FAILED.value]

    success_rate = (processed + skipped) / total * 100 if total else 0
    failure_rate = failed / total * 100 if total else 0
    avg_retry_count = total_retries / total if total else 0

    return EventStats(
        total=total,
        pending=counts[ProcessingStatus.PENDING.value],
        processed=processed,
        failed=failed,
        skipped=skipped,
        success_rate=round(success_rate, 2),
        failure_rate=round(failure_rate, 2),
        avg_retry_count=round(avg_retry_count, 2),
        exhausted=exhausted,
    )


def get_user_recent_events(db: Session, owner_id: str, limit: int = 10) -> list[WebhookEvent]:
    """Most recent events for one owner, newest first (support/debugging)."""
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.owner_id == owner_id)
        .order_by(WebhookEvent.created_at.desc())
        .limit(limit)
        .all()
    )


def get_events_by_type(
    db: Session,
    event_type: str,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int | None = None,
) -> list[WebhookEvent]:
    query = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.event_type == event_type)
        .order_by(WebhookEvent.created_at.desc())
    )
    if from_date:
        query = query.filter(WebhookEvent.created_at >= from_date)
    if to_date:
        query = query.filter(WebhookEvent.created_at <= to_date)
    if limit:
        query = query.limit(limit)
    return query.all()
