"""Sync operations endpoints: metrics, event inspection, consistency and repair.

All routes require the X-Admin-Key header.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from subsync.api.admin_auth import require_admin_key
from subsync.config.settings import get_settings
from subsync.database.db import get_db
from subsync.database.models import UserSubscription, WebhookEvent
from subsync.services.event_store import (
    get_event_stats,
    get_events_for_retry,
    get_user_recent_events,
)
from subsync.services.reconciler import (
    RepairPolicy,
    reconcile_all,
    resync_owner,
    validate_consistency,
)
from subsync.services.retry_policy import event_retry_policy
from subsync.services.status_projector import get_enhanced_status
from subsync.services.sync_health import describe_outcome, find_stuck, get_sync_metrics, is_sync_healthy

sync_router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    dependencies=[Depends(require_admin_key)],
)


# --- Response Models ---

class SyncMetricsResponse(BaseModel):
    total: int
    synced: int
    pending: int
    failed: int
    retry_needed: int
    healthy_percentage: float
    stuck_owners: list[str]


class EventStatsResponse(BaseModel):
    total: int
    pending: int
    processed: int
    failed: int
    skipped: int
    success_rate: float
    failure_rate: float
    avg_retry_count: float
    exhausted: int


class EventResponse(BaseModel):
    id: str
    provider_event_id: str
    event_type: str
    processing_status: str
    retry_count: int
    owner_id: str | None
    error_details: dict | None
    processed_at: str | None
    created_at: str
    updated_at: str


class ConsistencyResponse(BaseModel):
    owner_id: str
    is_consistent: bool
    issues: list[str]
    sync_status: str | None
    is_healthy: bool
    outcome: str
    message: str


class ResyncRequest(BaseModel):
    policy: RepairPolicy | None = None


class ResyncResponse(BaseModel):
    owner_id: str
    success: bool
    sync_status: str
    outcome: str
    message: str
    can_retry: bool
    last_sync_at: str


class ReconcileRequest(BaseModel):
    policy: RepairPolicy | None = None
    batch_size: int | None = None


class ReconcileResponse(BaseModel):
    checked: int
    inconsistent: int
    repaired: int
    orphaned: int
    failed: int
    interrupted: bool


# --- Endpoints ---

@sync_router.get("/metrics", response_model=SyncMetricsResponse)
def sync_metrics(db: Session = Depends(get_db)):
    """Sync status counts across all owners."""
    metrics = get_sync_metrics(db)
    stuck = find_stuck(db)
    return SyncMetricsResponse(
        total=metrics.total,
        synced=metrics.synced,
        pending=metrics.pending,
        failed=metrics.failed,
        retry_needed=metrics.retry_needed,
        healthy_percentage=metrics.healthy_percentage,
        stuck_owners=[s.owner_id for s in stuck],
    )


@sync_router.get("/events/stats", response_model=EventStatsResponse)
def event_stats(
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    db: Session = Depends(get_db),
):
    """Webhook processing statistics, optionally within a created_at range."""
    stats = get_event_stats(db, from_date=from_date, to_date=to_date)
    return EventStatsResponse(**stats.__dict__)


@sync_router.get("/events/retry", response_model=list[EventResponse])
def events_due_for_retry(db: Session = Depends(get_db)):
    """Failed events the next retry sweep would pick up."""
    settings = get_settings()
    events = get_events_for_retry(
        db,
        max_retry_count=settings.event_retry_max_retries,
        retry_delay_minutes=settings.event_retry_delay_minutes,
        policy=event_retry_policy(settings),
    )
    return [_event_response(e) for e in events]


@sync_router.get("/events/owner/{owner_id}", response_model=list[EventResponse])
def owner_events(
    owner_id: str,
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Most recent events recorded for one owner."""
    return [_event_response(e) for e in get_user_recent_events(db, owner_id, limit=limit)]


@sync_router.get("/owners/{owner_id}/consistency", response_model=ConsistencyResponse)
def owner_consistency(owner_id: str, db: Session = Depends(get_db)):
    """Compare the owner's subscription record with its projected status."""
    subscription = db.query(UserSubscription).filter(UserSubscription.owner_id == owner_id).first()
    status = get_enhanced_status(db, owner_id)
    if subscription is None and status is None:
        raise HTTPException(status_code=404, detail="Owner not found")

    report = validate_consistency(subscription, status)
    outcome = describe_outcome(status)
    return ConsistencyResponse(
        owner_id=owner_id,
        is_consistent=report.is_consistent,
        issues=report.issues,
        sync_status=status.sync_status if status else None,
        is_healthy=is_sync_healthy(status),
        outcome=outcome.outcome.value,
        message=outcome.message,
    )


@sync_router.post("/owners/{owner_id}/resync", response_model=ResyncResponse)
def resync(owner_id: str, req: ResyncRequest | None = None, db: Session = Depends(get_db)):
    """Re-project one owner's status now (manual sync)."""
    result = resync_owner(db, owner_id, policy=req.policy if req else None)
    if result.result == "not_found":
        raise HTTPException(status_code=404, detail="Owner not found")

    # Provider errors stay in the logs
    outcome = describe_outcome(get_enhanced_status(db, owner_id))
    return ResyncResponse(
        owner_id=owner_id,
        success=result.success,
        sync_status=result.sync_status,
        outcome=outcome.outcome.value,
        message=outcome.message,
        can_retry=outcome.can_retry,
        last_sync_at=result.last_sync_at.isoformat(),
    )


@sync_router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(req: ReconcileRequest | None = None, db: Session = Depends(get_db)):
    """Run a reconciliation sweep inline."""
    req = req or ReconcileRequest()
    sweep = reconcile_all(db, batch_size=req.batch_size, policy=req.policy)
    return ReconcileResponse(**sweep.__dict__)


def _event_response(event: WebhookEvent) -> EventResponse:
    return EventResponse(
        id=event.id,
        provider_event_id=event.provider_event_id,
        event_type=event.event_type,
        processing_status=event.processing_status,
        retry_count=event.retry_count or 0,
        owner_id=event.owner_id,
        error_details=event.error_details,
        processed_at=event.processed_at.isoformat() if event.processed_at else None,
        created_at=event.created_at.isoformat(),
        updated_at=event.updated_at.isoformat(),
    )
