import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Integer, Boolean, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"
    RETRY_NEEDED = "retry_needed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


class PaymentMethodStatus(str, Enum):
    VALID = "valid"
    REQUIRES_ACTION = "requires_action"
    EXPIRED = "expired"
    DECLINED = "declined"


def new_event_id() -> str:
    return str(uuid.uuid4())


class UserSubscription(Base):
    """Canonical subscription record, owned by the billing CRUD layer.

    The sync engine only reads this table.
    """
    __tablename__ = "user_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="trialing")
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), index=True)
    plan_id: Mapped[str | None] = mapped_column(String(255))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class WebhookEvent(Base):
    """Every inbound Stripe notification, deduplicated on provider_event_id."""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_event_id)
    provider_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    processing_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, processed, failed, skipped
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    error_details: Mapped[dict | None] = mapped_column(JSON)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_webhook_events_status_retry", "processing_status", "retry_count"),
        Index("ix_webhook_events_owner_created", "owner_id", "created_at"),
    )


class EnhancedSubscriptionStatus(Base):
    """Projected sync state per owner: last applied status plus sync health."""
    __tablename__ = "subscription_enhanced_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    subscription_status: Mapped[str] = mapped_column(String(32), default="trialing")
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    subscription_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime)
    sync_status: Mapped[str] = mapped_column(String(20), default="pending")  # synced, pending, failed, retry_needed
    payment_method_status: Mapped[str] = mapped_column(String(20), default="valid")
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_enhanced_status_sync_status", "sync_status"),
    )
