"""Celery application configuration.

Uses Redis as broker when configured, falls back to memory:// for local dev/tests.
"""

from celery import Celery
from celery.schedules import crontab

from subsync.config.settings import get_settings

settings = get_settings()

app = Celery(
    "subsync",
    include=["subsync.tasks.webhook_tasks", "subsync.tasks.sync_tasks"],
)

app.conf.update(
    broker_url=settings.effective_celery_broker,
    result_backend=settings.effective_celery_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "retry-failed-events": {
            "task": "subsync.tasks.webhook_tasks.retry_failed_events",
            "schedule": crontab(minute="*/5"),
        },
        "retry-subscription-syncs": {
            "task": "subsync.tasks.sync_tasks.retry_subscription_syncs",
            "schedule": crontab(minute="*/5"),
        },
        "reconcile-subscriptions": {
            "task": "subsync.tasks.sync_tasks.reconcile_subscriptions",
            "schedule": crontab(minute=15),  # Hourly
        },
        "report-sync-health": {
            "task": "subsync.tasks.sync_tasks.report_sync_health",
            "schedule": crontab(minute=45),  # Hourly
        },
    },
)
