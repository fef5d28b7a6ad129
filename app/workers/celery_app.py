"""
Celery application and beat schedule
"""
from celery import Celery

from app.core.config import settings

RECONCILE_TASK = "app.workers.tasks.reconcile_active_assignments"
CLEANUP_WEBHOOK_LOGS_TASK = "app.workers.tasks.cleanup_old_webhook_logs"

celery_app = Celery(
    "order_ops",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # a sweep polls the platform once per active assignment
    task_time_limit=600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
)

celery_app.conf.beat_schedule = {
    "reconcile-active-assignments": {
        "task": RECONCILE_TASK,
        "schedule": float(settings.RECONCILE_INTERVAL_SECONDS),
        # superseded by the next run rather than queued behind it
        "options": {"expires": settings.RECONCILE_INTERVAL_SECONDS},
    },
}

if settings.WEBHOOK_LOG_RETENTION_DAYS > 0:
    celery_app.conf.beat_schedule["cleanup-old-webhook-logs"] = {
        "task": CLEANUP_WEBHOOK_LOGS_TASK,
        "schedule": 86400.0,
    }
