"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "revenue_recovery",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,  # אצוות dunning מלאה עלולה להמתין ל-gateway
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-webhook-events-every-15-seconds": {
        "task": "app.workers.tasks.process_webhook_events",
        "schedule": 15.0,
    },
    "recover-stale-webhook-events-every-5-minutes": {
        "task": "app.workers.tasks.recover_stale_webhook_events",
        "schedule": 300.0,
    },
    "process-dunning-events-hourly": {
        "task": "app.workers.tasks.process_dunning_events",
        "schedule": 3600.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-idempotency-keys-daily": {
        "task": "app.workers.tasks.cleanup_idempotency_keys",
        "schedule": 86400.0,
    },
}
