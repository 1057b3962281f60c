from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "approval_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "app.workers.escalation_tasks",
        "app.workers.event_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "check-approval-timeouts-hourly": {
        "task": "app.workers.escalation_tasks.check_approval_timeouts",
        "schedule": crontab(minute=0),
    },
    "expire-delegations-daily": {
        "task": "app.workers.escalation_tasks.expire_delegations",
        "schedule": crontab(hour=0, minute=15),
    },
}
