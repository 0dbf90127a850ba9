"""Celery application: broker config and the periodic retry sweep."""

from celery import Celery

from relaycore.config import get_settings

settings = get_settings()

celery_app = Celery(
    "relaycore",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["relaycore.tasks.webhook_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "sweep-webhook-retries": {
            "task": "relaycore.tasks.webhook_tasks.sweep_webhook_retries",
            "schedule": float(settings.scheduler_poll_interval_seconds),
        },
    },
)
