"""Celery application configuration."""

from datetime import timedelta

from celery import Celery
from celery.signals import worker_init, worker_process_init

from lesson_media.core.config import settings

celery_app = Celery(
    "lesson_media",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "sweep-retention": {
            "task": "lesson_media.transcoding.sweep_retention",
            "schedule": timedelta(hours=settings.RETENTION_SWEEP_INTERVAL_HOURS),
        },
    },
)

celery_app.autodiscover_tasks(["lesson_media.modules.transcoding"])


@worker_process_init.connect
def configure_worker_process(**kwargs) -> None:
    """Set up logging in every worker process."""
    from lesson_media.core.logging import setup_logging

    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)


@worker_init.connect
def configure_worker(**kwargs) -> None:
    """Expose metrics once per worker node."""
    from lesson_media.core.metrics import set_app_info, start_metrics_server

    set_app_info(settings.VERSION, settings.ENVIRONMENT)
    if settings.METRICS_PORT:
        start_metrics_server(settings.METRICS_PORT)
