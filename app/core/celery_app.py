"""Celery application configuration."""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_process_shutdown
from prometheus_client import multiprocess

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.metrics import is_multiprocess

TRANSCODING_QUEUE = "transcoding"

celery_app = Celery(
    "media_segmenter",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
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
    # One worker slot per allowed concurrent pipeline
    worker_concurrency=settings.MAX_CONCURRENT_TRANSCODES,
    task_routes={
        "app.modules.transcoding.tasks.*": {"queue": TRANSCODING_QUEUE},
    },
    beat_schedule={
        "resume-pending-pipelines": {
            "task": "app.modules.transcoding.tasks.resume_pending_pipelines_task",
            "schedule": float(settings.TRANSCODE_RECOVERY_INTERVAL_SECONDS),
        },
    },
)

celery_app.autodiscover_tasks(["app.modules.transcoding"])


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the application's structured logging inside Celery workers."""
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)


@worker_process_shutdown.connect
def release_worker_metrics(pid=None, **kwargs) -> None:
    """Drop live gauge values of an exiting prefork child."""
    if is_multiprocess() and pid is not None:
        multiprocess.mark_process_dead(pid)
