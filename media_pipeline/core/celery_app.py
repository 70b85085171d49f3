"""Celery application configuration."""

from celery import Celery

from media_pipeline.core.config import settings

celery_app = Celery(
    "media_pipeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "poll-active-transcodes": {
            "task": "media_pipeline.modules.transcoding.tasks.poll_active_transcodes_task",
            "schedule": float(settings.TRANSCODE_POLL_INTERVAL_SECONDS),
        },
        "expire-stale-transcodes": {
            "task": "media_pipeline.modules.transcoding.tasks.expire_stale_transcodes_task",
            "schedule": 300.0,
        },
    },
)

celery_app.autodiscover_tasks(["media_pipeline.modules.transcoding"])
