"""Celery tasks for transcode job tracking.

Beat runs the polling sweep and the watchdog; submit_transcode_task lets an
upload hand encoding off to a worker instead of waiting on the encoder.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from celery import Task

from media_pipeline.core.celery_app import celery_app
from media_pipeline.core.database import async_session_maker, engine
from media_pipeline.modules.transcoding.mediaconvert import build_transcoder
from media_pipeline.modules.transcoding.service import (
    ExternalJobRejected,
    PollTransportError,
    SubmissionFailed,
    TranscodeOrchestrator,
    build_orchestrator,
)

logger = logging.getLogger(__name__)


def _run(operation: Callable[[TranscodeOrchestrator], Awaitable[Any]]) -> Any:
    """Run an orchestrator coroutine on a fresh event loop."""

    async def runner():
        transcoder = build_transcoder()
        orchestrator = build_orchestrator(async_session_maker, transcoder)
        try:
            return await operation(orchestrator)
        finally:
            await transcoder.close()
            # Pooled connections belong to this loop
            await engine.dispose()

    return asyncio.run(runner())


class TranscodeTask(Task):
    """Base task for transcode operations."""
    abstract = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Transcode task failed",
            extra={"task_id": task_id, "task_name": self.name, "error": str(exc)},
        )


@celery_app.task(base=TranscodeTask)
def poll_active_transcodes_task(limit: int = 100) -> dict:
    """Poll every submitted or processing job once."""
    summary = _run(lambda orchestrator: orchestrator.poll_active_jobs(limit))
    logger.info("Polled active transcodes", extra={"summary": summary})
    return summary


@celery_app.task(base=TranscodeTask)
def expire_stale_transcodes_task(limit: int = 100) -> dict:
    """Fail jobs that have been running longer than the job timeout."""
    expired = _run(lambda orchestrator: orchestrator.expire_stale_jobs(limit))
    if expired:
        logger.warning("Expired stale transcodes", extra={"count": len(expired)})
    return {"expired": [str(job_id) for job_id in expired]}


@celery_app.task(base=TranscodeTask, bind=True, max_retries=3, default_retry_delay=30)
def poll_transcode_job_task(self: TranscodeTask, job_id: str) -> dict:
    """Poll one job; transport failures are retried by Celery."""
    try:
        job = _run(lambda orchestrator: orchestrator.poll(uuid.UUID(job_id)))
    except PollTransportError as e:
        raise self.retry(exc=e)
    return {"job_id": job_id, "status": job.status.value}


@celery_app.task(base=TranscodeTask)
def submit_transcode_task(asset_id: str, ladder: Optional[list[str]] = None) -> dict:
    """Submit an asset for encoding from a worker."""
    try:
        job = _run(lambda orchestrator: orchestrator.submit(uuid.UUID(asset_id), ladder))
    except (SubmissionFailed, ExternalJobRejected) as e:
        return {"asset_id": asset_id, "job_id": str(e.job_id), "status": "failed", "error": str(e)}
    return {"asset_id": asset_id, "job_id": str(job.id), "status": job.status.value}
