"""Transcode orchestration.

Owns the life of a transcode job: submission to the external encoder with
bounded retries, status polling, push notifications, rendition registration
and the timeout watchdog. All status changes go through the transition table
in models.py. Within a process, calls for one job are serialized by a
per-job lock. Across processes, every status write is a compare-and-set and
renditions are registered only by the worker whose COMPLETE write landed.
"""

import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.config import Settings, settings as default_settings
from media_pipeline.core.database import utc_now
from media_pipeline.core.logging import log_error, log_info, log_warning
from media_pipeline.core.metrics import (
    RENDITIONS_REGISTERED_TOTAL,
    TRANSCODE_JOBS_TOTAL,
    TRANSCODE_SUBMIT_ATTEMPTS_TOTAL,
)
from media_pipeline.core.retry import RetryConfig, get_retry_config
from media_pipeline.modules.ladder import UnknownQualityError, find_quality, qualities_for
from media_pipeline.modules.manifest import asset_base_key
from media_pipeline.modules.media.repository import AssetRepository, RenditionRepository
from media_pipeline.modules.media.service import AssetNotFoundError
from media_pipeline.modules.transcoding.client import (
    ExternalJobState,
    ExternalJobStatus,
    JobDescription,
    TranscoderClient,
    TranscoderRejectedError,
    TranscoderTransportError,
)
from media_pipeline.modules.transcoding.models import JobStatus, TranscodeJob, transition_path
from media_pipeline.modules.transcoding.repository import StaleJobStateError, TranscodeJobRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TranscodeServiceError(Exception):
    """Base exception for transcode orchestration errors."""
    pass


class JobNotFoundError(TranscodeServiceError):
    """Raised when a transcode job does not exist."""
    pass


class InvalidLadderError(TranscodeServiceError):
    """Raised when a requested ladder is empty or names unknown qualities."""
    pass


class SubmissionFailed(TranscodeServiceError):
    """Raised when every submission attempt hit a transport failure."""

    def __init__(self, job_id: uuid.UUID, attempts: int, message: str):
        super().__init__(f"Submission of job {job_id} failed after {attempts} attempt(s): {message}")
        self.job_id = job_id
        self.attempts = attempts


class ExternalJobRejected(TranscodeServiceError):
    """Raised when the encoder definitively refused a job."""

    def __init__(self, job_id: uuid.UUID, message: str):
        super().__init__(f"Job {job_id} rejected by transcoder: {message}")
        self.job_id = job_id


class PollTransportError(TranscodeServiceError):
    """Raised when status could not be fetched; the job is left as it was."""

    def __init__(self, job_id: uuid.UUID, message: str):
        super().__init__(f"Could not fetch status for job {job_id}: {message}")
        self.job_id = job_id


class TranscodeOrchestrator:
    """Drives transcode jobs from submission to a terminal status.

    Args:
        session_factory: Opens a database session per operation
        transcoder: External encoder client
        submit_retry: Retry policy for submission transport failures
        poll_retry: Retry policy for status fetches
        call_timeout: Seconds allowed for a single transcoder call
        job_timeout_seconds: Age after which a non-terminal job is failed
        default_ladder: Quality ids used when a submit names none
        clock: Returns naive UTC now
        sleep: Awaited between retries
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        transcoder: TranscoderClient,
        *,
        submit_retry: Optional[RetryConfig] = None,
        poll_retry: Optional[RetryConfig] = None,
        call_timeout: float = 15.0,
        job_timeout_seconds: int = 21600,
        default_ladder: Optional[Sequence[str]] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.transcoder = transcoder
        self.submit_retry = submit_retry or get_retry_config("transcode_submit")
        self.poll_retry = poll_retry or get_retry_config("transcode_poll")
        self.call_timeout = call_timeout
        self.job_timeout = timedelta(seconds=job_timeout_seconds)
        self.default_ladder = list(default_ladder or default_settings.default_ladder)
        self._clock = clock
        self._sleep = sleep
        # A lock lives only while some call holds or awaits it
        self._asset_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()
        self._job_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def _jobs(self, session: AsyncSession) -> TranscodeJobRepository:
        return TranscodeJobRepository(session, clock=self._clock)

    @staticmethod
    def _lock(locks: weakref.WeakValueDictionary, key: uuid.UUID) -> asyncio.Lock:
        lock = locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def resolve_ladder(self, ladder: Optional[Sequence[str]] = None) -> list[str]:
        """Validate a requested ladder and return its ids in registry order.

        Raises:
            InvalidLadderError: if the ladder is empty or has unknown ids
        """
        requested = list(ladder) if ladder is not None else self.default_ladder
        if not requested:
            raise InvalidLadderError("Requested ladder is empty")
        try:
            return [q.id for q in qualities_for(requested)]
        except UnknownQualityError as e:
            raise InvalidLadderError(f"Unknown quality id: {e.args[0]}") from None

    async def submit(self, asset_id: uuid.UUID, ladder: Optional[Sequence[str]] = None) -> TranscodeJob:
        """Create and submit a transcode job for an asset.

        A second submit for an asset that already has a non-terminal job
        returns that job instead of starting another one.

        Raises:
            InvalidLadderError: if the ladder is empty or has unknown ids
            AssetNotFoundError: if the asset does not exist
            SubmissionFailed: if every attempt hit a transport failure; the job is FAILED
            ExternalJobRejected: if the encoder refused the job; the job is FAILED
        """
        ladder_ids = self.resolve_ladder(ladder)

        async with self._lock(self._asset_locks, asset_id):
            async with self.session_factory() as session:
                asset = await AssetRepository(session).get_by_id(asset_id)
                if asset is None:
                    raise AssetNotFoundError(f"Asset {asset_id} not found")

                jobs = self._jobs(session)
                active = await jobs.get_active_for_asset(asset_id)
                if active is not None:
                    log_info(
                        logger,
                        "Transcode already in progress, reusing job",
                        asset_id=str(asset_id),
                        job_id=str(active.id),
                        status=active.status.value,
                    )
                    return active

                job = await jobs.create(asset_id, ladder_ids)
                await session.commit()
                TRANSCODE_JOBS_TOTAL.labels(status=JobStatus.QUEUED.value).inc()
                log_info(logger, "Transcode job queued", asset_id=str(asset_id), job_id=str(job.id), ladder=ladder_ids)

                description = JobDescription(
                    input_key=asset.source_key,
                    output_prefix=asset_base_key(asset.source_key),
                    requested_qualities=tuple(ladder_ids),
                )
                async with self._lock(self._job_locks, job.id):
                    return await self._submit_with_retry(session, job, description)

    async def _submit_with_retry(
        self,
        session: AsyncSession,
        job: TranscodeJob,
        description: JobDescription,
    ) -> TranscodeJob:
        jobs = self._jobs(session)
        attempt = 0
        while True:
            attempt += 1
            try:
                external_job_id = await self._call(self.transcoder.submit(description))
            except TranscoderTransportError as e:
                TRANSCODE_SUBMIT_ATTEMPTS_TOTAL.labels(outcome="transport_error").inc()
                await jobs.record_attempt(job, error=str(e))
                await session.commit()

                if self.submit_retry.should_retry(attempt):
                    delay = self.submit_retry.calculate_delay(attempt)
                    log_warning(
                        logger,
                        "Transcode submission failed, retrying",
                        job_id=str(job.id),
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await self._sleep(delay)
                    continue

                await self._advance(session, job, JobStatus.FAILED, detail="submission retries exhausted", last_error=str(e))
                await session.commit()
                raise SubmissionFailed(job.id, attempt, str(e)) from e
            except TranscoderRejectedError as e:
                TRANSCODE_SUBMIT_ATTEMPTS_TOTAL.labels(outcome="rejected").inc()
                await jobs.record_attempt(job, error=str(e))
                await self._advance(session, job, JobStatus.FAILED, detail="rejected by transcoder", last_error=str(e))
                await session.commit()
                raise ExternalJobRejected(job.id, str(e)) from e

            TRANSCODE_SUBMIT_ATTEMPTS_TOTAL.labels(outcome="success").inc()
            await jobs.record_attempt(job)
            await self._advance(
                session,
                job,
                JobStatus.SUBMITTED,
                detail=f"external job {external_job_id}",
                external_job_id=external_job_id,
                submitted_at=self._clock(),
            )
            await session.commit()
            return job

    # ------------------------------------------------------------------
    # Status tracking
    # ------------------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> TranscodeJob:
        async with self.session_factory() as session:
            job = await self._jobs(session).get_by_id(job_id)
            if job is None:
                raise JobNotFoundError(f"Transcode job {job_id} not found")
            return job

    async def poll(self, job_id: uuid.UUID) -> TranscodeJob:
        """Fetch the external status of a job and apply it.

        Polling a terminal job is a no-op. A job past its deadline is
        failed without contacting the encoder.

        Raises:
            JobNotFoundError: if the job does not exist
            PollTransportError: if the status could not be fetched; nothing changes
        """
        async with self._lock(self._job_locks, job_id):
            async with self.session_factory() as session:
                jobs = self._jobs(session)
                job = await jobs.get_by_id(job_id)
                if job is None:
                    raise JobNotFoundError(f"Transcode job {job_id} not found")

                if job.status.is_terminal:
                    return job
                if self._is_overdue(job):
                    return await self._expire(session, job)
                if job.status is JobStatus.QUEUED:
                    return job

                status = await self._fetch_status(job)
                return await self._apply_guarded(session, job, status)

    async def handle_notification(self, external_job_id: str, status: ExternalJobStatus) -> TranscodeJob:
        """Apply a status pushed by the encoder.

        Raises:
            JobNotFoundError: if no job has this external id
        """
        async with self.session_factory() as session:
            job = await self._jobs(session).get_by_external_id(external_job_id)
            if job is None:
                raise JobNotFoundError(f"No transcode job for external id {external_job_id}")
            job_id = job.id

        async with self._lock(self._job_locks, job_id):
            async with self.session_factory() as session:
                job = await self._jobs(session).get_by_id(job_id)
                if job.status.is_terminal:
                    log_info(logger, "Ignoring notification for finished job", job_id=str(job_id), state=status.state.value)
                    return job
                return await self._apply_guarded(session, job, status)

    async def _fetch_status(self, job: TranscodeJob) -> ExternalJobStatus:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call(self.transcoder.get_status(job.external_job_id))
            except TranscoderRejectedError as e:
                return ExternalJobStatus(state=ExternalJobState.ERROR, error_message=str(e))
            except TranscoderTransportError as e:
                if self.poll_retry.should_retry(attempt):
                    await self._sleep(self.poll_retry.calculate_delay(attempt))
                    continue
                log_warning(logger, "Transcode status fetch failed", job_id=str(job.id), attempts=attempt, error=str(e))
                raise PollTransportError(job.id, str(e)) from e

    async def _apply_guarded(
        self,
        session: AsyncSession,
        job: TranscodeJob,
        status: ExternalJobStatus,
    ) -> TranscodeJob:
        job_id = job.id
        try:
            await self._apply_status(session, job, status)
            await session.commit()
        except StaleJobStateError:
            # Another worker moved the job first; its write stands.
            await session.rollback()
            log_warning(logger, "Transcode job changed concurrently", job_id=str(job_id))
            job = await self._jobs(session).get_by_id(job_id)
        return job

    async def _apply_status(self, session: AsyncSession, job: TranscodeJob, status: ExternalJobStatus) -> None:
        if status.state is ExternalJobState.IN_PROGRESS:
            if job.status is JobStatus.SUBMITTED:
                await self._advance(session, job, JobStatus.PROCESSING, detail="encoder reports progress")
            return

        if status.state is ExternalJobState.SUCCESS:
            # The COMPLETE compare-and-set claims the job, so only the worker
            # that wins it registers renditions.
            await self._advance(session, job, JobStatus.COMPLETE, detail="encoder finished", completed_at=self._clock())
            await self._register_outputs(session, job, status)
            return

        message = status.error_message or f"encoder reported {status.state.value}"
        await self._advance(session, job, JobStatus.FAILED, detail=message, last_error=message, completed_at=self._clock())

    async def _register_outputs(self, session: AsyncSession, job: TranscodeJob, status: ExternalJobStatus) -> None:
        renditions = RenditionRepository(session)
        requested = set(job.requested_ladder or [])
        for output in status.outputs:
            if output.quality_id not in requested or find_quality(output.quality_id) is None:
                log_warning(
                    logger,
                    "Ignoring unexpected transcode output",
                    job_id=str(job.id),
                    quality_id=output.quality_id,
                )
                continue
            try:
                _, changed = await renditions.register_ready(
                    job.asset_id,
                    output.quality_id,
                    output.output_key,
                    transcode_job_id=job.id,
                )
            except IntegrityError as e:
                raise StaleJobStateError(job.id, job.status) from e
            if changed:
                RENDITIONS_REGISTERED_TOTAL.labels(quality=output.quality_id).inc()
                log_info(
                    logger,
                    "Rendition ready",
                    asset_id=str(job.asset_id),
                    quality_id=output.quality_id,
                    storage_key=output.output_key,
                )

    async def _advance(self, session: AsyncSession, job: TranscodeJob, target: JobStatus, *, detail: Optional[str] = None, **fields) -> None:
        """Walk the job to target through legal steps; fields go on the last."""
        jobs = self._jobs(session)
        steps = transition_path(job.status, target)
        for index, step in enumerate(steps):
            previous = job.status
            extra = fields if index == len(steps) - 1 else {}
            await jobs.transition(job, step, detail=detail, **extra)
            TRANSCODE_JOBS_TOTAL.labels(status=step.value).inc()
            log_info(
                logger,
                "Transcode job transition",
                job_id=str(job.id),
                from_status=previous.value,
                to_status=step.value,
            )

    # ------------------------------------------------------------------
    # Watchdog and sweeps
    # ------------------------------------------------------------------

    def _is_overdue(self, job: TranscodeJob) -> bool:
        return job.created_at + self.job_timeout < self._clock()

    async def _expire(self, session: AsyncSession, job: TranscodeJob) -> TranscodeJob:
        message = f"Timed out after {int(self.job_timeout.total_seconds())}s in {job.status.value}"
        log_error(logger, "Transcode job timed out", job_id=str(job.id), status=job.status.value)
        return await self._apply_guarded_failure(session, job, message)

    async def _apply_guarded_failure(self, session: AsyncSession, job: TranscodeJob, message: str) -> TranscodeJob:
        job_id = job.id
        try:
            await self._advance(session, job, JobStatus.FAILED, detail=message, last_error=message, completed_at=self._clock())
            await session.commit()
        except StaleJobStateError:
            await session.rollback()
            job = await self._jobs(session).get_by_id(job_id)
        return job

    async def expire_stale_jobs(self, limit: int = 100) -> list[uuid.UUID]:
        """Fail every non-terminal job older than the job timeout.

        Renditions registered before the timeout are kept.

        Returns:
            IDs of the jobs that were failed
        """
        cutoff = self._clock() - self.job_timeout
        async with self.session_factory() as session:
            candidates = [job.id for job in await self._jobs(session).get_stale_jobs(cutoff, limit)]

        expired = []
        for job_id in candidates:
            async with self._lock(self._job_locks, job_id):
                async with self.session_factory() as session:
                    job = await self._jobs(session).get_by_id(job_id)
                    if job is None or job.status.is_terminal or not self._is_overdue(job):
                        continue
                    job = await self._expire(session, job)
                    if job.status is JobStatus.FAILED:
                        expired.append(job_id)
        return expired

    async def poll_active_jobs(self, limit: int = 100) -> dict[str, int]:
        """Poll every job the encoder is working on.

        Returns:
            Count of jobs per resulting status, plus transport errors
        """
        async with self.session_factory() as session:
            job_ids = [job.id for job in await self._jobs(session).get_pollable_jobs(limit)]

        summary: dict[str, int] = defaultdict(int)
        for job_id in job_ids:
            try:
                job = await self.poll(job_id)
            except PollTransportError:
                summary["transport_error"] += 1
                continue
            except JobNotFoundError:
                continue
            except SQLAlchemyError as e:
                log_error(logger, "Transcode poll failed", job_id=str(job_id), error=str(e))
                summary["error"] += 1
                continue
            summary[job.status.value] += 1
        return dict(summary)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise TranscoderTransportError(f"Transcoder call timed out after {self.call_timeout}s") from e


def build_orchestrator(
    session_factory: async_sessionmaker,
    transcoder: TranscoderClient,
    config: Optional[Settings] = None,
) -> TranscodeOrchestrator:
    """Construct the orchestrator from settings."""
    config = config or default_settings
    return TranscodeOrchestrator(
        session_factory,
        transcoder,
        submit_retry=get_retry_config("transcode_submit", config),
        poll_retry=get_retry_config("transcode_poll", config),
        call_timeout=config.TRANSCODER_CALL_TIMEOUT_SECONDS,
        job_timeout_seconds=config.TRANSCODE_JOB_TIMEOUT_SECONDS,
        default_ladder=config.default_ladder,
    )
