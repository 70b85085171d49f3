"""Repository for transcode job database operations."""

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.database import utc_now
from media_pipeline.modules.transcoding.models import (
    ACTIVE_STATUSES,
    JobStatus,
    TranscodeJob,
    TranscodeJobEvent,
    validate_transition,
)


class StaleJobStateError(Exception):
    """Raised when a job's stored status changed under a pending transition."""

    def __init__(self, job_id: uuid.UUID, expected: JobStatus):
        super().__init__(f"Transcode job {job_id} is no longer {expected.value}")
        self.job_id = job_id
        self.expected = expected


class TranscodeJobRepository:
    """Repository for TranscodeJob operations."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.session = session
        self._clock = clock

    async def create(self, asset_id: uuid.UUID, requested_ladder: list[str]) -> TranscodeJob:
        """Create a QUEUED job and record its first event.

        Args:
            asset_id: Asset to encode
            requested_ladder: Quality ids to produce

        Returns:
            Created TranscodeJob
        """
        now = self._clock()
        job = TranscodeJob(
            asset_id=asset_id,
            requested_ladder=list(requested_ladder),
            status=JobStatus.QUEUED,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(job)
        await self.session.flush()

        self.session.add(TranscodeJobEvent(
            job_id=job.id,
            sequence=1,
            from_status=None,
            to_status=JobStatus.QUEUED,
            occurred_at=now,
        ))
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: uuid.UUID) -> Optional[TranscodeJob]:
        """Get a transcode job by ID."""
        result = await self.session.execute(
            select(TranscodeJob).where(TranscodeJob.id == job_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_job_id: str) -> Optional[TranscodeJob]:
        result = await self.session.execute(
            select(TranscodeJob).where(TranscodeJob.external_job_id == external_job_id)
        )
        return result.scalar_one_or_none()

    async def get_active_for_asset(self, asset_id: uuid.UUID) -> Optional[TranscodeJob]:
        """The newest non-terminal job for an asset, if any."""
        result = await self.session.execute(
            select(TranscodeJob)
            .where(
                TranscodeJob.asset_id == asset_id,
                TranscodeJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(TranscodeJob.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_for_asset(self, asset_id: uuid.UUID) -> list[TranscodeJob]:
        result = await self.session.execute(
            select(TranscodeJob)
            .where(TranscodeJob.asset_id == asset_id)
            .order_by(TranscodeJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_pollable_jobs(self, limit: int = 100) -> list[TranscodeJob]:
        """Jobs the external service is working on, oldest first."""
        result = await self.session.execute(
            select(TranscodeJob)
            .where(TranscodeJob.status.in_((JobStatus.SUBMITTED, JobStatus.PROCESSING)))
            .order_by(TranscodeJob.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stale_jobs(self, created_before: datetime, limit: int = 100) -> list[TranscodeJob]:
        """Non-terminal jobs created before the cutoff."""
        result = await self.session.execute(
            select(TranscodeJob)
            .where(
                TranscodeJob.status.in_(ACTIVE_STATUSES),
                TranscodeJob.created_at < created_before,
            )
            .order_by(TranscodeJob.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_attempt(self, job: TranscodeJob, error: Optional[str] = None) -> None:
        """Count one submission attempt."""
        job.attempts = (job.attempts or 0) + 1
        if error is not None:
            job.last_error = error
        job.updated_at = self._clock()
        await self.session.flush()

    async def transition(
        self,
        job: TranscodeJob,
        target: JobStatus,
        *,
        detail: Optional[str] = None,
        **fields: Any,
    ) -> TranscodeJob:
        """Move a job to a new status.

        The write is a compare-and-set on the status the caller last saw, so
        a concurrent writer that got there first makes this call fail rather
        than be overwritten.

        Args:
            job: Job as last loaded
            target: New status
            detail: Free-form note stored on the event
            **fields: Extra columns to set in the same write

        Raises:
            InvalidTransitionError: if the table forbids the change
            StaleJobStateError: if the stored status no longer matches
        """
        current = job.status
        validate_transition(current, target)

        now = self._clock()
        values = dict(fields)
        values["status"] = target
        values["updated_at"] = now

        result = await self.session.execute(
            update(TranscodeJob)
            .where(TranscodeJob.id == job.id, TranscodeJob.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleJobStateError(job.id, current)

        sequence = await self.session.scalar(
            select(func.coalesce(func.max(TranscodeJobEvent.sequence), 0))
            .where(TranscodeJobEvent.job_id == job.id)
        )
        self.session.add(TranscodeJobEvent(
            job_id=job.id,
            sequence=sequence + 1,
            from_status=current,
            to_status=target,
            detail=detail,
            occurred_at=now,
        ))
        await self.session.flush()
        await self.session.refresh(job)
        return job

    async def get_events(self, job_id: uuid.UUID) -> list[TranscodeJobEvent]:
        result = await self.session.execute(
            select(TranscodeJobEvent)
            .where(TranscodeJobEvent.job_id == job_id)
            .order_by(TranscodeJobEvent.sequence)
        )
        return list(result.scalars().all())
