"""Transcode job API router."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.database import get_db
from media_pipeline.core.dependencies import get_orchestrator
from media_pipeline.modules.media.service import AssetNotFoundError
from media_pipeline.modules.transcoding.repository import TranscodeJobRepository
from media_pipeline.modules.transcoding.schemas import (
    PollSummaryResponse,
    TranscodeJobDetailResponse,
    TranscodeJobEventResponse,
    TranscodeJobResponse,
    TranscodeNotification,
    TranscodeSubmitRequest,
)
from media_pipeline.modules.transcoding.service import (
    ExternalJobRejected,
    InvalidLadderError,
    JobNotFoundError,
    PollTransportError,
    SubmissionFailed,
    TranscodeOrchestrator,
)

router = APIRouter(prefix="/transcode", tags=["transcode"])


@router.post("/notifications", response_model=TranscodeJobResponse)
async def receive_notification(
    notification: TranscodeNotification,
    orchestrator: TranscodeOrchestrator = Depends(get_orchestrator),
):
    """Status push from the transcoding service."""
    try:
        return await orchestrator.handle_notification(notification.external_job_id, notification.to_status())
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/sweep", response_model=PollSummaryResponse)
async def sweep_jobs(orchestrator: TranscodeOrchestrator = Depends(get_orchestrator)):
    """Poll all active jobs and fail the overdue ones."""
    expired = await orchestrator.expire_stale_jobs()
    by_status = await orchestrator.poll_active_jobs()
    return PollSummaryResponse(polled=sum(by_status.values()), by_status=by_status, expired=expired)


@router.post("/{asset_id}", response_model=TranscodeJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_transcode(
    asset_id: uuid.UUID,
    request: Optional[TranscodeSubmitRequest] = None,
    orchestrator: TranscodeOrchestrator = Depends(get_orchestrator),
):
    """Start encoding an asset, or return the job already running for it."""
    ladder = request.ladder if request else None
    try:
        return await orchestrator.submit(asset_id, ladder)
    except InvalidLadderError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SubmissionFailed as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(e), "job_id": str(e.job_id)},
        )
    except ExternalJobRejected as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "job_id": str(e.job_id)},
        )


@router.get("/jobs/{job_id}", response_model=TranscodeJobDetailResponse)
async def get_job(
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get a job with its transition history."""
    repo = TranscodeJobRepository(db)
    job = await repo.get_by_id(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transcode job not found")

    events = await repo.get_events(job_id)
    response = TranscodeJobDetailResponse.model_validate(job)
    response.events = [TranscodeJobEventResponse.model_validate(e) for e in events]
    return response


@router.post("/jobs/{job_id}/poll", response_model=TranscodeJobResponse)
async def poll_job(
    job_id: uuid.UUID,
    orchestrator: TranscodeOrchestrator = Depends(get_orchestrator),
):
    """Fetch the job's status from the transcoding service now."""
    try:
        return await orchestrator.poll(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PollTransportError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
