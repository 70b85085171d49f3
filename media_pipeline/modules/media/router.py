"""Media API router.

Uploads land in object storage first; the asset row is only written once
the object is stored, and a transcode is started for it right away.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.database import get_db
from media_pipeline.core.dependencies import get_key_manager, get_orchestrator
from media_pipeline.modules.media.keys import StorageKeyManager, StorageUnavailable
from media_pipeline.modules.media.schemas import AssetResponse, AssetUploadResponse, SubtitleTrackResponse
from media_pipeline.modules.media.service import AssetNotFoundError, InvalidUploadError, MediaService
from media_pipeline.modules.transcoding.service import (
    ExternalJobRejected,
    InvalidLadderError,
    SubmissionFailed,
    TranscodeOrchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["media"])


def get_media_service(
    db: AsyncSession = Depends(get_db),
    keys: StorageKeyManager = Depends(get_key_manager),
) -> MediaService:
    """Dependency to get MediaService instance."""
    return MediaService(db, keys)


@router.post("/assets", response_model=AssetUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_asset(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    duration_seconds: float = Form(0.0),
    ladder: Optional[str] = Form(None),  # Comma-separated quality ids
    transcode: bool = Form(True),
    service: MediaService = Depends(get_media_service),
    orchestrator: TranscodeOrchestrator = Depends(get_orchestrator),
):
    """Upload a source video and start transcoding it."""
    ladder_ids = None
    if ladder:
        ladder_ids = [q.strip() for q in ladder.split(",") if q.strip()]
        try:
            orchestrator.resolve_ladder(ladder_ids)
        except InvalidLadderError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    data = await file.read()
    try:
        asset = await service.upload_asset(
            file.filename or "upload",
            data,
            title=title,
            content_type=file.content_type or "application/octet-stream",
            duration_seconds=duration_seconds,
        )
    except InvalidUploadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    response = AssetUploadResponse(asset=AssetResponse.model_validate(asset))
    if not transcode:
        return response

    try:
        job = await orchestrator.submit(asset.id, ladder_ids)
        response.transcode_job_id = job.id
        response.transcode_status = job.status.value
    except (SubmissionFailed, ExternalJobRejected) as e:
        # The asset is stored; the transcode can be retried on its own.
        logger.warning("Transcode not started for asset %s: %s", asset.id, e)
        response.transcode_job_id = e.job_id
        response.transcode_status = "failed"
    return response


@router.get("/assets/{asset_id}", response_model=AssetResponse)
async def get_asset(
    asset_id: uuid.UUID,
    service: MediaService = Depends(get_media_service),
):
    """Get an asset with its renditions and subtitle tracks."""
    try:
        return await service.get_asset(asset_id)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/assets/{asset_id}/subtitles", response_model=SubtitleTrackResponse, status_code=status.HTTP_201_CREATED)
async def upload_subtitle(
    asset_id: uuid.UUID,
    language: str = Form(..., min_length=2, max_length=16),
    label: Optional[str] = Form(None),
    file: UploadFile = File(...),
    service: MediaService = Depends(get_media_service),
):
    """Attach a WebVTT subtitle track."""
    data = await file.read()
    try:
        return await service.attach_subtitle(
            asset_id,
            language,
            data,
            label=label,
            content_type=file.content_type or "text/vtt",
        )
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidUploadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/assets/{asset_id}/poster", response_model=AssetResponse)
async def upload_poster(
    asset_id: uuid.UUID,
    file: UploadFile = File(...),
    service: MediaService = Depends(get_media_service),
):
    """Attach a poster image."""
    data = await file.read()
    try:
        return await service.attach_poster(asset_id, data, file.content_type or "image/jpeg")
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidUploadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
