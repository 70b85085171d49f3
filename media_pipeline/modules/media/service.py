"""Service layer for asset uploads.

An Asset row exists only for sources that were fully written to storage:
the object goes first, the row second, and a failed row insert removes the
object again. Storage calls block and back off with sleeps, so they run in
a worker thread.
"""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.modules.manifest.generator import asset_base_key
from media_pipeline.modules.media.keys import StorageKeyManager, StorageUnavailable, sanitize_filename
from media_pipeline.modules.media.models import Asset, SubtitleTrack
from media_pipeline.modules.media.repository import AssetRepository, SubtitleTrackRepository

logger = logging.getLogger(__name__)


class MediaServiceError(Exception):
    """Base exception for media service errors."""
    pass


class AssetNotFoundError(MediaServiceError):
    """Raised when an asset does not exist."""
    pass


class InvalidUploadError(MediaServiceError):
    """Raised for empty or unsupported uploads."""
    pass


ALLOWED_VIDEO_TYPES = frozenset({
    "video/mp4",
    "video/quicktime",
    "video/x-matroska",
    "video/webm",
    "application/octet-stream",
})

ALLOWED_SUBTITLE_TYPES = frozenset({"text/vtt", "application/x-subrip", "text/plain"})


class MediaService:
    """Service for asset uploads and attachments."""

    def __init__(self, session: AsyncSession, keys: StorageKeyManager):
        self.session = session
        self.keys = keys
        self.asset_repo = AssetRepository(session)
        self.subtitle_repo = SubtitleTrackRepository(session)

    async def get_asset(self, asset_id: uuid.UUID) -> Asset:
        asset = await self.asset_repo.get_by_id(asset_id)
        if asset is None:
            raise AssetNotFoundError(f"Asset {asset_id} not found")
        return asset

    async def upload_asset(
        self,
        filename: str,
        data: bytes,
        *,
        title: Optional[str] = None,
        content_type: str = "video/mp4",
        duration_seconds: float = 0.0,
    ) -> Asset:
        """Store an uploaded source and record it as an Asset.

        Raises:
            InvalidUploadError: for empty bodies or unsupported types
            StorageUnavailable: if storage could not be written; no Asset is created
        """
        if not data:
            raise InvalidUploadError("Upload is empty")
        if content_type not in ALLOWED_VIDEO_TYPES:
            raise InvalidUploadError(f"Unsupported content type: {content_type}")
        if duration_seconds < 0:
            raise InvalidUploadError("Duration cannot be negative")

        key = self.keys.allocate_key(filename)
        stored = await asyncio.to_thread(self.keys.put_object, key, data, content_type)

        try:
            asset = await self.asset_repo.create(
                source_key=stored.key,
                title=title or sanitize_filename(filename),
                duration_seconds=duration_seconds,
                content_type=content_type,
                size_bytes=stored.size,
            )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            try:
                await asyncio.to_thread(self.keys.delete_object, stored.key)
            except StorageUnavailable as cleanup_error:
                logger.warning("Orphaned upload %s left in storage: %s", stored.key, cleanup_error)
            raise

        logger.info(
            "Asset uploaded",
            extra={"asset_id": str(asset.id), "storage_key": asset.source_key, "size": asset.size_bytes},
        )
        return asset

    async def attach_subtitle(
        self,
        asset_id: uuid.UUID,
        language: str,
        data: bytes,
        *,
        label: Optional[str] = None,
        content_type: str = "text/vtt",
    ) -> SubtitleTrack:
        """Store a subtitle file next to the asset's renditions."""
        asset = await self.get_asset(asset_id)
        if not data:
            raise InvalidUploadError("Subtitle file is empty")
        if content_type not in ALLOWED_SUBTITLE_TYPES:
            raise InvalidUploadError(f"Unsupported subtitle type: {content_type}")

        language = sanitize_filename(language).lower()
        key = f"{asset_base_key(asset.source_key)}/subtitles/{language}.vtt"
        await asyncio.to_thread(self.keys.put_object, key, data, content_type)

        track = await self.subtitle_repo.upsert(asset.id, language, label or language, key)
        await self.session.commit()
        return track

    async def attach_poster(
        self,
        asset_id: uuid.UUID,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> Asset:
        """Store a poster image for the asset."""
        asset = await self.get_asset(asset_id)
        if not data:
            raise InvalidUploadError("Poster file is empty")

        extension = "png" if content_type == "image/png" else "jpg"
        key = f"{asset_base_key(asset.source_key)}/poster.{extension}"
        await asyncio.to_thread(self.keys.put_object, key, data, content_type)

        await self.asset_repo.set_poster(asset, key)
        await self.session.commit()
        return asset
