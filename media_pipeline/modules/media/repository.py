"""Repository for asset, rendition and subtitle database operations."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.modules.media.models import Asset, Rendition, SubtitleTrack


class AssetRepository:
    """Repository for Asset operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        source_key: str,
        title: str,
        duration_seconds: float = 0.0,
        content_type: str = "video/mp4",
        size_bytes: int = 0,
        poster_key: Optional[str] = None,
    ) -> Asset:
        """Create a new asset record.

        Args:
            source_key: Storage key of the uploaded source object
            title: Display title
            duration_seconds: Source duration
            content_type: MIME type of the source
            size_bytes: Source size
            poster_key: Optional poster image key

        Returns:
            Created Asset
        """
        asset = Asset(
            source_key=source_key,
            title=title,
            duration_seconds=duration_seconds,
            content_type=content_type,
            size_bytes=size_bytes,
            poster_key=poster_key,
            renditions=[],
            subtitles=[],
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_by_id(self, asset_id: uuid.UUID) -> Optional[Asset]:
        """Get an asset by ID."""
        result = await self.session.execute(
            select(Asset).where(Asset.id == asset_id)
        )
        return result.scalar_one_or_none()

    async def set_poster(self, asset: Asset, poster_key: str) -> None:
        asset.poster_key = poster_key
        await self.session.flush()


class RenditionRepository:
    """Repository for Rendition operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, asset_id: uuid.UUID, quality_id: str) -> Optional[Rendition]:
        result = await self.session.execute(
            select(Rendition).where(
                Rendition.asset_id == asset_id,
                Rendition.quality_id == quality_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_for_asset(self, asset_id: uuid.UUID) -> list[Rendition]:
        result = await self.session.execute(
            select(Rendition)
            .where(Rendition.asset_id == asset_id)
            .order_by(Rendition.quality_id)
        )
        return list(result.scalars().all())

    async def get_ready_for_asset(self, asset_id: uuid.UUID) -> list[Rendition]:
        """Renditions the delivery path may use."""
        result = await self.session.execute(
            select(Rendition)
            .where(Rendition.asset_id == asset_id, Rendition.ready.is_(True))
            .order_by(Rendition.quality_id)
        )
        return list(result.scalars().all())

    async def register_ready(
        self,
        asset_id: uuid.UUID,
        quality_id: str,
        storage_key: str,
        transcode_job_id: Optional[uuid.UUID] = None,
    ) -> tuple[Rendition, bool]:
        """Mark a rendition ready, creating it if needed.

        A rendition that is already ready is returned untouched.

        Returns:
            Tuple of (rendition, created_or_promoted)
        """
        rendition = await self.get(asset_id, quality_id)
        if rendition is not None and rendition.ready:
            return rendition, False

        if rendition is None:
            rendition = Rendition(
                asset_id=asset_id,
                quality_id=quality_id,
                storage_key=storage_key,
                ready=True,
                transcode_job_id=transcode_job_id,
            )
            self.session.add(rendition)
        else:
            rendition.storage_key = storage_key
            rendition.transcode_job_id = transcode_job_id
            rendition.ready = True

        await self.session.flush()
        return rendition, True


class SubtitleTrackRepository:
    """Repository for SubtitleTrack operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        asset_id: uuid.UUID,
        language: str,
        label: str,
        storage_key: str,
    ) -> SubtitleTrack:
        result = await self.session.execute(
            select(SubtitleTrack).where(
                SubtitleTrack.asset_id == asset_id,
                SubtitleTrack.language == language,
            )
        )
        track = result.scalar_one_or_none()
        if track is None:
            track = SubtitleTrack(asset_id=asset_id, language=language, label=label, storage_key=storage_key)
            self.session.add(track)
        else:
            track.label = label
            track.storage_key = storage_key
        await self.session.flush()
        return track

    async def get_for_asset(self, asset_id: uuid.UUID) -> list[SubtitleTrack]:
        result = await self.session.execute(
            select(SubtitleTrack)
            .where(SubtitleTrack.asset_id == asset_id)
            .order_by(SubtitleTrack.language)
        )
        return list(result.scalars().all())
