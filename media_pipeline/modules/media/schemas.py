"""Pydantic schemas for assets and renditions."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class RenditionResponse(BaseModel):
    """Schema for rendition response."""
    quality_id: str
    storage_key: str
    ready: bool

    class Config:
        from_attributes = True


class SubtitleTrackResponse(BaseModel):
    """Schema for subtitle track response."""
    language: str
    label: str
    storage_key: str

    class Config:
        from_attributes = True


class AssetResponse(BaseModel):
    """Schema for asset response."""
    id: UUID
    source_key: str
    title: str
    duration_seconds: float
    content_type: str
    size_bytes: int
    poster_key: Optional[str] = None
    created_at: datetime
    renditions: list[RenditionResponse] = Field(default_factory=list)
    subtitles: list[SubtitleTrackResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class AssetUploadResponse(BaseModel):
    """Result of an upload, with the transcode job it started."""
    asset: AssetResponse
    transcode_job_id: Optional[UUID] = None
    transcode_status: Optional[str] = None
