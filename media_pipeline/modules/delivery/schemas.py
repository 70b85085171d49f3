"""Pydantic schemas for playback descriptors."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from media_pipeline.modules.manifest import ManifestFormat


class DescriptorQuality(BaseModel):
    """A permitted quality and its signed variant URL."""
    id: str
    label: str
    bitrate_kbps: int
    bandwidth_bps: int
    width: int
    height: int
    url: str


class DescriptorSubtitle(BaseModel):
    language: str
    label: str
    url: str


class StreamingDescriptor(BaseModel):
    """Everything a player needs to start a stream.

    Built per request and never stored. ``expires_at`` is the earliest
    expiry among the signed URLs it contains.
    """
    asset_id: UUID
    format: ManifestFormat
    manifest_url: str
    cdn_base_url: str
    qualities: list[DescriptorQuality]
    subtitles: list[DescriptorSubtitle] = Field(default_factory=list)
    poster_url: Optional[str] = None
    duration_seconds: float
    expires_at: datetime
    manifest: str = Field(..., description="Generated manifest body")
